#!/usr/bin/env python3
"""
TaskFlow - Environment Setup Script
===================================

Generates a .env file with a fresh secret key and the TaskFlow defaults.

Usage:
    python3 setup_env.py

Or with auto-accept defaults:
    python3 setup_env.py --auto

Author: Security Automation
Created: 2025-12-11
"""

import os
import sys
import secrets
from pathlib import Path


def generate_secret_key(length=32):
    """Generate a cryptographically secure secret key."""
    return secrets.token_urlsafe(length)


def create_env_file(auto=False):
    """Create .env file with secure configuration."""

    print("=" * 70)
    print("TaskFlow - Secure Environment Configuration")
    print("=" * 70)
    print()

    env_path = Path(".env")
    if env_path.exists():
        print("⚠️  .env file already exists!")
        if not auto:
            response = input("Do you want to overwrite it? (yes/no): ").lower()
            if response not in ['yes', 'y']:
                print("❌ Setup cancelled.")
                return False
        print("Backing up existing .env to .env.backup...")
        if Path(".env.backup").exists():
            os.remove(".env.backup")
        os.rename(".env", ".env.backup")

    print("\n🔐 Generating secure configuration...\n")

    secret_key = generate_secret_key(32)
    print(f"✅ Generated SECRET_KEY: {secret_key[:10]}...{secret_key[-10:]}")

    config = {
        'SECRET_KEY': secret_key,
        'ALLOWED_ORIGINS': 'http://localhost:3000,http://localhost:8000,http://127.0.0.1:8000',
        'ENVIRONMENT': 'development',
        'API_HOST': '127.0.0.1',
        'API_PORT': '8000',
        'API_WORKERS': '1',
        'DATABASE_URL': 'sqlite:///taskflow.db',
        'JWT_EXPIRE_MINUTES': str(30 * 24 * 60),
        'EMAIL_HOST': 'smtp.gmail.com',
        'EMAIL_PORT': '587',
        'EMAIL_USER': '',
        'EMAIL_PASS': '',
        'EMAIL_FROM': '',
        'CLIENT_URL': 'http://localhost:3000',
        'NOTIFICATIONS_ENABLED': 'true',
        'LOG_LEVEL': 'INFO',
        'LOG_FILE': 'logs/taskflow.log',
    }

    if not auto:
        print("\n📝 Optional Configuration (press Enter to skip):\n")

        email_user = input("SMTP username (optional): ").strip()
        if email_user:
            config['EMAIL_USER'] = email_user
            config['EMAIL_FROM'] = email_user
            config['EMAIL_PASS'] = input("SMTP password: ").strip()

        client_url = input(f"Client URL [{config['CLIENT_URL']}]: ").strip()
        if client_url:
            config['CLIENT_URL'] = client_url

    print("\n💾 Writing configuration to .env file...")

    env_content = f"""# TaskFlow - Environment Configuration
# Generated: {Path(__file__).name}
# WARNING: Never commit this file to version control!

# ============================================================================
# CRITICAL SECURITY SETTINGS
# ============================================================================

SECRET_KEY={config['SECRET_KEY']}
ALLOWED_ORIGINS={config['ALLOWED_ORIGINS']}
ENVIRONMENT={config['ENVIRONMENT']}

# ============================================================================
# API CONFIGURATION
# ============================================================================

API_HOST={config['API_HOST']}
API_PORT={config['API_PORT']}
API_WORKERS={config['API_WORKERS']}
JWT_EXPIRE_MINUTES={config['JWT_EXPIRE_MINUTES']}

# ============================================================================
# DATABASE
# ============================================================================

DATABASE_URL={config['DATABASE_URL']}

# ============================================================================
# EMAIL & NOTIFICATIONS
# ============================================================================

EMAIL_HOST={config['EMAIL_HOST']}
EMAIL_PORT={config['EMAIL_PORT']}
EMAIL_USER={config['EMAIL_USER']}
EMAIL_PASS={config['EMAIL_PASS']}
EMAIL_FROM={config['EMAIL_FROM']}
CLIENT_URL={config['CLIENT_URL']}
NOTIFICATIONS_ENABLED={config['NOTIFICATIONS_ENABLED']}

# ============================================================================
# LOGGING
# ============================================================================

LOG_LEVEL={config['LOG_LEVEL']}
LOG_FILE={config['LOG_FILE']}
"""

    with open(".env", "w") as f:
        f.write(env_content)

    print("✅ .env file created successfully!")

    print("\n🔍 Verifying configuration...")
    try:
        import config as cfg
        print("✅ Configuration validated!")
        print(f"   - SECRET_KEY: Set ({len(cfg.SECRET_KEY)} characters)")
        print(f"   - ALLOWED_ORIGINS: {len(cfg.ALLOWED_ORIGINS)} origin(s)")
        print(f"   - DATABASE_URL: {cfg.DATABASE_URL}")
        print(f"   - Email: {'configured' if cfg.EMAIL_ENABLED else 'not configured'}")
        return True
    except Exception as e:
        print(f"❌ Configuration validation failed: {e}")
        print("\nYou may need to:")
        print("1. Check that python-dotenv is installed: pip install python-dotenv")
        print("2. Verify config.py is in the current directory")
        return False


def main():
    """Main entry point."""
    auto = '--auto' in sys.argv

    if not auto:
        print("\nThis script will create a secure .env configuration file.")
        print("Press Ctrl+C at any time to cancel.\n")

    try:
        success = create_env_file(auto=auto)

        if success:
            print("\n" + "=" * 70)
            print("✅ CONFIGURATION COMPLETE!")
            print("=" * 70)
            print("\nNext steps:")
            print("1. Review the .env file (optional)")
            print("2. Start the API server: python api_server.py")
            print("3. Access the API at: http://127.0.0.1:8000")
            print("\n⚠️  Remember: NEVER commit the .env file to git!")
            return 0
        else:
            print("\n❌ Configuration failed. Please check the errors above.")
            return 1

    except KeyboardInterrupt:
        print("\n\n❌ Setup cancelled by user.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
