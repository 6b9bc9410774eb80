import os
import sys
from dotenv import load_dotenv

load_dotenv()

# Detect environment
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
IS_PRODUCTION = ENVIRONMENT == "production"

# API Configuration
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
API_WORKERS = int(os.getenv("API_WORKERS", "1"))
API_VERSION = "1.0.0"

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///taskflow.db")
DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

# Session tokens
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", str(30 * 24 * 60)))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

# Rate limiting (single process, in memory)
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "900"))
GENERAL_RATE_LIMIT = int(os.getenv("GENERAL_RATE_LIMIT", "100"))
AUTH_RATE_LIMIT = int(os.getenv("AUTH_RATE_LIMIT", "10"))
LOGIN_RATE_LIMIT = int(os.getenv("LOGIN_RATE_LIMIT", "5"))
CREATE_RATE_LIMIT = int(os.getenv("CREATE_RATE_LIMIT", "30"))
CREATE_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("CREATE_RATE_LIMIT_WINDOW_SECONDS", "300"))

# Email
EMAIL_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_USER = os.getenv("EMAIL_USER", "")
EMAIL_PASS = os.getenv("EMAIL_PASS", "")
EMAIL_FROM = os.getenv("EMAIL_FROM", EMAIL_USER)
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")

# Notifications
NOTIFICATIONS_ENABLED = os.getenv("NOTIFICATIONS_ENABLED", "true").lower() == "true"
REMINDER_LEAD_HOURS = int(os.getenv("REMINDER_LEAD_HOURS", "24"))
REMINDER_HORIZON_DAYS = int(os.getenv("REMINDER_HORIZON_DAYS", "7"))
OVERDUE_SCAN_INTERVAL_HOURS = int(os.getenv("OVERDUE_SCAN_INTERVAL_HOURS", "24"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "")
LOG_JSON = os.getenv("LOG_JSON", "false").lower() == "true"

# Security - Enhanced validation
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    print("=" * 70)
    print("CRITICAL ERROR: SECRET_KEY environment variable is required!")
    print("=" * 70)
    print("\nTo fix this issue:")
    print("  1. Run the setup script: python3 setup_env.py --auto")
    print("  OR")
    print("  2. Generate a key manually:")
    print('     python3 -c "import secrets; print(secrets.token_urlsafe(32))"')
    print("  3. Add it to your .env file: SECRET_KEY=<generated-key>")
    print("\n" + "=" * 70)
    sys.exit(1)

WEAK_KEYS = [
    "your-secret-key-change-in-production",
    "change-this-in-production",
    "secret",
    "password",
    "secret-key",
    "jwt-secret",
    "test",
    "admin"
]

if SECRET_KEY.lower() in WEAK_KEYS:
    print("=" * 70)
    print("CRITICAL ERROR: SECRET_KEY is using a default/weak value!")
    print("=" * 70)
    print("\nThis key is publicly known and INSECURE!")
    print("\nGenerate a new secure key:")
    print('  python3 -c "import secrets; print(secrets.token_urlsafe(32))"')
    print("\n" + "=" * 70)
    sys.exit(1)

if len(SECRET_KEY) < 32:
    print("=" * 70)
    print("CRITICAL ERROR: SECRET_KEY is too short!")
    print("=" * 70)
    print(f"\nCurrent length: {len(SECRET_KEY)} characters")
    print("Required length: 32+ characters")
    print("\nGenerate a new secure key:")
    print('  python3 -c "import secrets; print(secrets.token_urlsafe(32))"')
    print("\n" + "=" * 70)
    sys.exit(1)

# CORS Configuration with validation
ALLOWED_ORIGINS_STR = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:3000,http://localhost:8000,http://127.0.0.1:8000"
)
ALLOWED_ORIGINS = [origin.strip() for origin in ALLOWED_ORIGINS_STR.split(",") if origin.strip()]

if "*" in ALLOWED_ORIGINS:
    if IS_PRODUCTION:
        print("=" * 70)
        print("CRITICAL ERROR: Wildcard CORS (*) not allowed in production!")
        print("=" * 70)
        print("\nSet specific origins in your .env file:")
        print("  ALLOWED_ORIGINS=https://yourdomain.com,https://app.yourdomain.com")
        print("\n" + "=" * 70)
        sys.exit(1)
    else:
        print("\nWARNING: Wildcard CORS (*) detected in development mode")
        print("   This should NOT be used in production!\n")

EMAIL_ENABLED = bool(EMAIL_USER and EMAIL_PASS)
