from setuptools import setup, find_packages

setup(
    name="taskflow",
    version="1.0.0",
    description="TaskFlow multi-tenant task management API",
    author="jetgause",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["api_server", "config", "setup_env"],
    install_requires=[
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
        "pydantic[email]>=2.5.0",
        "sqlalchemy>=2.0.0",
        "python-jose[cryptography]>=3.3.0",
        "bcrypt>=4.0.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "httpx>=0.25.0",
        ],
    },
    python_requires=">=3.9",
)
