"""
Runtime settings for the Marketplace API.

Everything is read from the environment; a local .env file is loaded first.
"""
import os
import logging

from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "marketplace")

# Auth settings
JWT_SECRET = os.getenv("JWT_SECRET", "dev-access-secret-change-me")
JWT_REFRESH_SECRET = os.getenv("JWT_REFRESH_SECRET", "dev-refresh-secret-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 15))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", 7))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

# Server
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5175")
PORT = int(os.getenv("PORT", 8000))
APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Order pricing
TAX_RATE = 0.10
FREE_SHIPPING_THRESHOLD = 50
FLAT_SHIPPING_FEE = 10

MAX_PRODUCT_IMAGES = 10


def is_production() -> bool:
    return APP_ENV.lower() == "production"


def configure_logging():
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
