"""
Create the initial admin account.

    ADMIN_EMAIL=admin@ecommerce.com ADMIN_PASSWORD=... python seed.py
"""
import os
import logging
import sys

import config
from database import db, create_document
from schemas import Profile, User
from security import get_password_hash

logger = logging.getLogger(__name__)


def seed_admin(email: str, password: str) -> bool:
    """Insert an approved admin unless the email is taken. Returns True if created."""
    email = email.lower()
    if db["user"].find_one({"email": email}):
        logger.info("Admin user %s already exists", email)
        return False

    admin = User(
        email=email,
        password_hash=get_password_hash(password),
        role="admin",
        profile=Profile(first_name="Admin", last_name="User"),
        is_approved=True,
    )
    create_document("user", admin)
    logger.info("Admin user %s created", email)
    return True


if __name__ == "__main__":
    config.configure_logging()
    if db is None:
        logger.error("DATABASE_URL is not set")
        sys.exit(1)
    password = os.getenv("ADMIN_PASSWORD")
    if not password:
        logger.error("ADMIN_PASSWORD is not set")
        sys.exit(1)
    seed_admin(os.getenv("ADMIN_EMAIL", "admin@ecommerce.com"), password)
