"""
Authentication gateway: password hashing, access/renewal credentials and the
request guards used by the routes.

Each account stores exactly one renewal credential. Issuing a new pair
overwrites it, so any earlier renewal credential stops working.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, Depends, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

import config
from database import db, oid

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

SECRET_FIELDS = ("password_hash", "refresh_token")


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(user: dict, expires_delta: Optional[timedelta] = None):
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user["_id"]),
        "email": user["email"],
        "role": user["role"],
        "type": "access",
        "exp": expire,
    }
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.ALGORITHM)


def create_refresh_token(user: dict, expires_delta: Optional[timedelta] = None):
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=config.REFRESH_TOKEN_EXPIRE_DAYS))
    to_encode = {
        "sub": str(user["_id"]),
        "type": "refresh",
        "jti": uuid.uuid4().hex,
        "exp": expire,
    }
    return jwt.encode(to_encode, config.JWT_REFRESH_SECRET, algorithm=config.ALGORITHM)


def decode_token(token: str, secret: str, token_type: str) -> dict:
    """Verify signature, expiry and token type. Raises JWTError on any mismatch."""
    payload = jwt.decode(token, secret, algorithms=[config.ALGORITHM])
    if payload.get("type") != token_type or not payload.get("sub"):
        raise JWTError("Wrong token type")
    return payload


def issue_tokens(user: dict) -> dict:
    """Create a credential pair and store the renewal half on the account."""
    access_token = create_access_token(user)
    refresh_token = create_refresh_token(user)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"refresh_token": refresh_token, "updated_at": datetime.now(timezone.utc)}},
    )
    return {"access_token": access_token, "refresh_token": refresh_token, "token_type": "bearer"}


def rotate_refresh_token(refresh_token: Optional[str]) -> dict:
    if not refresh_token:
        raise HTTPException(status_code=400, detail="Refresh token required")

    invalid = HTTPException(status_code=401, detail="Invalid refresh token")
    try:
        payload = decode_token(refresh_token, config.JWT_REFRESH_SECRET, "refresh")
    except JWTError:
        logger.warning("Rejected refresh token with bad signature or expiry")
        raise invalid

    user = db["user"].find_one({"_id": oid(payload["sub"])})
    if not user or user.get("refresh_token") != refresh_token:
        logger.warning("Rejected superseded refresh token for user %s", payload["sub"])
        raise invalid
    return issue_tokens(user)


def public_user(user: dict) -> dict:
    """Account document without secret fields, with a string id."""
    out = {k: v for k, v in user.items() if k not in SECRET_FIELDS and k != "_id"}
    out["id"] = str(user["_id"])
    return out


async def get_current_user(token: str = Depends(oauth2_scheme)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_token(token, config.JWT_SECRET, "access")
    except JWTError:
        raise credentials_exception

    try:
        user = db["user"].find_one({"_id": oid(payload["sub"])})
    except HTTPException:
        user = None

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return public_user(user)


def require_roles(*roles: str):
    def guard(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user
    return guard


require_admin = require_roles("admin")
require_buyer = require_roles("buyer")
require_seller = require_roles("vendor", "admin")
