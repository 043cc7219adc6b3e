from datetime import datetime, timedelta, timezone
from typing import Optional, Any
import secrets

from jose import JWTError, jwt
from passlib.context import CryptContext

from storefront.config import settings


# Hashing context for one-time verification codes.
# Only the hash is ever stored; codes are short-lived so a lighter
# argon2 memory cost is used than for account passwords.
code_context = CryptContext(
    schemes=["argon2"],
    default="argon2",
    argon2__memory_cost=19456,
    argon2__time_cost=2,
    argon2__parallelism=1,
)


def generate_verification_code() -> str:
    """Generate a 6-digit numeric code, uniform in [100000, 999999]."""
    return str(secrets.randbelow(900_000) + 100_000)


def generate_lookup_token() -> str:
    """Generate an opaque, unguessable access token."""
    return secrets.token_hex(16)


def hash_verification_code(code: str) -> str:
    """Hash a verification code for storage."""
    return code_context.hash(code)


def verify_verification_code(code: str, code_hash: Optional[str]) -> bool:
    """
    Verify a plain code against its stored hash.

    Returns False for a missing or malformed hash instead of raising.
    """
    if not code_hash:
        return False
    try:
        return code_context.verify(code, code_hash)
    except (ValueError, TypeError):
        return False


def create_access_token(
    subject: str | int,
    expires_delta: Optional[timedelta] = None,
    additional_claims: Optional[dict[str, Any]] = None
) -> str:
    """
    Create a JWT access token identifying a customer.

    Args:
        subject: The customer ID
        expires_delta: Optional custom expiration time
        additional_claims: Optional extra claims merged into the payload
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode = {
        "sub": str(subject),
        "exp": expire,
        "iat": now,
        "type": "access",
    }
    if additional_claims:
        to_encode.update(additional_claims)

    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """Decode and validate a JWT token. Returns None when invalid or expired."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


def verify_access_token(token: str) -> Optional[str]:
    """Verify an access token and return the subject (customer ID)."""
    payload = decode_token(token)
    if payload is None or payload.get("type") != "access":
        return None
    return payload.get("sub")
