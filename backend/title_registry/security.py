import secrets

from passlib.context import CryptContext

# Password and activation-token hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    """Hash a password using bcrypt"""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash"""
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def generate_temp_password() -> str:
    """Random password for a provisioned account. Never usable before activation."""
    return secrets.token_urlsafe(12)


def generate_activation_token() -> str:
    return secrets.token_urlsafe(24)
