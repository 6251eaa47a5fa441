from datetime import datetime, timedelta
import hashlib
import hmac
import secrets
import bcrypt
from jose import jwt, JWTError
from foldly.config import settings


def decode_token(token: str) -> dict | None:
    """Decode a bearer token issued by the identity provider."""
    options = {"verify_aud": settings.JWT_AUDIENCE is not None}
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            options=options,
        )
    except JWTError:
        return None


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    # Only used by tests and local tooling; production tokens come from the provider
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=30))
    to_encode.update({"exp": expire})
    if settings.JWT_AUDIENCE:
        to_encode.setdefault("aud", settings.JWT_AUDIENCE)
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def generate_otp() -> str:
    """Generate a 6-digit verification code"""
    return f"{secrets.randbelow(10 ** 6):06d}"


def hash_otp(code: str) -> str:
    return hmac.new(settings.SECRET_KEY.encode(), code.encode(), hashlib.sha256).hexdigest()


def verify_otp(code: str, code_hash: str | None) -> bool:
    if not code_hash:
        return False
    return hmac.compare_digest(hash_otp(code), code_hash)


def hash_link_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.LINK_PASSWORD_BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode(), salt).decode()


def verify_link_password(password: str | None, password_hash: str | None) -> bool:
    if not password or not password_hash:
        return False
    candidate = password.encode()
    # bcrypt only looks at 72 bytes; longer input can never have been set
    if len(candidate) > 72:
        return False
    return bcrypt.checkpw(candidate, password_hash.encode())


def generate_slug() -> str:
    return secrets.token_urlsafe(9).replace("-", "a").replace("_", "b").lower()
