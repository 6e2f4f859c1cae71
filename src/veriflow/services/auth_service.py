"""Staff authentication: bcrypt password hashes and JWT bearer tokens.

Customers never authenticate here; they reach a verification only through
its link token.
"""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from veriflow.app.config import get_settings
from veriflow.domain.models import User

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def create_access_token(user_id: str, role: str, business_id: str | None = None) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expiration_minutes)
    payload = {"sub": user_id, "role": role, "business_id": business_id, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(func.lower(User.email) == email.strip().lower()))
    return result.scalar_one_or_none()


async def authenticate(db: AsyncSession, email: str, password: str) -> User | None:
    """Return the active user for these credentials and stamp last_login_at."""
    user = await get_user_by_email(db, email)
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        return None
    user.last_login_at = datetime.now(timezone.utc).replace(tzinfo=None)
    await db.flush()
    return user


async def create_staff_user(
    db: AsyncSession,
    business_id: str | None,
    email: str,
    password: str,
    full_name: str,
    role: str,
    *,
    specialization: str | None = None,
    phone: str | None = None,
) -> User:
    """Insert a staff account. The caller checks email uniqueness and commits."""
    user = User(
        business_id=business_id,
        email=email.strip().lower(),
        password_hash=hash_password(password),
        full_name=full_name,
        role=role,
        specialization=specialization,
        phone=phone,
        is_active=True,
    )
    db.add(user)
    await db.flush()
    return user
