"""Staff login and the bearer-token dependencies shared by the staff routers."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from veriflow.domain.enums import UserRole
from veriflow.domain.models import User
from veriflow.domain.schemas import TokenResponse, UserLogin, UserResponse
from veriflow.infra.database import get_db
from veriflow.services.auth_service import authenticate, create_access_token, decode_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

ADMIN_ROLES = (UserRole.SUPER_ADMIN.value, UserRole.BUSINESS_ADMIN.value)
STAFF_ROLES = ADMIN_ROLES + (UserRole.VERIFIER.value,)

_bearer = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user_dep(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Active staff user behind the bearer token."""
    if credentials is None:
        raise _unauthorized("Missing or invalid token")

    claims = decode_token(credentials.credentials)
    user_id = (claims or {}).get("sub")
    if not user_id:
        raise _unauthorized("Invalid or expired token")

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        raise _unauthorized("User not found or inactive")
    return user


def require_role(*roles: str):
    """Dependency factory: the current user must hold one of ``roles``."""

    async def checker(user: User = Depends(get_current_user_dep)) -> User:
        if user.role not in roles:
            logger.info("User %s (%s) denied; needs one of %s", user.id, user.role, roles)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return checker


def resolve_business_scope(user: User, requested: str | None = None) -> str:
    """Business an admin acts on. Super admins must name one explicitly."""
    if user.role == UserRole.SUPER_ADMIN.value:
        if not requested:
            raise HTTPException(status_code=400, detail="business_id is required")
        return requested
    if not user.business_id:
        raise HTTPException(status_code=403, detail="User is not attached to a business")
    if requested and requested != user.business_id:
        raise HTTPException(status_code=403, detail="Access to this business is not allowed")
    return user.business_id


@router.post("/login", response_model=TokenResponse)
async def login(data: UserLogin, db: AsyncSession = Depends(get_db)):
    user = await authenticate(db, data.email, data.password)
    if user is None:
        logger.info("Failed login for %s", data.email)
        raise HTTPException(status_code=401, detail="Invalid email or password")
    await db.commit()
    return TokenResponse(
        access_token=create_access_token(user.id, user.role, user.business_id),
        user=UserResponse.model_validate(user),
    )


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user_dep)):
    return UserResponse.model_validate(user)
