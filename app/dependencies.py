"""
FastAPI dependencies for authentication, authorization and collaborators.

Dependencies are reusable functions that FastAPI injects into route handlers.

Authentication chain:

  get_current_principal (JWT -> Principal)
      └── require_admin (Principal -> Principal)  [admin role]

  - member: can only touch accounts, transfers and loans they own. Every
    service function takes the principal's id as `owner_id` and scopes
    queries to it.
  - admin: operational endpoints under /admin/* (reversals, reconciliation,
    account status, loan lifecycle).

Collaborators:

  get_settlement_gateway -> the configured SettlementGateway (process-wide)
  get_settlement_adapter -> SettlementAdapter wrapping it
  get_idempotency_manager -> IdempotencyManager bound to the session factory

Tests swap any of these out with app.dependency_overrides.
"""

import uuid
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.clients.settlement import SettlementGateway
from app.database import get_session_factory
from app.security import ROLE_ADMIN, ROLE_MEMBER, decode_access_token
from app.services.idempotency_service import IdempotencyManager
from app.services.settlement_adapter import SettlementAdapter, build_gateway


# HTTPBearer reads the "Authorization: Bearer <token>" header. auto_error is
# off so a missing header gets the same 401 body as a bad token.
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as asserted by the identity service."""

    user_id: uuid.UUID
    role: str = ROLE_MEMBER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    """
    Validate the bearer token and return who is calling.

    Raises:
        HTTPException 401: If the token is missing, invalid or expired,
            or has no usable "sub" claim.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    try:
        payload = decode_access_token(credentials.credentials)
        user_id_str: str | None = payload.get("sub")
        if user_id_str is None:
            raise credentials_exception
        user_id = uuid.UUID(user_id_str)
    except (JWTError, ValueError):
        raise credentials_exception

    return Principal(user_id=user_id, role=payload.get("role", ROLE_MEMBER))


async def require_admin(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    """
    Require the caller to have the admin role.

    Raises:
        HTTPException 403: If the caller is not an admin.
    """
    if not principal.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return principal


# Built lazily so importing the app doesn't construct a gateway
_gateway: SettlementGateway | None = None


def get_settlement_gateway() -> SettlementGateway:
    global _gateway
    if _gateway is None:
        _gateway = build_gateway()
    return _gateway


def get_settlement_adapter(
    gateway: SettlementGateway = Depends(get_settlement_gateway),
) -> SettlementAdapter:
    return SettlementAdapter(gateway)


def get_idempotency_manager(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> IdempotencyManager:
    return IdempotencyManager(session_factory)
