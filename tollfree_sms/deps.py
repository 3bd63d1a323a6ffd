"""FastAPI dependencies: settings, store, carrier client and caller checks.

User identity comes from a JWT issued by the external auth service; only
its ``sub`` claim is used, to answer "does this caller own business X?".
Operator and scheduler endpoints use shared secrets instead.
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import Depends, Header, Query, Request
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from tollfree_sms.carrier import CarrierClient
from tollfree_sms.config import Settings, get_settings
from tollfree_sms.errors import AuthenticationError, AuthorizationError
from tollfree_sms.storage import Store, get_db


def get_app_settings() -> Settings:
    return get_settings()


def get_store(db: Session = Depends(get_db)) -> Store:
    return Store(db)


def get_carrier(request: Request) -> CarrierClient:
    """The carrier client created at startup."""
    return request.app.state.carrier


def create_access_token(user_id: str, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=30))
    return jwt.encode(
        {"sub": user_id, "exp": expire},
        settings.AUTH_JWT_SECRET,
        algorithm=settings.AUTH_JWT_ALGORITHM,
    )


def decode_access_token(token: str, settings: Settings) -> Optional[dict]:
    if not settings.AUTH_JWT_SECRET:
        return None
    try:
        return jwt.decode(token, settings.AUTH_JWT_SECRET, algorithms=[settings.AUTH_JWT_ALGORITHM])
    except JWTError:
        return None


async def get_current_user_id(
    authorization: Annotated[Optional[str], Header()] = None,
    settings: Settings = Depends(get_app_settings),
) -> str:
    """
    Require a valid Bearer token and return its subject.
    """
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Missing bearer token")
    payload = decode_access_token(authorization[7:].strip(), settings)
    user_id = payload.get("sub") if payload else None
    if not user_id:
        raise AuthenticationError("Invalid or expired token")
    return str(user_id)


def require_owner(store: Store, business_id: str, user_id: str):
    """
    Load the business and check the caller owns it.

    Raises:
        NotFoundError: unknown business
        AuthorizationError: caller is not the owner
    """
    business = store.require_business(business_id)
    if not _secret_matches(user_id, business.owner_id or ""):
        raise AuthorizationError(details={"business_id": business_id})
    return business


def _secret_matches(provided: Optional[str], expected: str) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_admin_token(
    x_admin_token: Annotated[Optional[str], Header()] = None,
    token: Annotated[Optional[str], Query()] = None,
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Operator endpoints: x-admin-token header (or ?token=) must equal ADMIN_TOKEN."""
    if not _secret_matches(x_admin_token or token, settings.ADMIN_TOKEN):
        raise AuthenticationError("Unauthorized")


async def require_cron_secret(
    x_cron_secret: Annotated[Optional[str], Header()] = None,
    authorization: Annotated[Optional[str], Header()] = None,
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Scheduler endpoints: x-cron-secret header or "Bearer <CRON_SECRET>"."""
    provided = x_cron_secret
    if not provided and authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()
    if not _secret_matches(provided, settings.CRON_SECRET):
        raise AuthenticationError("Unauthorized")
