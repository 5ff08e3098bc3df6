"""
FastAPI Dependencies - Caller resolution and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hashlib
import ipaddress

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.session import get_write_db
from app.models.domain import AuthenticatedCaller, CallerContext, GuestCaller
from app.services.credits import CreditLedgerService
from app.services.gateway import MeteredGenerationGateway
from app.services.generation_log import GenerationLogService
from app.services.guest_quota import GuestQuotaService
from app.services.image_provider import ImageProvider

logger = get_logger(__name__)

SESSION_ID_HEADER = "x-session-id"

# Bearer token scheme for storefront session JWTs
bearer_scheme = HTTPBearer(auto_error=False)


# ============================================================================
# Caller Resolution
# ============================================================================


def decode_user_token(token: str) -> str:
    """
    Verify a storefront session JWT (HS256) and return its subject.

    Raises:
        HTTPException 401 if the token is invalid, expired or has no subject
    """
    try:
        payload: dict[str, object] = jwt.decode(
            token, settings.auth_jwt_secret, algorithms=["HS256"]
        )
    except jwt.ExpiredSignatureError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
    except jwt.InvalidTokenError as e:
        logger.warning("user_token_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no subject",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return subject


def _parse_ip(value: str | None) -> str | None:
    """Normalized address text, or None when the value is not an IP."""
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def get_client_ip(request: Request) -> str | None:
    """
    Client IP from proxy headers, falling back to the socket peer.

    Each source is checked in turn and skipped unless it parses as an IP
    address. Returns None when no source yields one.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    candidates = (
        forwarded_for.split(",")[0] if forwarded_for else None,
        request.headers.get("x-real-ip"),
        request.client.host if request.client is not None else None,
    )
    for candidate in candidates:
        ip_address = _parse_ip(candidate)
        if ip_address is not None:
            return ip_address

    return None


def get_guest_session_id(request: Request, ip_address: str | None) -> str:
    """
    Guest session token.

    Order: x-session-id header, session cookie, then a fingerprint of
    IP address and user agent.
    """
    session_id = request.headers.get(SESSION_ID_HEADER) or request.cookies.get(
        settings.guest_session_cookie
    )
    if session_id:
        return session_id

    user_agent = request.headers.get("user-agent", "")
    fingerprint = hashlib.sha256(f"{ip_address or ''}:{user_agent}".encode()).hexdigest()
    return f"guest_{fingerprint[:32]}"


async def resolve_caller(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CallerContext:
    """
    Resolve who is calling, once per request.

    A bearer token yields an AuthenticatedCaller; no token yields a
    GuestCaller. A token that fails verification is rejected rather than
    downgraded to guest.
    """
    if credentials is not None:
        return AuthenticatedCaller(user_id=decode_user_token(credentials.credentials))

    ip_address = get_client_ip(request)
    return GuestCaller(
        session_id=get_guest_session_id(request, ip_address),
        ip_address=ip_address,
    )


async def require_authenticated_caller(
    caller: CallerContext = Depends(resolve_caller),
) -> AuthenticatedCaller:
    """Reject guests with 401."""
    if not isinstance(caller, AuthenticatedCaller):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return caller


# ============================================================================
# Services
# ============================================================================


def get_image_provider(request: Request) -> ImageProvider:
    """Provider client created in the application lifespan."""
    provider: ImageProvider = request.app.state.image_provider
    return provider


def get_credit_ledger(db: AsyncSession = Depends(get_write_db)) -> CreditLedgerService:
    return CreditLedgerService(db)


def get_guest_quota(db: AsyncSession = Depends(get_write_db)) -> GuestQuotaService:
    return GuestQuotaService(
        db,
        limit=settings.guest_daily_limit,
        window_hours=settings.guest_window_hours,
    )


def get_gateway(
    provider: ImageProvider = Depends(get_image_provider),
    ledger: CreditLedgerService = Depends(get_credit_ledger),
    guest_quota: GuestQuotaService = Depends(get_guest_quota),
    db: AsyncSession = Depends(get_write_db),
) -> MeteredGenerationGateway:
    """Gateway wired to the request's database session."""
    return MeteredGenerationGateway(
        provider=provider,
        ledger=ledger,
        guest_quota=guest_quota,
        generation_log=GenerationLogService(db),
        max_dimension=settings.max_image_dimension,
        inference_steps=settings.inference_steps,
        default_model=settings.default_ai_model,
        signup_offer_credits=settings.signup_offer_credits,
    )
