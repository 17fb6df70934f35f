"""
Common Dependencies
===================

Shared dependencies used across the application: database sessions, the
RevenueCat client, the premium services and the authenticated user id.
"""

import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from app.core.security import decode_token
from app.db.session import get_session_factory
from app.services.identity_resolver import (
    IdentityResolver,
    SqlDeletedAccountRegistry,
    SqlUserDirectory,
)
from app.services.premium_reconciler import PremiumReconciler
from app.services.premium_service import ClientSnapshotStore, PremiumService
from app.services.premium_webhook import PremiumWebhookService
from app.services.revenuecat import RevenueCatClient

logger = logging.getLogger(__name__)

# Security scheme for JWT authentication
security = HTTPBearer(auto_error=False)


# =============================================================================
# Infrastructure
# =============================================================================

def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for services that run their own transactions."""
    return get_session_factory()


SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_db_session_factory)]
AppSettings = Annotated[Settings, Depends(get_settings)]


def get_revenuecat_client(app_settings: AppSettings) -> RevenueCatClient:
    return RevenueCatClient.from_settings(app_settings)


# =============================================================================
# Premium services
# =============================================================================

def get_user_directory(session_factory: SessionFactory) -> SqlUserDirectory:
    return SqlUserDirectory(session_factory)


def get_identity_resolver(
    session_factory: SessionFactory,
    app_settings: AppSettings,
    directory: Annotated[SqlUserDirectory, Depends(get_user_directory)],
) -> IdentityResolver:
    return IdentityResolver(
        directory,
        user_id_attributes=app_settings.revenuecat_user_id_attributes,
        email_attributes=app_settings.revenuecat_email_attributes,
        deleted_accounts=SqlDeletedAccountRegistry(session_factory),
    )


def get_premium_reconciler(
    session_factory: SessionFactory,
    app_settings: AppSettings,
) -> PremiumReconciler:
    return PremiumReconciler(
        session_factory,
        enforce_real_mode=app_settings.REVENUECAT_ENFORCE_REAL_MODE,
        max_attempts=app_settings.RECONCILE_MAX_ATTEMPTS,
        entitlement_id=app_settings.REVENUECAT_ENTITLEMENT_ID,
    )


def get_premium_webhook_service(
    app_settings: AppSettings,
    resolver: Annotated[IdentityResolver, Depends(get_identity_resolver)],
    reconciler: Annotated[PremiumReconciler, Depends(get_premium_reconciler)],
) -> PremiumWebhookService:
    return PremiumWebhookService(
        resolver,
        reconciler,
        entitlement_id=app_settings.REVENUECAT_ENTITLEMENT_ID,
    )


def get_premium_service(
    session_factory: SessionFactory,
    app_settings: AppSettings,
    billing_client: Annotated[RevenueCatClient, Depends(get_revenuecat_client)],
    directory: Annotated[SqlUserDirectory, Depends(get_user_directory)],
    resolver: Annotated[IdentityResolver, Depends(get_identity_resolver)],
    reconciler: Annotated[PremiumReconciler, Depends(get_premium_reconciler)],
) -> PremiumService:
    return PremiumService(
        reconciler,
        billing_client,
        directory,
        resolver,
        ClientSnapshotStore(
            session_factory, max_bytes=app_settings.CLIENT_SNAPSHOT_MAX_BYTES
        ),
        entitlement_id=app_settings.REVENUECAT_ENTITLEMENT_ID,
        cache_ttl=app_settings.PREMIUM_STATUS_CACHE_TTL,
    )


# =============================================================================
# Authentication
# =============================================================================

async def get_current_user_id(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """
    User id (``sub`` claim) of the bearer token issued by the auth gateway.

    Raises 401 if not authenticated or token is invalid.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "AUTH_002",
                "message": "Not authenticated",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials)
    user_id = payload.get("sub") if payload else None
    if not user_id or payload.get("type", "access") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "AUTH_002",
                "message": "Invalid or expired token",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Picked up by the New Relic middleware
    request.state.user_id = str(user_id)
    return str(user_id)


# Type alias for authenticated user dependency
CurrentUserId = Annotated[str, Depends(get_current_user_id)]
