"""
Identity Resolver
=================

Maps the identifiers a billing event carries to exactly one internal user.

Resolution order:
1. internal user id attribute on the subscriber
2. verified email attribute
3. email-shaped app user id (anonymous provider ids rejected)
4. directory lookup of that email
5. an app user id / original app user id / alias that is itself a known user

Nothing is guessed: when no rule yields a user the event is rejected.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import IdentityUnresolvableError
from app.models.premium import DeletedAccount
from app.models.user import User
from app.services.entitlement_extractor import subscriber_attribute
from app.utils.helpers import is_anonymous_app_user_id, normalize_email

logger = logging.getLogger(__name__)


# =============================================================================
# Collaborators
# =============================================================================

@dataclass(frozen=True)
class UserProfile:
    email: Optional[str]
    name: Optional[str]


@dataclass(frozen=True)
class DeletedAccountRecord:
    record_id: str
    uid: str
    email: Optional[str]
    old_app_user_id: Optional[str]
    deleted_at: datetime


class UserDirectory(Protocol):
    """Identity-provider directory."""

    async def find_user_id_by_email(self, email: str) -> Optional[str]: ...

    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]: ...


class DeletedAccountRegistry(Protocol):
    """Accounts removed by the account deletion flow."""

    async def find_by_email(self, email: str) -> list[DeletedAccountRecord]: ...

    async def mark_restore_attempt(
        self, record_id: str, request_id: Optional[str], now: datetime
    ) -> None: ...


class SqlUserDirectory:
    """``UserDirectory`` backed by the ``users`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_user_id_by_email(self, email: str) -> Optional[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(User.user_id).where(func.lower(User.email) == email.lower())
            )
            return result.scalars().first()

    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                return None
            return UserProfile(email=user.email, name=user.full_name)


class SqlDeletedAccountRegistry:
    """``DeletedAccountRegistry`` backed by the ``deleted_accounts`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_by_email(self, email: str) -> list[DeletedAccountRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeletedAccount)
                .where(func.lower(DeletedAccount.email) == email.lower())
                .order_by(DeletedAccount.deleted_at.desc())
            )
            return [
                DeletedAccountRecord(
                    record_id=row.record_id,
                    uid=row.uid,
                    email=row.email,
                    old_app_user_id=row.old_app_user_id,
                    deleted_at=row.deleted_at,
                )
                for row in result.scalars().all()
            ]

    async def mark_restore_attempt(
        self, record_id: str, request_id: Optional[str], now: datetime
    ) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(DeletedAccount)
                    .where(DeletedAccount.record_id == record_id)
                    .values(restore_attempted_at=now, last_restore_request_id=request_id)
                )


# =============================================================================
# Resolver
# =============================================================================

@dataclass(frozen=True)
class ResolvedIdentity:
    user_id: str
    strategy: str
    email_candidate: Optional[str] = None
    app_user_id: Optional[str] = None
    original_app_user_id: Optional[str] = None


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class IdentityResolver:
    """Resolves billing events to internal user ids."""

    def __init__(
        self,
        directory: UserDirectory,
        user_id_attributes: Sequence[str] = ("userId", "firebaseUserId"),
        email_attributes: Sequence[str] = ("appUserEmail", "email"),
        deleted_accounts: Optional[DeletedAccountRegistry] = None,
    ):
        self.directory = directory
        self.user_id_attributes = tuple(user_id_attributes)
        self.email_attributes = tuple(email_attributes)
        self.deleted_accounts = deleted_accounts

    def email_candidate(self, event: dict, subscriber: dict) -> Optional[str]:
        """Verified email attribute, else an email-shaped non-anonymous app user id."""
        for key in self.email_attributes:
            email = normalize_email(subscriber_attribute(subscriber, key))
            if email:
                return email

        app_user_id = _clean(event.get("app_user_id"))
        if app_user_id and not is_anonymous_app_user_id(app_user_id):
            return normalize_email(app_user_id)
        return None

    async def resolve(self, event: Any, subscriber: Any = None) -> ResolvedIdentity:
        """
        Resolve the user a webhook event belongs to.

        Raises:
            IdentityUnresolvableError: No rule produced a user id.

        Directory failures propagate so the delivery is retried.
        """
        event = event if isinstance(event, dict) else {}
        subscriber = subscriber if isinstance(subscriber, dict) else {}

        app_user_id = _clean(event.get("app_user_id"))
        original_app_user_id = _clean(
            subscriber.get("original_app_user_id") or event.get("original_app_user_id")
        )

        def resolved(user_id: str, strategy: str, email: Optional[str] = None):
            logger.info("Resolved webhook identity via %s: %s", strategy, user_id)
            return ResolvedIdentity(
                user_id=user_id,
                strategy=strategy,
                email_candidate=email,
                app_user_id=app_user_id,
                original_app_user_id=original_app_user_id,
            )

        for key in self.user_id_attributes:
            user_id = subscriber_attribute(subscriber, key)
            if user_id:
                return resolved(user_id, f"attribute:{key}")

        email = self.email_candidate(event, subscriber)
        if email:
            user_id = await self.directory.find_user_id_by_email(email)
            if user_id:
                return resolved(user_id, "email", email)
            logger.info("No user found for email candidate %s", email)

        aliases = event.get("aliases") if isinstance(event.get("aliases"), list) else []
        candidates = [
            app_user_id,
            original_app_user_id,
            _clean(event.get("subscriber_alias")),
            *(_clean(alias) for alias in aliases),
        ]
        seen = set()
        for candidate in candidates:
            if not candidate or candidate in seen or is_anonymous_app_user_id(candidate):
                continue
            seen.add(candidate)
            if await self.directory.get_user_profile(candidate) is not None:
                return resolved(candidate, "app_user_id", email)

        logger.warning(
            "Unable to resolve identity for app_user_id=%s original=%s",
            app_user_id,
            original_app_user_id,
        )
        raise IdentityUnresolvableError()

    async def find_transfer_source(
        self,
        email: Optional[str],
        prior_app_user_id: Optional[str] = None,
    ) -> Optional[DeletedAccountRecord]:
        """
        Find the deleted account a subscription was transferred from.

        An explicitly supplied prior billing id wins; otherwise the most
        recently deleted account with the same email.
        """
        normalized = normalize_email(email)
        if not normalized or self.deleted_accounts is None:
            return None

        try:
            records = await self.deleted_accounts.find_by_email(normalized)
        except Exception as exc:
            logger.error("Deleted account lookup failed for %s: %s", normalized, exc)
            return None

        if not records:
            return None

        prior = _clean(prior_app_user_id)
        if prior:
            for record in records:
                if prior in (record.old_app_user_id, record.uid, record.record_id):
                    return record

        return max(records, key=lambda record: record.deleted_at)

    async def record_transfer_attempt(
        self,
        record: DeletedAccountRecord,
        request_id: Optional[str],
        now: datetime,
    ) -> None:
        """Stamp the deleted-account record; failures are logged only."""
        if self.deleted_accounts is None:
            return
        try:
            await self.deleted_accounts.mark_restore_attempt(
                record.record_id, request_id, now
            )
        except Exception as exc:
            logger.error(
                "Failed to mark restore attempt on %s: %s", record.record_id, exc
            )
