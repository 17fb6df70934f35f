"""
RevenueCat Client
=================

Outbound REST client for the billing provider.

Handles:
- Subscriber snapshot fetching
- Provider-side aliasing of app user ids

Failures surface as typed errors: ``SubscriberNotFoundError`` for a 404
(a business outcome, never retried) and ``ProviderUnavailableError`` for
everything else (transient, retried by the caller).
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from app.config import Settings
from app.core.errors import ProviderUnavailableError, SubscriberNotFoundError

logger = logging.getLogger(__name__)


class RevenueCatClient:
    """Thin async client for the RevenueCat v1 REST API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.revenuecat.com",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = self._normalize_base_url(base_url)
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "RevenueCatClient":
        return cls(
            api_key=settings.REVENUECAT_API_KEY,
            base_url=settings.REVENUECAT_BASE_URL,
            timeout=settings.REVENUECAT_TIMEOUT_SECONDS,
        )

    @staticmethod
    def _normalize_base_url(base_url: str) -> str:
        url = base_url.rstrip("/")
        if url.endswith("/v1"):
            url = url[: -len("/v1")]
        return url

    def _get_headers(self) -> dict[str, str]:
        """Common headers for RevenueCat API calls."""
        if not self.api_key:
            raise ProviderUnavailableError("RevenueCat API key not configured")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _subscriber_url(self, app_user_id: str) -> str:
        return f"{self.base_url}/v1/subscribers/{quote(app_user_id, safe='')}"

    # -------------------------------------------------------------------------
    # Subscribers
    # -------------------------------------------------------------------------

    async def fetch_subscriber(self, app_user_id: str) -> dict[str, Any]:
        """
        Fetch a subscriber snapshot from RevenueCat.

        Args:
            app_user_id: RevenueCat app user id (email or our user id).

        Returns:
            The full response body, ``{"subscriber": {...}}``.

        Raises:
            SubscriberNotFoundError: RevenueCat answered 404.
            ProviderUnavailableError: Any other failure, including timeouts.
        """
        headers = self._get_headers()

        async with self._client() as client:
            try:
                response = await client.get(
                    self._subscriber_url(app_user_id),
                    headers=headers,
                )
            except httpx.TimeoutException as exc:
                logger.error("RevenueCat API timeout for subscriber %s", app_user_id)
                raise ProviderUnavailableError("RevenueCat API timeout") from exc
            except httpx.HTTPError as exc:
                logger.error(
                    "RevenueCat API error for subscriber %s: %s", app_user_id, exc
                )
                raise ProviderUnavailableError("RevenueCat API unreachable") from exc

        if response.status_code == 404:
            logger.info("RevenueCat subscriber %s not found", app_user_id)
            raise SubscriberNotFoundError(app_user_id)

        if response.status_code != 200:
            logger.error(
                "RevenueCat API returned status %d for subscriber %s: %s",
                response.status_code,
                app_user_id,
                response.text[:200],
            )
            raise ProviderUnavailableError(
                f"RevenueCat API returned status {response.status_code}",
                upstream_status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            logger.error("RevenueCat API returned non-JSON body for %s", app_user_id)
            raise ProviderUnavailableError("RevenueCat API returned invalid JSON") from exc

        if not isinstance(data, dict):
            raise ProviderUnavailableError("RevenueCat API returned unexpected body")
        return data

    async def create_alias(
        self,
        source_app_user_id: Optional[str],
        target_app_user_id: Optional[str],
    ) -> None:
        """
        Alias ``target_app_user_id`` onto the subscriber ``source_app_user_id``.

        Afterwards webhooks for either id resolve to the same subscriber.
        Nothing is sent when either id is empty or both are the same.
        """
        if (
            not source_app_user_id
            or not target_app_user_id
            or source_app_user_id == target_app_user_id
        ):
            return

        headers = self._get_headers()

        async with self._client() as client:
            try:
                response = await client.post(
                    f"{self._subscriber_url(source_app_user_id)}/alias",
                    json={"new_app_user_id": target_app_user_id},
                    headers=headers,
                )
            except httpx.HTTPError as exc:
                logger.error(
                    "Failed to create RevenueCat alias %s -> %s: %s",
                    source_app_user_id,
                    target_app_user_id,
                    exc,
                )
                raise ProviderUnavailableError("RevenueCat alias request failed") from exc

        if response.status_code >= 400:
            logger.error(
                "RevenueCat alias %s -> %s returned status %d: %s",
                source_app_user_id,
                target_app_user_id,
                response.status_code,
                response.text[:200],
            )
            raise ProviderUnavailableError(
                f"RevenueCat alias returned status {response.status_code}",
                upstream_status=response.status_code,
            )

        logger.info(
            "RevenueCat alias created: %s -> %s",
            source_app_user_id,
            target_app_user_id,
        )
