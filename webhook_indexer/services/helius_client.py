"""
Client for the upstream webhook provider (Helius) REST API.

Only the subscription operations the pipeline needs are covered:
create, fetch, update and delete a webhook.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlencode

import aiohttp
import structlog

from webhook_indexer.core.config import settings
from webhook_indexer.core.exceptions import UpstreamWebhookError


logger = structlog.get_logger(__name__)


@dataclass
class WebhookConfig:
    """Subscription configuration as understood by the provider."""
    webhook_url: str
    account_addresses: List[str] = field(default_factory=list)
    webhook_type: str = "enhanced"
    transaction_types: List[str] = field(default_factory=lambda: ["ANY"])
    account_address_transaction_types: Optional[List[Dict[str, Any]]] = None
    blocks: Optional[Dict[str, Any]] = None
    webhook_id: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "webhookURL": self.webhook_url,
            "webhookType": self.webhook_type,
            "accountAddresses": list(self.account_addresses),
            "transactionTypes": list(self.transaction_types),
        }
        if self.account_address_transaction_types:
            body["accountAddressTransactionTypes"] = self.account_address_transaction_types
        if self.blocks:
            body["blocks"] = self.blocks
        return body

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "WebhookConfig":
        return cls(
            webhook_url=data.get("webhookURL", ""),
            account_addresses=list(data.get("accountAddresses") or []),
            webhook_type=data.get("webhookType") or "enhanced",
            transaction_types=list(data.get("transactionTypes") or ["ANY"]),
            account_address_transaction_types=data.get("accountAddressTransactionTypes"),
            blocks=data.get("blocks"),
            webhook_id=data.get("webhookID"),
        )


class WebhookAPI(Protocol):
    """Remote subscription operations."""

    async def create_webhook(self, config: WebhookConfig) -> str:
        ...

    async def get_webhook(self, webhook_id: str) -> WebhookConfig:
        ...

    async def update_webhook(self, webhook_id: str, config: WebhookConfig) -> None:
        ...

    async def delete_webhook(self, webhook_id: str) -> None:
        ...


def _callback_url(base_url: str, query: Dict[str, str]) -> str:
    url = f"{base_url.rstrip('/')}/webhooks"
    query = {k: v for k, v in query.items() if v}
    return f"{url}?{urlencode(query)}" if query else url


def build_shared_callback_url(base_url: Optional[str] = None, secret: Optional[str] = None) -> str:
    """Callback URL for the subscription shared across tenants."""
    return _callback_url(
        base_url if base_url is not None else settings.helius_webhook_base_url,
        {"key": secret if secret is not None else settings.helius_webhook_secret},
    )


def build_indexer_callback_url(
    indexer_id: str,
    base_url: Optional[str] = None,
    secret: Optional[str] = None
) -> str:
    """Callback URL for a subscription dedicated to one indexer."""
    return _callback_url(
        base_url if base_url is not None else settings.helius_webhook_base_url,
        {
            "id": indexer_id,
            "key": secret if secret is not None else settings.helius_webhook_secret,
        },
    )


class HeliusClient:
    """
    aiohttp client for the Helius webhooks API.

    Non-2xx responses raise UpstreamWebhookError carrying the HTTP status.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.api_key = api_key if api_key is not None else settings.helius_api_key
        self.api_url = (api_url or settings.helius_api_url).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.helius_request_timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self.logger = logger.bind(service="helius_client")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, path: str) -> str:
        return f"{self.api_url}{path}"

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None
    ) -> Any:
        session = await self._get_session()
        try:
            async with session.request(
                method,
                self._url(path),
                params={"api-key": self.api_key},
                json=body,
            ) as response:
                text = await response.text()
                if response.status < 200 or response.status >= 300:
                    self.logger.warning(
                        "Webhook API call failed",
                        operation=operation,
                        status=response.status,
                        body=text[:500],
                    )
                    raise UpstreamWebhookError(
                        operation,
                        f"status {response.status}: {text[:500]}",
                        status=response.status,
                    )
                if not text:
                    return None
                try:
                    return await response.json(content_type=None)
                except ValueError:
                    return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error("Webhook API unreachable", operation=operation, error=str(e))
            raise UpstreamWebhookError(operation, str(e))

    async def create_webhook(self, config: WebhookConfig) -> str:
        data = await self._request("create", "POST", "/webhooks", config.to_api())
        if not isinstance(data, dict):
            raise UpstreamWebhookError("create", "unexpected response body")
        webhook_id = data.get("webhookID")
        if not webhook_id or not isinstance(webhook_id, str):
            raise UpstreamWebhookError("create", "response did not include a webhook id")

        self.logger.info(
            "Webhook created",
            webhook_id=webhook_id,
            addresses=len(config.account_addresses),
        )
        return webhook_id

    async def get_webhook(self, webhook_id: str) -> WebhookConfig:
        data = await self._request("get", "GET", f"/webhooks/{webhook_id}")
        if not isinstance(data, dict):
            raise UpstreamWebhookError("get", "unexpected response body")
        config = WebhookConfig.from_api(data)
        config.webhook_id = config.webhook_id or webhook_id
        return config

    async def update_webhook(self, webhook_id: str, config: WebhookConfig) -> None:
        await self._request("update", "PUT", f"/webhooks/{webhook_id}", config.to_api())
        self.logger.info(
            "Webhook updated",
            webhook_id=webhook_id,
            addresses=len(config.account_addresses),
        )

    async def delete_webhook(self, webhook_id: str) -> None:
        await self._request("delete", "DELETE", f"/webhooks/{webhook_id}")
        self.logger.info("Webhook deleted", webhook_id=webhook_id)


# Global client instance
_client: Optional[HeliusClient] = None


def get_helius_client() -> HeliusClient:
    """Get or create the global Helius client."""
    global _client
    if _client is None:
        _client = HeliusClient()
    return _client


async def close_helius_client() -> None:
    """Close the global Helius client."""
    global _client
    if _client:
        await _client.close()
        _client = None
