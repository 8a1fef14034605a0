"""
Shared upstream subscription manager.

The provider caps how many addresses one webhook may watch, so tenants
share a single subscription. This manager owns its watched-address set,
enforces the capacity limit by evicting the oldest entries first, and
decides whether to create, update or recreate the remote subscription.
"""

import asyncio
import itertools
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from webhook_indexer.core.config import settings
from webhook_indexer.core.exceptions import ConfigurationError, UpstreamWebhookError

from .helius_client import WebhookAPI, WebhookConfig, build_shared_callback_url


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AddressEntry:
    """A watched address, the indexer that asked for it and when."""
    address: str
    owner_id: str
    added_at: datetime
    sequence: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "owner_id": self.owner_id,
            "added_at": self.added_at.isoformat(),
        }


class SubscriptionManager:
    """
    Owner of the shared subscription's watched-address set.

    All mutations are serialized by one lock that is held across the remote
    calls, so the tracked set and the remote set change together.
    """

    def __init__(
        self,
        api: WebhookAPI,
        webhook_id: Optional[str] = None,
        limit: Optional[int] = None,
        callback_url: Optional[str] = None
    ):
        self.api = api
        self.webhook_id = webhook_id
        self.limit = limit or settings.webhook_address_limit
        self._callback_url = callback_url
        self._entries: List[AddressEntry] = []
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()
        self.logger = logger.bind(service="subscription_manager")

    @property
    def callback_url(self) -> str:
        if self._callback_url:
            return self._callback_url
        if not settings.helius_webhook_base_url:
            raise ConfigurationError("HELIUS_WEBHOOK_BASE_URL is required to create a webhook")
        return build_shared_callback_url()

    def current_addresses(self) -> List[AddressEntry]:
        """Snapshot of the tracked entries, oldest first."""
        return sorted(self._entries, key=self._age_key)

    def owner_addresses(self, owner_id: str) -> List[str]:
        return [e.address for e in self._entries if e.owner_id == owner_id]

    @staticmethod
    def _age_key(entry: AddressEntry):
        return (entry.added_at, entry.sequence)

    def _track(self, addresses: List[str], owner_id: str) -> None:
        now = datetime.utcnow()
        for address in addresses:
            self._entries.append(AddressEntry(address, owner_id, now, next(self._sequence)))

    async def add_addresses(self, addresses: List[str], owner_id: str) -> None:
        """
        Add an owner's addresses to the shared subscription.

        Raises:
            UpstreamWebhookError: If the subscription could not be written,
                even after recreation
        """
        addresses = list(dict.fromkeys(a for a in addresses if a))
        if not addresses:
            self.logger.info("No addresses to add", owner_id=owner_id)
            return

        async with self._lock:
            current: Optional[WebhookConfig] = None
            if self.webhook_id:
                try:
                    current = await self.api.get_webhook(self.webhook_id)
                except UpstreamWebhookError as e:
                    self.logger.error(
                        "Failed to fetch webhook, recreating",
                        webhook_id=self.webhook_id,
                        error=str(e),
                    )
                    await self._delete_quietly(self.webhook_id)
                    self.webhook_id = None

            if current is None:
                self._track(addresses, owner_id)
                surviving = self._evict()
                await self._create(surviving)
                return

            remote = list(current.account_addresses)
            new_addresses = [a for a in addresses if a not in set(remote)]
            if not new_addresses:
                self.logger.info("No new addresses to add", owner_id=owner_id)
                return

            self._track(new_addresses, owner_id)
            if len(remote) + len(new_addresses) > self.limit:
                self.logger.info(
                    "Address limit exceeded, evicting oldest addresses",
                    current=len(remote),
                    new=len(new_addresses),
                    limit=self.limit,
                )
                await self._rewrite(self._evict(), current)
            else:
                await self._rewrite(remote + new_addresses, current)

    async def remove_owner_addresses(self, owner_id: str) -> None:
        """
        Drop every address an owner contributed.

        Raises:
            UpstreamWebhookError: If the subscription could not be rewritten
        """
        async with self._lock:
            removed = {e.address for e in self._entries if e.owner_id == owner_id}
            if not removed:
                return
            self._entries = [e for e in self._entries if e.owner_id != owner_id]

            if not self.webhook_id:
                return
            current = await self.api.get_webhook(self.webhook_id)
            remaining = [a for a in current.account_addresses if a not in removed]
            self.logger.info("Removing owner addresses", owner_id=owner_id, removed=len(removed))
            await self._rewrite(remaining, current)

    def _evict(self) -> List[str]:
        """Keep only the newest ``limit`` entries and return their addresses."""
        ordered = sorted(self._entries, key=self._age_key)
        if len(ordered) > self.limit:
            evicted = ordered[:len(ordered) - self.limit]
            ordered = ordered[len(ordered) - self.limit:]
            self.logger.info(
                "Evicted oldest addresses",
                evicted=[e.address for e in evicted],
                remaining=len(ordered),
            )
        self._entries = ordered
        return [e.address for e in ordered]

    async def _create(self, addresses: List[str]) -> None:
        config = WebhookConfig(
            webhook_url=self.callback_url,
            account_addresses=addresses,
            webhook_type=settings.helius_webhook_type,
        )
        self.webhook_id = await self.api.create_webhook(config)
        self.logger.info("Shared webhook created", webhook_id=self.webhook_id, addresses=len(addresses))

    async def _rewrite(self, addresses: List[str], current: WebhookConfig) -> None:
        config = WebhookConfig(
            webhook_url=current.webhook_url or self.callback_url,
            account_addresses=addresses,
            webhook_type=settings.helius_webhook_type,
            account_address_transaction_types=current.account_address_transaction_types,
            blocks=current.blocks,
        )
        try:
            await self.api.update_webhook(self.webhook_id, config)
        except UpstreamWebhookError as e:
            self.logger.error(
                "Webhook update failed, recreating",
                webhook_id=self.webhook_id,
                error=str(e),
            )
            await self._delete_quietly(self.webhook_id)
            self.webhook_id = None
            await self._create(addresses)

    async def _delete_quietly(self, webhook_id: str) -> None:
        try:
            await self.api.delete_webhook(webhook_id)
        except UpstreamWebhookError as e:
            self.logger.warning("Failed to delete stale webhook", webhook_id=webhook_id, error=str(e))


# Global manager instance
_manager: Optional[SubscriptionManager] = None


def get_subscription_manager() -> SubscriptionManager:
    """Get or create the global subscription manager."""
    global _manager
    if _manager is None:
        from .helius_client import get_helius_client
        _manager = SubscriptionManager(
            get_helius_client(),
            webhook_id=settings.helius_webhook_id,
        )
    return _manager
