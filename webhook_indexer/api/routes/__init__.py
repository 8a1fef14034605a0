"""API routes package."""

from . import credentials, indexers, subscriptions, webhooks

__all__ = ["credentials", "indexers", "subscriptions", "webhooks"]
