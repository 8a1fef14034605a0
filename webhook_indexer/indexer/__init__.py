"""
Indexer variants and the registry that builds them.
"""

from typing import Optional

from .core.registry import IndexerRegistry
from .handlers import VARIANTS


def create_registry() -> IndexerRegistry:
    """Registry with every shipped variant registered."""
    return IndexerRegistry(VARIANTS)


# Global registry instance
_registry: Optional[IndexerRegistry] = None


def get_indexer_registry() -> IndexerRegistry:
    """Get or create the process-wide indexer registry."""
    global _registry
    if _registry is None:
        _registry = create_registry()
    return _registry


__all__ = ["IndexerRegistry", "create_registry", "get_indexer_registry"]
