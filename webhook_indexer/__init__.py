"""
Solana Webhook Indexer

A multi-tenant service that turns webhook-delivered Solana events
into rows of tenant-owned PostgreSQL tables:
- Upstream webhook subscription management with capacity eviction
- Pluggable normalization strategies for NFT and token events
- Per-tenant connection pooling and token metadata enrichment
- REST API for indexer lifecycle and inbound events
"""

__version__ = "0.1.0"
