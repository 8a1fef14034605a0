"""
Indexer variants, one per supported type tag.
"""

from webhook_indexer.models.indexer import IndexerType

from .nft_bids import NFTBidIndexer
from .nft_prices import NFTPriceIndexer
from .token_borrow import TokenBorrowIndexer
from .token_prices import TokenPriceIndexer

VARIANTS = {
    IndexerType.NFT_BIDS: NFTBidIndexer,
    IndexerType.NFT_PRICES: NFTPriceIndexer,
    IndexerType.TOKEN_BORROW: TokenBorrowIndexer,
    IndexerType.TOKEN_PRICES: TokenPriceIndexer,
}

__all__ = [
    "NFTBidIndexer",
    "NFTPriceIndexer",
    "TokenBorrowIndexer",
    "TokenPriceIndexer",
    "VARIANTS",
]
