"""
Event detection and field extraction shared by the NFT indexers.

Detection is three-tiered: the payload's own ``type``, then an ``events``
array, then a heuristic over the human-readable ``description``.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..core.matchers import ShapeMatcher, as_dict, as_list, as_number, first_number, first_str


DEFAULT_CURRENCY = "SOL"
UNKNOWN_MARKETPLACE = "UNKNOWN"


@dataclass(frozen=True)
class NFTEvent:
    """A detected NFT event: its type, its data object and the enclosing event."""
    event_type: str
    data: Dict[str, Any]
    context: Dict[str, Any]

    @property
    def description(self) -> str:
        return first_str(self.context, "description")


def _event(event_type: str, context: Dict[str, Any]) -> NFTEvent:
    data = as_dict(context.get("data"))
    return NFTEvent(event_type=event_type, data=data if data is not None else context, context=context)


def build_nft_matchers(
    event_types: Sequence[str],
    classify_description: Callable[[str], Optional[str]],
    stop_on_events_array: bool = False
) -> List[ShapeMatcher]:
    """
    Build the three-tier detector for a set of NFT event types.

    ``classify_description`` maps a description to a synthetic event type,
    or None. With ``stop_on_events_array`` a non-empty events array ends
    detection even when none of its entries match.
    """

    def top_level(details: Dict[str, Any]) -> Optional[List[NFTEvent]]:
        event_type = details.get("type")
        if event_type in event_types:
            return [_event(event_type, details)]
        return None

    def events_array(details: Dict[str, Any]) -> Optional[List[NFTEvent]]:
        events = as_list(details.get("events"))
        found = []
        for event in events:
            event = as_dict(event)
            if event is not None and event.get("type") in event_types:
                found.append(_event(event["type"], event))
        if found or (stop_on_events_array and events):
            return found
        return None

    def description(details: Dict[str, Any]) -> Optional[List[NFTEvent]]:
        text = first_str(details, "description")
        event_type = classify_description(text) if text else None
        if event_type is None:
            return None
        synthetic = {"type": event_type, "description": text}
        for key in ("source", "instructions"):
            if key in details:
                synthetic[key] = details[key]
        return [NFTEvent(event_type=event_type, data=synthetic, context=synthetic)]

    return [
        ShapeMatcher("top_level", top_level, exclusive=True),
        ShapeMatcher("events", events_array, exclusive=True),
        ShapeMatcher("description", description, exclusive=True),
    ]


def extract_mint_and_name(data: Dict[str, Any]) -> tuple:
    """Mint address and display name, falling back to an abbreviated mint."""
    mint = first_str(data, "mint")
    name = ""
    nft = as_dict(data.get("nft"))
    if not mint and nft is not None:
        mint = first_str(nft, "mint")
        name = first_str(nft, "name")
    if not name:
        name = first_str(as_dict(data.get("metadata")), "name")
    if not name and len(mint) > 5:
        name = f"NFT {mint[:3]}...{mint[-3:]}"
    return mint, name


def extract_amount(data: Dict[str, Any]) -> float:
    """Amount as a number or numeric string, else ``price``; 0 when absent."""
    if "amount" in data and isinstance(data["amount"], (int, float, str)) and not isinstance(data["amount"], bool):
        return as_number(data["amount"], allow_string=True) or 0.0
    return first_number(data, "price") or 0.0


def extract_marketplace(event: NFTEvent, use_source: bool = True) -> str:
    marketplace = first_str(event.data, "marketplace")
    if not marketplace and use_source:
        marketplace = first_str(event.context, "source")
    return marketplace


def marketplace_allowed(marketplace: str, allowed: List[str]) -> bool:
    """An empty marketplace is never filtered out."""
    if not allowed or not marketplace:
        return True
    lowered = marketplace.lower()
    return any(lowered == m.lower() for m in allowed)
