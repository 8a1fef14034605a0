"""
Ordered shape matchers over free-form event detail blobs.

Each matcher inspects the decoded details and either returns None (shape
not present) or a list of extracted items. Matchers are applied in order;
an exclusive matcher that matches stops the scan.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar, Union


T = TypeVar("T")


@dataclass(frozen=True)
class ShapeSkip:
    """An entry of a recognized shape that could not be normalized."""
    reason: str
    key: Optional[str] = None


@dataclass(frozen=True)
class ShapeMatcher(Generic[T]):
    """A named extractor for one known payload shape."""
    name: str
    extract: Callable[[Dict[str, Any]], Optional[List[Union[T, ShapeSkip]]]]
    exclusive: bool = False


def apply_matchers(
    matchers: List[ShapeMatcher[T]],
    details: Dict[str, Any]
) -> List[Tuple[str, Union[T, ShapeSkip]]]:
    """Run matchers in order and collect (matcher name, item) pairs."""
    matched: List[Tuple[str, Union[T, ShapeSkip]]] = []
    for matcher in matchers:
        items = matcher.extract(details)
        if items is None:
            continue
        matched.extend((matcher.name, item) for item in items)
        if matcher.exclusive:
            break
    return matched


# Field access helpers

def as_dict(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


def as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def first_str(data: Optional[Dict[str, Any]], *keys: str) -> str:
    """First non-empty string found under any of the keys."""
    if not data:
        return ""
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def as_number(value: Any, allow_string: bool = False) -> Optional[float]:
    """Interpret a JSON number (and optionally a numeric string) as float."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if allow_string and isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def first_number(data: Optional[Dict[str, Any]], *keys: str, allow_string: bool = False) -> Optional[float]:
    """First numeric value found under any of the keys."""
    if not data:
        return None
    for key in keys:
        if key in data:
            number = as_number(data[key], allow_string=allow_string)
            if number is not None:
                return number
    return None


def contains_all(text: str, *words: str) -> bool:
    lowered = text.lower()
    return all(word in lowered for word in words)


def word_after(parts: List[str], marker: str, last: bool = True) -> Optional[str]:
    """Word following a marker word in a split description."""
    found = None
    for idx, part in enumerate(parts):
        if part == marker and idx + 1 < len(parts):
            found = parts[idx + 1]
            if not last:
                break
    return found


def number_after(parts: List[str], marker: str) -> Optional[float]:
    """Last parseable number that follows the marker word."""
    number = None
    for idx, part in enumerate(parts):
        if part == marker and idx + 1 < len(parts):
            parsed = as_number(parts[idx + 1], allow_string=True)
            if parsed is not None:
                number = parsed
    return number


def equals_any(value: str, candidates: List[str]) -> bool:
    lowered = value.lower()
    return any(lowered == c.lower() for c in candidates)
