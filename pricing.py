"""Price-list resolution for the till.

Price list entries are ``ItemPriceList`` documents as replicated from the
central system::

    {"item": "ITEM-001", "priceList": "Standard Selling", "Rate": 12.5,
     "Valid_From": "2024-01-01", "Valid_To": ""}

Validity bounds are inclusive dates. A time or zone suffix on the stored
value is ignored, only the date part counts.

When several entries are valid on the same day the entry with the latest
``Valid_From`` wins. Entries sharing that date are ordered by their
``modified`` timestamp (latest wins) and then by ``_id`` (greatest wins), so
the result never depends on the order entries were loaded in.
"""
import datetime as dt
from typing import Any, Dict, Iterable, List, Optional, Union

DateLike = Union[dt.date, dt.datetime, str, None]

_MIN_DATE = ""  # sorts before any ISO date


def _date_part(value: Any) -> Optional[str]:
    """Normalize a stored bound (``2024-01-01T00:00:00Z``) to ``YYYY-MM-DD``."""
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value.date().isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    text = str(value).strip()
    if not text:
        return None
    return text.split("Z")[0].split("T")[0].split(" ")[0]


def _as_of_string(as_of: DateLike) -> str:
    if as_of is None:
        return dt.date.today().isoformat()
    return _date_part(as_of) or dt.date.today().isoformat()


def is_price_valid(entry: Dict[str, Any], as_of: DateLike = None) -> bool:
    """True when ``as_of`` falls inside the entry's [Valid_From, Valid_To] window."""
    day = _as_of_string(as_of)
    valid_from = _date_part(entry.get("Valid_From"))
    valid_to = _date_part(entry.get("Valid_To"))
    if valid_from and day < valid_from:
        return False
    if valid_to and day > valid_to:
        return False
    return True


def _entry_rate(entry: Dict[str, Any]) -> float:
    try:
        return float(entry.get("Rate") or 0)
    except (TypeError, ValueError):
        return 0.0


def _sort_key(entry: Dict[str, Any]):
    return (
        _date_part(entry.get("Valid_From")) or _MIN_DATE,
        str(entry.get("modified") or entry.get("modified_date") or ""),
        str(entry.get("_id") or ""),
    )


def best_valid_price(entries: Iterable[Dict[str, Any]], as_of: DateLike = None) -> Dict[str, Any]:
    """Pick the active entry among one item's price list entries."""
    entries = list(entries)
    if not entries:
        return {"valid": False, "price": 0.0, "note": "No price entries found"}
    valid = [e for e in entries if is_price_valid(e, as_of)]
    if not valid:
        return {"valid": False, "price": 0.0, "note": "No valid prices for current date"}
    if len(valid) == 1:
        return {"valid": True, "price": _entry_rate(valid[0]), "note": None}
    best = sorted(valid, key=_sort_key, reverse=True)[0]
    return {
        "valid": True,
        "price": _entry_rate(best),
        "note": f"Price from {_date_part(best.get('Valid_From')) or 'default'}",
    }


def filter_by_price_list(entries: Iterable[Dict[str, Any]], price_list_id: str) -> List[Dict[str, Any]]:
    return [e for e in entries if e.get("priceList") == price_list_id]


def resolve_price(item_id: str, entries: Iterable[Dict[str, Any]], as_of: DateLike = None) -> Dict[str, Any]:
    """Resolve the price of ``item_id`` from (already price-list filtered) entries.

    Returns ``{"valid", "price", "note"}``. An invalid result means the caller
    should fall back to the item's base rate.
    """
    matching = [e for e in entries if e.get("item") == item_id]
    if not matching:
        return {"valid": False, "price": 0.0, "note": "Item not found in price list"}
    return best_valid_price(matching, as_of)
