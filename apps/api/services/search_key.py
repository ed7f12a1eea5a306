"""Deterministic search-session keys and B/L row fingerprints."""

from __future__ import annotations

import hashlib
import json
import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

SEARCH_KEY_PREFIX = "sk_"
ROW_FINGERPRINT_PREFIX = "bf_"
# 32 hex chars = 128 bits.
ROW_FINGERPRINT_HEX_LENGTH = 32
DEFAULT_SORT_ORDER = "desc"

DateLike = Union[date, datetime, str, None]

_ROW_FINGERPRINT_FIELDS = (
    "id",
    "date",
    "exporter",
    "importer",
    "hs_code",
    "product_name",
    "quantity",
    "weight",
    "value_usd",
    "origin_country",
    "destination_country",
)


def normalize_keyword(keyword: Any) -> str:
    """Trim, collapse inner whitespace and lower-case a free-text keyword."""
    return re.sub(r"\s+", " ", str(keyword or "").strip()).lower()


def normalize_date(value: DateLike) -> str:
    """Normalize a date bound to ``YYYY-MM-DD`` (empty when missing or invalid)."""
    if value is None or value == "":
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return ""


def canonical_filters(filters: Optional[Iterable[Mapping[str, Any]]]) -> List[Dict[str, str]]:
    """Drop empty filters, normalize values and sort by type then value."""
    normalized = []
    for item in filters or []:
        value = str(item.get("value") or "").strip().lower()
        if not value:
            continue
        normalized.append({"type": str(item.get("type") or "").strip().lower(), "value": value})
    normalized.sort(key=lambda entry: (entry["type"], entry["value"]))
    return normalized


def canonical_query(query: Mapping[str, Any]) -> Dict[str, Any]:
    """Canonical, order-independent form of a logical search query."""
    date_range = query.get("date_range") or {}
    sort_order = str(query.get("sort_order") or DEFAULT_SORT_ORDER).strip().lower()
    return {
        "category": str(query.get("category") or "").strip().lower(),
        "keyword": normalize_keyword(query.get("keyword")),
        "filters": canonical_filters(query.get("filters")),
        "date_from": normalize_date(date_range.get("from") if isinstance(date_range, Mapping) else None),
        "date_to": normalize_date(date_range.get("to") if isinstance(date_range, Mapping) else None),
        "sort_order": sort_order,
    }


def derive_search_key(query: Mapping[str, Any]) -> str:
    """
    Derive the stable session key for a logical search query.

    Pure function: identical logical queries (filter order, keyword spacing
    and case, date formatting notwithstanding) always map to the same key and
    any meaningful change maps to a different one. The canonical form is
    hashed with SHA-256.
    """
    serialized = json.dumps(canonical_query(query), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return SEARCH_KEY_PREFIX + hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _fingerprint_part(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    return str(value).strip().upper()


def generate_row_fingerprint(row: Mapping[str, Any]) -> str:
    """Stable fingerprint for one B/L record from its id plus key trade fields."""
    parts = [_fingerprint_part(row.get(field)) for field in _ROW_FINGERPRINT_FIELDS]
    if not parts[_ROW_FINGERPRINT_FIELDS.index("value_usd")]:
        parts[_ROW_FINGERPRINT_FIELDS.index("value_usd")] = "0"
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return ROW_FINGERPRINT_PREFIX + digest[:ROW_FINGERPRINT_HEX_LENGTH]


def fingerprint_set_digest(fingerprints: Iterable[str]) -> str:
    """Order-independent short digest of a fingerprint set."""
    joined = "\n".join(sorted(set(fingerprints)))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:32]
