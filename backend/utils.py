"""
Utility Functions

Cell/field helpers shared by the CSV importer and contact CRUD:
  - parse_json_or_list(value):   "a; b" or '["a","b"]'   → ["a", "b"]
  - parse_json_or_object(value): "x:@a, y:@b" or JSON    → {"x": "@a", "y": "@b"}
  - parse_coordinate(value):     "", "?", "null"         → None
  - parse_date(value):           free-form date          → "YYYY-MM-DD" | None
  - title_case(name):            "jane doe"              → "Jane Doe"
  - chunked(items, size):        fixed-size slices for batched writes
"""

import json
import logging
import re
from typing import Iterator, Optional, Sequence

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

_SPLIT_RE = re.compile(r"[;,]")
_NULLISH = {"", "null", "none"}


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and value.strip().lower() in _NULLISH)


def _clean_list(items) -> list[str]:
    out = []
    for v in items:
        if not isinstance(v, str):
            continue
        v = v.strip()
        if v and v.lower() != "null":
            out.append(v)
    return out


def parse_json_or_list(value) -> list[str]:
    """JSON array first; otherwise split on ``;`` / ``,``.  Empties and ``null`` dropped."""
    if isinstance(value, (list, tuple)):
        return _clean_list(value)
    if _is_blank(value):
        return []
    text = str(value)
    try:
        decoded = json.loads(text)
    except ValueError:
        decoded = None
    if isinstance(decoded, list):
        return _clean_list(decoded)
    return _clean_list(_SPLIT_RE.split(text))


def parse_json_or_object(value) -> dict[str, str]:
    """JSON object first; otherwise ``key:value`` pairs split on ``;`` / ``,``."""
    if isinstance(value, dict):
        return {str(k): v for k, v in value.items()}
    if _is_blank(value):
        return {}
    text = str(value)
    try:
        decoded = json.loads(text)
    except ValueError:
        decoded = None
    if isinstance(decoded, dict):
        return decoded

    result: dict[str, str] = {}
    for part in _SPLIT_RE.split(text):
        part = part.strip()
        if not part or part.lower() == "null":
            continue
        if ":" in part:
            key, val = part.split(":", 1)
            result[key.strip()] = val.strip()
        else:
            result[part] = ""
    return result


def parse_coordinate(value) -> Optional[float]:
    """Empty, ``?`` or ``null`` → None; unparsable → None; otherwise float."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    if text in ("", "?") or text.lower() == "null":
        return None
    try:
        return float(text)
    except ValueError:
        return None


def parse_date(value) -> Optional[str]:
    """Normalize a free-form date to ISO ``YYYY-MM-DD``; None when unparsable."""
    if _is_blank(value):
        return None
    try:
        return date_parser.parse(str(value).strip()).date().isoformat()
    except (ValueError, OverflowError):
        logger.debug("Unparsable date %r", value)
        return None


def clean_str(value) -> Optional[str]:
    """Trim; empty → None."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def title_case(value: Optional[str]) -> Optional[str]:
    """Upper-case the first letter of every space-separated word."""
    if value is None:
        return None
    return " ".join(w[:1].upper() + w[1:] for w in value.split(" "))


def chunked(items: Sequence, size: int) -> Iterator[Sequence]:
    for i in range(0, len(items), size):
        yield items[i:i + size]
