from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Any

UNKNOWN_ADDRESS = "Unknown Address"

_ABBREVIATIONS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(rf"\b{word}\b"), short)
    for word, short in (
        ("NORTH", "N"),
        ("SOUTH", "S"),
        ("EAST", "E"),
        ("WEST", "W"),
        ("STREET", "ST"),
        ("AVENUE", "AVE"),
        ("BOULEVARD", "BLVD"),
        ("DRIVE", "DR"),
        ("ROAD", "RD"),
        ("LANE", "LN"),
        ("COURT", "CT"),
        ("PLACE", "PL"),
        ("CIRCLE", "CIR"),
        ("APARTMENT", "APT"),
        ("BUILDING", "BLDG"),
        ("FLOOR", "FL"),
        ("SUITE", "STE"),
    )
)
_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class DedupKey:
    source: str
    region: str
    normalized_address: str

    def digest(self) -> str:
        raw = f"{self.source}|{self.region}|{self.normalized_address}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def normalize_address(raw: str | None) -> str:
    """Uppercase, abbreviate common street words, strip punctuation, collapse whitespace."""
    if not raw:
        return ""
    normalized = raw.upper()
    for pattern, short in _ABBREVIATIONS:
        normalized = pattern.sub(short, normalized)
    normalized = _PUNCTUATION_RE.sub(" ", normalized)
    return _WHITESPACE_RE.sub(" ", normalized).strip()


def extract_address(item: dict[str, Any]) -> str:
    value = item.get("address")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return UNKNOWN_ADDRESS


def dedup_key(*, source: str, region: str, item: dict[str, Any]) -> DedupKey:
    return DedupKey(
        source=source,
        region=region,
        normalized_address=normalize_address(extract_address(item)),
    )
