from __future__ import annotations

import re

VALIDATION_ERROR = "validation_error"
UPSTREAM_ERROR = "upstream_error"
SCRAPE_ERROR = "scrape_error"
DELIVERY_ERROR = "delivery_error"

ERROR_PREFIXES = (f"{VALIDATION_ERROR}:", f"{UPSTREAM_ERROR}:", f"{SCRAPE_ERROR}:")

_VALIDATION_RE = re.compile(r"validation", re.IGNORECASE)
_UPSTREAM_RE = re.compile(r"timeout|timed out|network|ECONN|ENOTFOUND|getaddrinfo|name resolution|dns", re.IGNORECASE)


def classify_error_message(message: str | None) -> str:
    text = (message or "").strip() or "unknown_error"
    if text.startswith(ERROR_PREFIXES):
        return text
    if _VALIDATION_RE.search(text):
        return f"{VALIDATION_ERROR}:{text}"
    if _UPSTREAM_RE.search(text):
        return f"{UPSTREAM_ERROR}:{text}"
    return f"{SCRAPE_ERROR}:{text}"


def classify_exception(exc: BaseException) -> str:
    message = str(exc) or type(exc).__name__
    return classify_error_message(message)


def error_category(classified: str) -> str:
    category, _, _ = classified.partition(":")
    return category
