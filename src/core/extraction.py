"""Promo code and URL extraction (core domain).

Extraction is purely positional: backtick-delimited codes win, otherwise a
short alphanumeric line is taken as the code, and URL-looking lines supply the
destination. Nothing here performs I/O and nothing here raises.
"""

from __future__ import annotations

import re
from typing import List, Optional

from core.models import ExtractedRecord

CODE_DELIMITER = "`"
CODE_MIN_LENGTH = 4
CODE_MAX_LENGTH = 20

URL_MARKERS = ("http", ".com", ".net", ".org")
DOMAIN_TLDS = ("com", "net", "org", "co.uk", "tr")

_PRIORITY_CODE = re.compile(
    rf"{CODE_DELIMITER}([A-Za-z0-9]{{{CODE_MIN_LENGTH},{CODE_MAX_LENGTH}}}){CODE_DELIMITER}"
)
_DOMAIN = re.compile(
    r"[A-Za-z0-9-]+\.(?:" + "|".join(re.escape(tld) for tld in DOMAIN_TLDS) + r")",
    re.IGNORECASE,
)
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def split_lines(text: str) -> List[str]:
    """Return the non-empty, trimmed lines of a message."""

    return [line.strip() for line in (text or "").split("\n") if line.strip()]


def is_url_line(line: str) -> bool:
    return any(marker in line for marker in URL_MARKERS)


def url_from_line(line: str) -> Optional[str]:
    """Turn a URL-looking line into an absolute URL, if possible."""

    if line.startswith("http"):
        return line
    domains = [match.group(0) for match in _DOMAIN.finditer(line)]
    if not domains:
        return None
    # max() keeps the first of equally long candidates
    return "https://" + max(domains, key=len)


def fallback_code(line: str) -> Optional[str]:
    code = _NON_ALNUM.sub("", line)
    if CODE_MIN_LENGTH <= len(code) <= CODE_MAX_LENGTH:
        return code
    return None


def extract(text: str) -> ExtractedRecord:
    """Extract the promo code(s) and destination URL from message text."""

    lines = split_lines(text)
    candidates: List[str] = []

    for line in lines:
        candidates.extend(_PRIORITY_CODE.findall(line))

    url: Optional[str] = None
    for line in lines:
        if is_url_line(line):
            found = url_from_line(line)
            if found:
                url = found
        elif CODE_DELIMITER not in line and not candidates:
            code = fallback_code(line)
            if code:
                candidates.append(code)

    has_url = url is not None
    has_code = bool(candidates)
    primary = candidates[0] if candidates else None

    # Partial matches are never deliverable.
    if not (has_code and has_url):
        has_code = False
        primary = None

    return ExtractedRecord(
        primary_code=primary,
        all_codes=tuple(candidates),
        destination_url=url,
        has_code=has_code,
        has_url=has_url,
    )
