"""
Helper utilities for common operations
"""
import math
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from billflow.core.models.state import BillType, ArtifactKind


DATE_PATTERN = re.compile(r'(\d{4})\D{0,3}(\d{1,2})\D{0,3}(\d{1,2})')
AMOUNT_STRIP_PATTERN = re.compile(r'[^0-9.\-]')


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the database stores datetimes"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_document_id() -> str:
    """
    Generate a unique document ID

    Returns:
        UUID4 string
    """
    return str(uuid.uuid4())


def artifact_path(owner_id: str, document_id: str, kind: ArtifactKind) -> str:
    """
    Build the deterministic storage path for a document artifact

    Args:
        owner_id: Owning company identifier
        document_id: Document identifier
        kind: Artifact kind

    Returns:
        Path in the form {owner_id}/{document_id}/{artifact_kind}
    """
    return f"{owner_id}/{document_id}/{ArtifactKind(kind).value}"


def parse_amount(value: Any) -> Optional[int]:
    """
    Parse a free-form amount into integer minor units

    Thousands separators, currency symbols and unit suffixes are dropped
    ("1,234,500원" -> 1234500). Halves round up.

    Args:
        value: Number or string

    Returns:
        Integer amount or None when the input is not a finite number
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        cleaned = AMOUNT_STRIP_PATTERN.sub('', value)
        if not cleaned:
            return None
        try:
            numeric = float(cleaned)
        except ValueError:
            return None
    else:
        return None

    if not math.isfinite(numeric):
        return None
    return int(math.floor(numeric + 0.5))


def parse_date(value: Any) -> Optional[str]:
    """
    Parse a date written in year-month-day order with flexible separators

    Accepts "2024-03-05", "2024.3.5", "2024/03/05" and "2024년 3월 5일".
    Month and day are range-checked only; no calendar validation.

    Args:
        value: Date string

    Returns:
        Canonical YYYY-MM-DD string or None if unparseable
    """
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None

    match = DATE_PATTERN.search(trimmed)
    if not match:
        return None

    year, month, day = (int(part) for part in match.groups())
    if year == 0 or not 1 <= month <= 12 or not 1 <= day <= 31:
        return None
    return f"{year:04d}-{month:02d}-{day:02d}"


def clean_text(value: Any) -> Optional[str]:
    """Trim a string value; empty or non-string input becomes None"""
    if not isinstance(value, str):
        return None
    trimmed = ' '.join(value.split())
    return trimmed or None


def parse_bill_type(value: Any) -> Optional[BillType]:
    """Map a free-form bill type onto the fixed vocabulary, or None"""
    text = clean_text(value)
    if not text:
        return None
    try:
        return BillType(text.upper())
    except ValueError:
        return None


def sanitize_filename(filename: str) -> str:
    """
    Sanitize filename by removing invalid characters

    Args:
        filename: Original filename

    Returns:
        Sanitized filename
    """
    # Remove invalid characters
    sanitized = re.sub(r'[<>:"/\\|?*]', '_', filename)
    # Remove leading/trailing spaces and dots
    sanitized = sanitized.strip('. ')
    return sanitized


def truncate_text(text: str, max_length: int = 500, suffix: str = "...") -> str:
    """
    Truncate text to maximum length

    Args:
        text: Text to truncate
        max_length: Maximum length
        suffix: Suffix to add if truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - len(suffix)] + suffix
