"""
Completion result enrichment.

Turns the `result` object of a completed OCR callback into the derived
document fields:

  confidence        values > 1 are percentages → divided by 100
  extracted_date    first parseable entry of metadata.dates
  extracted_amount  largest parseable entry of metadata.amounts
  category          category.primary_category
  searchable_content  OCR text + original filename + invoice numbers,
                      names, emails, tax ids; whitespace-normalised

Every sub-object is optional; a result carrying only text + confidence is valid.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from docproc.models.documents import Document

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")

# Tried in order after ISO-8601
_DATE_FORMATS = (
    "%d.%m.%Y",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%d-%m-%Y",
    "%Y/%m/%d",
    "%d %B %Y",
    "%d %b %Y",
    "%B %d, %Y",
)

_SEARCHABLE_METADATA_KEYS = ("invoice_numbers", "names", "emails", "tax_ids")

_TWO_PLACES = Decimal("0.01")


# ---------------------------------------------------------------------------
# Scalar helpers
# ---------------------------------------------------------------------------

def normalize_confidence(value: float | int | str | Decimal) -> Decimal:
    """Return confidence in the 0..1 range, rounded to two places."""
    confidence = Decimal(str(value))
    if confidence > 1:
        confidence = confidence / 100
    return confidence.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


def parse_date(raw: Any) -> date | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    candidate = raw.strip()
    try:
        return datetime.fromisoformat(candidate.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date()
        except ValueError:
            continue
    return None


def parse_amount(raw: Any) -> Decimal | None:
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, str):
        raw = raw.strip().replace(" ", "")
        # "1.234,56" → "1234.56", "1,234.56" → "1234.56"
        if "," in raw and "." in raw:
            if raw.rfind(",") > raw.rfind("."):
                raw = raw.replace(".", "").replace(",", ".")
            else:
                raw = raw.replace(",", "")
        elif "," in raw:
            raw = raw.replace(",", ".")
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Field extraction
# ---------------------------------------------------------------------------

def extract_date(metadata: dict[str, Any], document_id: str | None = None) -> date | None:
    """First entry of metadata['dates']; an unparseable first entry yields None."""
    dates = metadata.get("dates") or []
    if not isinstance(dates, list) or not dates:
        return None
    parsed = parse_date(dates[0])
    if parsed is None:
        logger.warning(
            "Failed to parse extracted date | doc=%s date=%r", document_id, dates[0],
        )
    return parsed


def extract_amount(metadata: dict[str, Any]) -> Decimal | None:
    amounts = metadata.get("amounts") or []
    if not isinstance(amounts, list):
        return None
    parsed = [a for a in (parse_amount(raw) for raw in amounts) if a is not None]
    return max(parsed) if parsed else None


def extract_category(category: Any) -> str | None:
    if isinstance(category, dict):
        name = category.get("primary_category")
    else:
        name = category
    if isinstance(name, str) and name.strip():
        return name.strip()[:255]
    return None


def _flatten(values: Any) -> Iterable[str]:
    if isinstance(values, (list, tuple)):
        return (str(v) for v in values if v is not None)
    if values:
        return (str(values),)
    return ()


def build_searchable_content(
    ocr_text:      str | None,
    original_name: str | None,
    metadata:      dict[str, Any] | None,
) -> str:
    parts: list[str] = []
    if ocr_text:
        parts.append(ocr_text)
    if original_name:
        parts.append(original_name)
    for key in _SEARCHABLE_METADATA_KEYS:
        values = " ".join(_flatten((metadata or {}).get(key)))
        if values:
            parts.append(values)
    return _WHITESPACE_RE.sub(" ", " ".join(parts)).strip()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def apply_completion_result(doc: "Document", result: dict[str, Any]) -> None:
    """
    Copy a completed result onto doc. Fields absent from result leave the
    corresponding document field untouched, except the derived ones which
    are recomputed from what is present.
    """
    if result.get("text") is not None:
        doc.ocr_text = result["text"]
    if result.get("confidence") is not None:
        doc.confidence_score = normalize_confidence(result["confidence"])
    if result.get("language"):
        doc.language = str(result["language"])[:5]

    metadata = result.get("metadata")
    if isinstance(metadata, dict):
        doc.extracted_metadata = metadata
        doc.extracted_date     = extract_date(metadata, doc.id)
        doc.extracted_amount   = extract_amount(metadata)

    if result.get("category") is not None:
        category = extract_category(result["category"])
        if category is not None:
            doc.category = category

    doc.searchable_content = build_searchable_content(
        doc.ocr_text, doc.original_name, doc.extracted_metadata,
    )
