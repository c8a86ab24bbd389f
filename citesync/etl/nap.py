"""NAP comparison between a location and the citations found for it."""

import logging
import re
from typing import Iterable, List, Optional, Tuple

from citesync.models import (
    LISTING_ACTION_NEEDED,
    LISTING_FOUND,
    LISTING_NOT_LISTED,
    AuditTotals,
    CitationRecord,
    ExpectedNap,
    ListingRow,
    Location,
)

logger = logging.getLogger(__name__)

# BrightLocal does not report a granular address comparison, so every listing
# is scored as address-correct. Downstream counts depend on this.
ADDRESS_MATCH_FALLBACK = True

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_NON_DIGIT = re.compile(r"\D")


def normalize_text(text: Optional[str]) -> str:
    if not text:
        return ""
    return _WHITESPACE.sub(" ", _NON_WORD.sub("", text.lower())).strip()


def normalize_phone(phone: Optional[str]) -> str:
    if not phone:
        return ""
    digits = _NON_DIGIT.sub("", phone)
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:]
    return digits


def expected_nap(location: Location) -> ExpectedNap:
    parts = [location.address_line1, location.city, location.region, location.postal_code]
    return ExpectedNap(
        name=location.name or "",
        address=", ".join(part for part in parts if part),
        phone=location.phone or "",
    )


def _field_matches(found: Optional[str], expected: str, mode: str, normalizer) -> bool:
    # A missing found value carries no information and is not a mismatch.
    if not found or not found.strip():
        return True
    if mode == "normalized":
        return normalizer(found) == normalizer(expected)
    return found.strip() == expected.strip()


def name_matches(found: Optional[str], expected: str, mode: str = "exact") -> bool:
    return _field_matches(found, expected, mode, normalize_text)


def phone_matches(found: Optional[str], expected: str, mode: str = "exact") -> bool:
    return _field_matches(found, expected, mode, normalize_phone)


def is_live(record: CitationRecord) -> bool:
    return (record.citation_status or "").lower() == "active" or bool(record.url)


def listing_status(live: bool, nap_correct: bool) -> str:
    if not live:
        return LISTING_NOT_LISTED
    if nap_correct:
        return LISTING_FOUND
    return LISTING_ACTION_NEEDED


def build_recommendation(directory: str, live: bool, name_match: bool, phone_match: bool) -> Optional[str]:
    if not live:
        return f"Not listed on {directory}. Submit business listing to improve citation coverage."

    issues = []
    if not name_match:
        issues.append("business name")
    if not phone_match:
        issues.append("phone number")
    if not issues:
        return None
    return f"Incorrect {', '.join(issues)} on {directory}. Update the listing to match current business information."


def compare_citation(
    record: CitationRecord,
    expected: ExpectedNap,
    *,
    location_id: str,
    audit_id: str,
    mode: str = "exact",
) -> ListingRow:
    live = is_live(record)
    name_match = name_matches(record.business_name, expected.name, mode)
    phone_match = phone_matches(record.telephone, expected.phone, mode)
    address_match = ADDRESS_MATCH_FALLBACK
    nap_correct = name_match and address_match and phone_match

    return ListingRow(
        location_id=location_id,
        audit_id=audit_id,
        directory_name=record.directory,
        listing_url=record.url,
        expected_name=expected.name,
        expected_address=expected.address,
        expected_phone=expected.phone,
        found_name=record.business_name,
        found_address=record.address,
        found_phone=record.telephone,
        name_match=name_match,
        address_match=address_match,
        phone_match=phone_match,
        nap_correct=nap_correct,
        status=listing_status(live, nap_correct),
        ai_recommendation=build_recommendation(record.directory, live, name_match, phone_match),
    )


def build_listing_rows(
    records: Iterable[CitationRecord],
    expected: ExpectedNap,
    *,
    location_id: str,
    audit_id: str,
    mode: str = "exact",
) -> Tuple[List[ListingRow], AuditTotals]:
    """Compare every citation and tally the audit totals."""
    rows: List[ListingRow] = []
    totals = AuditTotals()
    for record in records:
        row = compare_citation(record, expected, location_id=location_id, audit_id=audit_id, mode=mode)
        rows.append(row)
        totals.found += 1
        if row.status == LISTING_NOT_LISTED:
            totals.missing += 1
        elif row.nap_correct:
            totals.correct += 1
        else:
            totals.incorrect += 1
    logger.debug(
        "Compared %d citations for location %s: correct=%d incorrect=%d missing=%d",
        totals.found, location_id, totals.correct, totals.incorrect, totals.missing,
    )
    return rows, totals
