"""Core data models shared by the citation sync pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

AUDIT_PENDING = "pending"
AUDIT_RUNNING = "running"
AUDIT_COMPLETED = "completed"
AUDIT_FAILED = "failed"

LISTING_FOUND = "found"
LISTING_ACTION_NEEDED = "action_needed"
LISTING_NOT_LISTED = "not_listed"

CAMPAIGN_LOOKUP = "lookup"


@dataclass(slots=True)
class Location:
    """Canonical NAP record of a managed business location."""

    id: str
    name: str
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    external_location_id: Optional[str] = None
    external_report_id: Optional[str] = None
    external_campaign_id: Optional[str] = None


@dataclass(slots=True)
class BusinessProfile:
    """Read-only row from the upstream business-profile feed."""

    location_id: str
    primary_category_name: Optional[str] = None
    website_uri: Optional[str] = None
    sync_status: Optional[str] = None


@dataclass(slots=True)
class CitationAudit:
    id: str
    location_id: str
    external_report_id: str
    status: str = AUDIT_PENDING
    started_at: Optional[datetime] = None


@dataclass(slots=True)
class ReportStatus:
    """Normalized status of an external tracking report."""

    report_id: str
    status: str

    @property
    def is_complete(self) -> bool:
        return self.status.strip().lower() in {"complete", "completed"}


@dataclass(slots=True)
class CitationRecord:
    """One directory's citation as returned by the tracking service."""

    directory: str
    url: Optional[str] = None
    citation_status: Optional[str] = None
    business_name: Optional[str] = None
    address: Optional[str] = None
    telephone: Optional[str] = None


@dataclass(slots=True)
class ExpectedNap:
    name: str
    address: str
    phone: str


@dataclass(slots=True)
class ListingRow:
    """Computed comparison for one directory, ready to be upserted."""

    location_id: str
    audit_id: str
    directory_name: str
    listing_url: Optional[str]
    expected_name: str
    expected_address: str
    expected_phone: str
    found_name: Optional[str]
    found_address: Optional[str]
    found_phone: Optional[str]
    name_match: bool
    address_match: bool
    phone_match: bool
    nap_correct: bool
    status: str
    ai_recommendation: Optional[str] = None


@dataclass(slots=True)
class AuditTotals:
    found: int = 0
    correct: int = 0
    incorrect: int = 0
    missing: int = 0


@dataclass(slots=True)
class SyncStats:
    """Run summary returned to the scheduler."""

    mapped: int = 0
    triggered: int = 0
    pulled: int = 0
    campaigns: int = 0
    errors: int = 0
    configured: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
