import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure `citesync` is importable when running pytest from the repository root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from citesync.core.config import Settings  # noqa: E402
from citesync.models import (  # noqa: E402
    AUDIT_COMPLETED,
    AUDIT_FAILED,
    AUDIT_PENDING,
    AUDIT_RUNNING,
    BusinessProfile,
    CitationAudit,
    Location,
    ReportStatus,
)
from citesync.vendors.brightlocal import RUN_STARTED  # noqa: E402


class FakeStore:
    """In-memory stand-in for CitationStore with the same semantics."""

    def __init__(self):
        self.locations = {}
        self.inactive = set()
        self.profiles = {}
        self.audits = []
        self.listings = {}
        self.campaigns = []
        self.fail_on = {}

    # ---------- seeding helpers ----------

    def add_location(self, location, profile_status="active", category="Dentist", website=None):
        self.locations[location.id] = location
        if profile_status is not None:
            self.profiles[location.id] = BusinessProfile(
                location_id=location.id,
                primary_category_name=category,
                website_uri=website,
                sync_status=profile_status,
            )
        return location

    def add_audit(self, location_id, report_id, status=AUDIT_PENDING, started_at=None):
        audit = {
            "id": f"audit-{len(self.audits) + 1}",
            "location_id": location_id,
            "external_report_id": report_id,
            "status": status,
            "started_at": started_at,
            "last_error": None,
            "totals": None,
            "seq": len(self.audits),
        }
        self.audits.append(audit)
        return audit

    def audit(self, audit_id):
        return next(a for a in self.audits if a["id"] == audit_id)

    def _check(self, name):
        exc = self.fail_on.get(name)
        if exc is not None:
            raise exc

    @staticmethod
    def _to_audit(row):
        return CitationAudit(
            id=row["id"],
            location_id=row["location_id"],
            external_report_id=row["external_report_id"],
            status=row["status"],
            started_at=row["started_at"],
        )

    # ---------- CitationStore interface ----------

    def list_unmapped_locations(self, limit):
        self._check("list_unmapped_locations")
        rows = [
            loc for loc in self.locations.values()
            if loc.id not in self.inactive and not loc.external_report_id
        ]
        return [replace(loc) for loc in rows[:limit]]

    def list_locations(self, location_ids, limit):
        rows = [loc for loc in self.locations.values() if loc.id not in self.inactive]
        if location_ids:
            rows = [loc for loc in rows if loc.id in set(location_ids)]
        return [replace(loc) for loc in rows[:limit]]

    def get_location(self, location_id):
        loc = self.locations.get(location_id)
        return replace(loc) if loc else None

    def get_active_profiles(self, location_ids):
        ids = set(location_ids)
        return {
            lid: profile for lid, profile in self.profiles.items()
            if lid in ids and profile.sync_status == "active"
        }

    def set_external_id(self, location_id, column, value):
        loc = self.locations[location_id]
        if getattr(loc, column) is None:
            setattr(loc, column, value)

    def insert_audit(self, location_id, report_id):
        self._check("insert_audit")
        return self.add_audit(location_id, report_id)["id"]

    def claim_next_pending_audit(self):
        if any(a["status"] == AUDIT_RUNNING for a in self.audits):
            return None
        pending = sorted((a for a in self.audits if a["status"] == AUDIT_PENDING), key=lambda a: a["seq"])
        if not pending:
            return None
        audit = pending[0]
        audit["status"] = AUDIT_RUNNING
        audit["started_at"] = datetime.now(timezone.utc)
        return self._to_audit(audit)

    def release_audit(self, audit_id):
        audit = self.audit(audit_id)
        if audit["status"] == AUDIT_RUNNING:
            audit["status"] = AUDIT_PENDING
            audit["started_at"] = None

    def mark_audit_failed(self, audit_id, error):
        audit = self.audit(audit_id)
        audit["status"] = AUDIT_FAILED
        audit["last_error"] = error

    def list_running_audits(self, limit):
        self._check("list_running_audits")
        return [self._to_audit(a) for a in self.audits if a["status"] == AUDIT_RUNNING][:limit]

    def get_open_audits(self, location_ids):
        ids = set(location_ids)
        found = {}
        for audit in self.audits:
            if audit["location_id"] in ids and audit["status"] in (AUDIT_PENDING, AUDIT_RUNNING):
                found[audit["location_id"]] = self._to_audit(audit)
        return found

    def upsert_listing(self, row):
        self.listings[(row.location_id, row.directory_name)] = replace(row)

    def complete_audit(self, audit_id, totals):
        audit = self.audit(audit_id)
        audit["status"] = AUDIT_COMPLETED
        audit["totals"] = replace(totals)
        audit["last_error"] = None

    def list_campaign_candidates(self, limit):
        rows = [
            loc for loc in self.locations.values()
            if loc.id not in self.inactive
            and loc.external_location_id
            and not loc.external_campaign_id
            and any(a["location_id"] == loc.id and a["status"] == AUDIT_COMPLETED for a in self.audits)
        ]
        return [replace(loc) for loc in rows[:limit]]

    def insert_campaign(self, location_id, campaign_id, external_location_id):
        self.campaigns.append(
            {"location_id": location_id, "campaign_id": campaign_id, "external_location_id": external_location_id}
        )


class FakeClient:
    """Records calls and returns canned, already-normalized results."""

    def __init__(self):
        self.calls = []
        self.existing_locations = {}
        self.existing_reports = {}
        self.existing_campaigns = {}
        self.category_id = "1001"
        self.run_result = RUN_STARTED
        self.report_statuses = {}
        self.results = {}
        self.errors = {}
        self._next_id = 500

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        exc = self.errors.get(name)
        if exc is not None:
            raise exc

    def _new_id(self):
        self._next_id += 1
        return str(self._next_id)

    def names(self):
        return [call[0] for call in self.calls]

    def search_business_category(self, name, country="USA"):
        self._record("search_business_category", name, country)
        return self.category_id

    def find_location(self, reference):
        self._record("find_location", reference)
        return self.existing_locations.get(reference)

    def create_location(self, **kwargs):
        self._record("create_location", kwargs)
        return self._new_id()

    def find_report(self, location_id):
        self._record("find_report", location_id)
        return self.existing_reports.get(location_id)

    def create_report(self, location_id, business_type, primary_location):
        self._record("create_report", location_id, business_type, primary_location)
        return self._new_id()

    def run_report(self, report_id):
        self._record("run_report", report_id)
        return self.run_result

    def get_report(self, report_id):
        self._record("get_report", report_id)
        return ReportStatus(report_id=report_id, status=self.report_statuses.get(report_id, "running"))

    def get_results(self, report_id):
        self._record("get_results", report_id)
        return list(self.results.get(report_id, []))

    def find_campaign(self, location_id):
        self._record("find_campaign", location_id)
        return self.existing_campaigns.get(location_id)

    def create_campaign(self, location_id):
        self._record("create_campaign", location_id)
        return self._new_id()


def make_location(location_id="loc-1", **overrides):
    values = dict(
        id=location_id,
        name="Acme Dental",
        phone="555-1212",
        address_line1="1 Main St",
        city="Springfield",
        region="IL",
        postal_code="62701",
        country="US",
    )
    values.update(overrides)
    return Location(**values)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def settings():
    return Settings(database_url="postgres://test", brightlocal_api_key="bl-key", time_budget_seconds=0)
