"""Four-phase citation sync against BrightLocal.

Phase 1 (map):     register locations that have a synced business profile but
                   no Citation Tracker report, and open a pending audit.
Phase 2 (trigger): start the oldest pending audit, one scan system-wide.
Phase 3 (pull):    pull results of finished scans into citation_listings and
                   close the audit with its totals.
Phase 4 (build):   open a Citation Builder campaign for locations with a
                   completed audit.

Each run is one scheduled invocation. Every per-item write commits on its own,
so a run cut short by the time budget leaves the remaining work for the next.

The trigger commits its claim (audit -> running) before asking BrightLocal to
start the scan. A process killed between those two steps leaves a running
audit with no scan behind it, which blocks all later scans. Only the staleness
check in the pull phase reclaims it, so set STALE_AUDIT_HOURS in deployments
where the worker can be killed mid-run; it is disabled by default.
"""

import argparse
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from citesync.core.config import Settings, get_settings
from citesync.core.db import CitationStore, init_pool
from citesync.etl.nap import build_listing_rows, expected_nap
from citesync.models import (
    AUDIT_PENDING,
    AUDIT_RUNNING,
    BusinessProfile,
    CitationAudit,
    Location,
    SyncStats,
)
from citesync.vendors.brightlocal import RUN_ALREADY_RUNNING, BrightLocalClient

logger = logging.getLogger(__name__)

DEFAULT_BUSINESS_TYPE = "Business"
ON_DEMAND_LIMIT = 50


class StaleAuditError(RuntimeError):
    """Raised when a running audit exceeded the configured staleness threshold."""


class Deadline:
    """Wall-clock budget shared by all phases of one run."""

    def __init__(self, seconds: Optional[float], clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._expires_at = self._clock() + seconds if seconds else None

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at


@dataclass
class AuditRequestResult:
    queued: int = 0
    pulled: int = 0
    mapped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"queued": self.queued, "pulled": self.pulled, "mapped": self.mapped, "errors": list(self.errors)}


# ---------- Phase 1: map ----------


def _external_country(country: Optional[str]) -> str:
    if not country or country.upper() == "US":
        return "USA"
    return country


def _fallback_website(name: str) -> str:
    return "".join(name.lower().split()) + ".com"


def mapping_blocker(location: Location) -> Optional[str]:
    """Reason a location cannot be registered yet, or None."""
    if not location.phone or not location.city or not location.region:
        return "missing phone, city, or state"
    return None


def map_location(
    store: CitationStore,
    client: BrightLocalClient,
    location: Location,
    profile: Optional[BusinessProfile],
    settings: Settings,
) -> bool:
    """Ensure external location + report exist and open a pending audit.

    Returns False when the location has to wait for a later run.
    """
    category_name = (profile.primary_category_name if profile else None) or DEFAULT_BUSINESS_TYPE

    external_location_id = location.external_location_id
    if not external_location_id:
        external_location_id = client.find_location(location.id)
        if not external_location_id:
            country = _external_country(location.country)
            category_id = client.search_business_category(category_name, country) or settings.default_category_id
            external_location_id = client.create_location(
                name=location.name,
                phone=location.phone or "",
                address1=location.address_line1,
                city=location.city or "",
                region=location.region or "",
                postcode=location.postal_code or "",
                country=country,
                website=(profile.website_uri if profile else None) or _fallback_website(location.name),
                business_category_id=category_id,
                reference=location.id,
            )
            logger.info("Created BrightLocal location %s for %s", external_location_id, location.id)
        # Persist before anything else can fail so a retry never re-creates it.
        store.set_external_id(location.id, "external_location_id", external_location_id)
        location.external_location_id = external_location_id

    report_id = client.find_report(external_location_id)
    if not report_id:
        primary_location = location.postal_code or location.city
        if not primary_location:
            logger.info("Location %s has no postal code or city; skipping report creation", location.id)
            return False
        report_id = client.create_report(external_location_id, category_name, primary_location)
        logger.info("Created CT report %s for %s", report_id, location.id)

    store.set_external_id(location.id, "external_report_id", report_id)
    location.external_report_id = report_id
    store.insert_audit(location.id, report_id)
    return True


def map_locations(
    store: CitationStore, client: BrightLocalClient, settings: Settings, stats: SyncStats, deadline: Deadline
) -> None:
    unmapped = store.list_unmapped_locations(settings.map_batch_size)
    if not unmapped:
        logger.info("No unmapped locations")
        return

    profiles = store.get_active_profiles(loc.id for loc in unmapped)

    for location in unmapped:
        if deadline.expired():
            logger.warning("Time budget exhausted during map phase")
            return
        profile = profiles.get(location.id)
        if profile is None or mapping_blocker(location):
            logger.debug("Location %s not eligible for mapping yet", location.id)
            continue
        try:
            if map_location(store, client, location, profile, settings):
                stats.mapped += 1
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to map location %s: %s", location.id, exc)
            stats.errors += 1


# ---------- Phase 2: trigger ----------


def trigger_next_audit(
    store: CitationStore, client: BrightLocalClient, settings: Settings, stats: SyncStats, deadline: Deadline
) -> None:
    audit = store.claim_next_pending_audit()
    if audit is None:
        logger.info("No audit triggered: a scan is already running or nothing is pending")
        return

    try:
        result = client.run_report(audit.external_report_id)
    except Exception as exc:  # noqa: BLE001
        logger.error("Failed to trigger audit %s: %s", audit.id, exc)
        store.mark_audit_failed(audit.id, str(exc))
        stats.errors += 1
        return

    if result == RUN_ALREADY_RUNNING:
        store.release_audit(audit.id)
        logger.info("Report %s already scanning; audit %s stays pending", audit.external_report_id, audit.id)
        return

    logger.info("Started scan for audit %s (report %s)", audit.id, audit.external_report_id)
    stats.triggered += 1


# ---------- Phase 3: pull ----------


def _is_stale(audit: CitationAudit, settings: Settings, now: datetime) -> bool:
    if not settings.stale_audit_hours or audit.started_at is None:
        return False
    started_at = audit.started_at
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return now - started_at > timedelta(hours=settings.stale_audit_hours)


def pull_audit_results(
    store: CitationStore,
    client: BrightLocalClient,
    audit: CitationAudit,
    settings: Settings,
    now: Optional[datetime] = None,
) -> bool:
    """Pull a finished report into citation_listings.

    Returns False while the report is still running.
    """
    report = client.get_report(audit.external_report_id)
    if not report.is_complete:
        if _is_stale(audit, settings, now or datetime.now(timezone.utc)):
            raise StaleAuditError(
                f"Report {audit.external_report_id} still '{report.status}' after {settings.stale_audit_hours}h"
            )
        logger.debug("Report %s status=%s; not ready", audit.external_report_id, report.status)
        return False

    records = client.get_results(audit.external_report_id)

    location = store.get_location(audit.location_id)
    if location is None:
        raise RuntimeError(f"Location {audit.location_id} not found")
    expected = expected_nap(location)

    rows, totals = build_listing_rows(
        records, expected, location_id=audit.location_id, audit_id=audit.id, mode=settings.nap_match_mode
    )
    for row in rows:
        store.upsert_listing(row)

    store.complete_audit(audit.id, totals)
    logger.info(
        "Audit %s completed: found=%d correct=%d incorrect=%d missing=%d",
        audit.id, totals.found, totals.correct, totals.incorrect, totals.missing,
    )
    return True


def pull_running_audits(
    store: CitationStore, client: BrightLocalClient, settings: Settings, stats: SyncStats, deadline: Deadline
) -> None:
    for audit in store.list_running_audits(settings.pull_batch_size):
        if deadline.expired():
            logger.warning("Time budget exhausted during pull phase")
            return
        try:
            if pull_audit_results(store, client, audit, settings):
                stats.pulled += 1
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to pull audit %s: %s", audit.id, exc)
            store.mark_audit_failed(audit.id, str(exc))
            stats.errors += 1


# ---------- Phase 4: build ----------


def build_campaigns(
    store: CitationStore, client: BrightLocalClient, settings: Settings, stats: SyncStats, deadline: Deadline
) -> None:
    for location in store.list_campaign_candidates(settings.campaign_batch_size):
        if deadline.expired():
            logger.warning("Time budget exhausted during build phase")
            return
        external_location_id = location.external_location_id or ""
        try:
            campaign_id = client.find_campaign(external_location_id) or client.create_campaign(external_location_id)
            store.set_external_id(location.id, "external_campaign_id", campaign_id)
            store.insert_campaign(location.id, campaign_id, external_location_id)
            logger.info("Opened Citation Builder campaign %s for %s", campaign_id, location.id)
            stats.campaigns += 1
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to create campaign for location %s: %s", location.id, exc)
            stats.errors += 1


PHASES: Tuple[Tuple[str, Callable[..., None]], ...] = (
    ("map", map_locations),
    ("trigger", trigger_next_audit),
    ("pull", pull_running_audits),
    ("build", build_campaigns),
)


def run_citation_sync(
    *,
    store: Optional[CitationStore] = None,
    client: Optional[BrightLocalClient] = None,
    settings: Optional[Settings] = None,
    phases: Optional[Sequence[str]] = None,
) -> SyncStats:
    settings = settings or get_settings()
    if not settings.brightlocal_configured:
        logger.warning("BrightLocal is not configured; skipping citation sync")
        return SyncStats(configured=False)

    if store is None:
        init_pool()
        store = CitationStore()
    client = client or BrightLocalClient.from_settings(settings)

    stats = SyncStats()
    deadline = Deadline(settings.time_budget_seconds)
    selected = set(phases) if phases else None

    for name, phase in PHASES:
        if selected is not None and name not in selected:
            continue
        if deadline.expired():
            logger.warning("Time budget exhausted before %s phase; remaining work left for next run", name)
            break
        try:
            phase(store, client, settings, stats, deadline)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Phase %s failed: %s", name, exc)
            stats.errors += 1

    logger.info("Citation sync finished: %s", stats.to_dict())
    return stats


# ---------- On-demand audits ----------


def request_audits(
    location_ids: Optional[Sequence[str]],
    *,
    store: CitationStore,
    client: BrightLocalClient,
    settings: Settings,
) -> Optional[AuditRequestResult]:
    """Queue audits for specific locations outside the regular schedule.

    Scans are never started here; the trigger phase picks queued audits up.
    Returns None when no active location matches.
    """
    locations = store.list_locations(location_ids, ON_DEMAND_LIMIT)
    if not locations:
        return None

    ids = [loc.id for loc in locations]
    profiles = store.get_active_profiles(ids)
    open_audits = store.get_open_audits(ids)
    result = AuditRequestResult()

    for location in locations:
        audit = open_audits.get(location.id)
        try:
            if audit is not None and audit.status == AUDIT_RUNNING:
                try:
                    pulled = pull_audit_results(store, client, audit, settings)
                except Exception as exc:  # noqa: BLE001
                    store.mark_audit_failed(audit.id, str(exc))
                    raise
                if pulled:
                    result.pulled += 1
                else:
                    result.errors.append(f"{location.name}: report still running, check back later")
                continue

            if audit is not None and audit.status == AUDIT_PENDING:
                result.errors.append(f"{location.name}: audit already queued")
                continue

            if location.external_report_id:
                store.insert_audit(location.id, location.external_report_id)
                result.queued += 1
                continue

            blocker = mapping_blocker(location)
            if blocker:
                result.errors.append(f"{location.name}: {blocker}")
                continue

            if map_location(store, client, location, profiles.get(location.id), settings):
                result.mapped += 1
                result.queued += 1
            else:
                result.errors.append(f"{location.name}: missing postal code or city for competitor lookup")
        except Exception as exc:  # noqa: BLE001
            logger.error("On-demand audit failed for location %s: %s", location.id, exc)
            result.errors.append(f"{location.name}: {exc}")

    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the BrightLocal citation sync once")
    parser.add_argument(
        "--phase",
        dest="phases",
        action="append",
        choices=[name for name, _ in PHASES],
        help="Run only this phase (repeatable); default runs all four in order",
    )
    return parser


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args()

    stats = run_citation_sync(phases=args.phases)
    print(json.dumps(stats.to_dict()))


if __name__ == "__main__":
    main()
