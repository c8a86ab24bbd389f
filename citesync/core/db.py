"""Database helpers for the citation sync worker."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Sequence

from psycopg2 import errors, extras, pool

from citesync.core.config import get_settings
from citesync.models import (
    AUDIT_PENDING,
    CAMPAIGN_LOOKUP,
    AuditTotals,
    BusinessProfile,
    CitationAudit,
    ListingRow,
    Location,
)

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.SimpleConnectionPool] = None

_LOCATION_COLUMNS = """
    id::text AS id, name, phone, address_line1, city, state AS region, postal_code, country,
    external_location_id, external_report_id, external_campaign_id
"""


def init_pool(minconn: int = 1, maxconn: int = 5) -> pool.SimpleConnectionPool:
    """Initialise and return the shared connection pool."""
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is required for database connections")
        _connection_pool = pool.SimpleConnectionPool(
            minconn,
            maxconn,
            dsn=settings.database_url,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection; rolls back on error."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    finally:
        pg_pool.putconn(conn)


def _location_from_row(row: Dict[str, Any]) -> Location:
    return Location(
        id=str(row["id"]),
        name=row.get("name") or "",
        phone=row.get("phone"),
        address_line1=row.get("address_line1"),
        city=row.get("city"),
        region=row.get("region"),
        postal_code=row.get("postal_code"),
        country=row.get("country"),
        external_location_id=row.get("external_location_id"),
        external_report_id=row.get("external_report_id"),
        external_campaign_id=row.get("external_campaign_id"),
    )


def _audit_from_row(row: Dict[str, Any]) -> CitationAudit:
    return CitationAudit(
        id=str(row["id"]),
        location_id=str(row["location_id"]),
        external_report_id=str(row["external_report_id"]),
        status=row.get("status") or AUDIT_PENDING,
        started_at=row.get("started_at"),
    )


def _listing_params(row: ListingRow) -> Dict[str, Any]:
    return {
        "location_id": row.location_id,
        "audit_id": row.audit_id,
        "directory_name": row.directory_name,
        "listing_url": row.listing_url,
        "expected_name": row.expected_name,
        "expected_address": row.expected_address,
        "expected_phone": row.expected_phone,
        "found_name": row.found_name,
        "found_address": row.found_address,
        "found_phone": row.found_phone,
        "nap_correct": row.nap_correct,
        "name_match": row.name_match,
        "address_match": row.address_match,
        "phone_match": row.phone_match,
        "status": row.status,
        "ai_recommendation": row.ai_recommendation,
    }


_SELECT_UNMAPPED = f"""
SELECT {_LOCATION_COLUMNS}
FROM locations
WHERE active = TRUE AND external_report_id IS NULL
ORDER BY created_at ASC
LIMIT %(limit)s
"""

_SELECT_LOCATIONS = f"""
SELECT {_LOCATION_COLUMNS}
FROM locations
WHERE active = TRUE AND (%(all)s OR id::text = ANY(%(ids)s))
ORDER BY created_at ASC
LIMIT %(limit)s
"""

_SELECT_LOCATION = f"""
SELECT {_LOCATION_COLUMNS}
FROM locations
WHERE id = %(id)s
"""

_SELECT_ACTIVE_PROFILES = """
SELECT location_id::text AS location_id, primary_category_name, website_uri, sync_status
FROM business_profiles
WHERE location_id::text = ANY(%(ids)s) AND sync_status = 'active'
"""

_SET_EXTERNAL_ID = {
    "external_location_id": "UPDATE locations SET external_location_id = %(value)s WHERE id = %(id)s AND external_location_id IS NULL",
    "external_report_id": "UPDATE locations SET external_report_id = %(value)s WHERE id = %(id)s AND external_report_id IS NULL",
    "external_campaign_id": "UPDATE locations SET external_campaign_id = %(value)s WHERE id = %(id)s AND external_campaign_id IS NULL",
}

_INSERT_AUDIT = """
INSERT INTO citation_audits (location_id, external_report_id, status)
VALUES (%(location_id)s, %(report_id)s, 'pending')
RETURNING id::text AS id
"""

# One statement claims the oldest pending audit only while nothing is running.
# The partial unique index on running audits rejects a concurrent second claim.
_CLAIM_NEXT_PENDING = """
UPDATE citation_audits
SET status = 'running', started_at = NOW()
WHERE id = (
    SELECT id FROM citation_audits
    WHERE status = 'pending'
    ORDER BY created_at ASC
    LIMIT 1
    FOR UPDATE SKIP LOCKED
)
AND NOT EXISTS (SELECT 1 FROM citation_audits WHERE status = 'running')
RETURNING id::text AS id, location_id::text AS location_id, external_report_id, status, started_at
"""

_RELEASE_AUDIT = """
UPDATE citation_audits SET status = 'pending', started_at = NULL
WHERE id = %(id)s AND status = 'running'
"""

_FAIL_AUDIT = """
UPDATE citation_audits SET status = 'failed', last_error = %(error)s
WHERE id = %(id)s
"""

_SELECT_RUNNING = """
SELECT id::text AS id, location_id::text AS location_id, external_report_id, status, started_at
FROM citation_audits
WHERE status = 'running'
ORDER BY started_at ASC NULLS FIRST
LIMIT %(limit)s
"""

_SELECT_OPEN_AUDITS = """
SELECT DISTINCT ON (location_id)
    id::text AS id, location_id::text AS location_id, external_report_id, status, started_at
FROM citation_audits
WHERE location_id::text = ANY(%(ids)s) AND status IN ('pending', 'running')
ORDER BY location_id, created_at DESC
"""

_UPSERT_LISTING = """
INSERT INTO citation_listings (
    location_id,
    audit_id,
    directory_name,
    listing_url,
    expected_name,
    expected_address,
    expected_phone,
    found_name,
    found_address,
    found_phone,
    nap_correct,
    name_match,
    address_match,
    phone_match,
    status,
    ai_recommendation,
    last_checked_at,
    updated_at
) VALUES (
    %(location_id)s,
    %(audit_id)s,
    %(directory_name)s,
    %(listing_url)s,
    %(expected_name)s,
    %(expected_address)s,
    %(expected_phone)s,
    %(found_name)s,
    %(found_address)s,
    %(found_phone)s,
    %(nap_correct)s,
    %(name_match)s,
    %(address_match)s,
    %(phone_match)s,
    %(status)s,
    %(ai_recommendation)s,
    NOW(),
    NOW()
)
ON CONFLICT (location_id, directory_name) DO UPDATE SET
    audit_id = EXCLUDED.audit_id,
    listing_url = EXCLUDED.listing_url,
    expected_name = EXCLUDED.expected_name,
    expected_address = EXCLUDED.expected_address,
    expected_phone = EXCLUDED.expected_phone,
    found_name = EXCLUDED.found_name,
    found_address = EXCLUDED.found_address,
    found_phone = EXCLUDED.found_phone,
    nap_correct = EXCLUDED.nap_correct,
    name_match = EXCLUDED.name_match,
    address_match = EXCLUDED.address_match,
    phone_match = EXCLUDED.phone_match,
    status = EXCLUDED.status,
    ai_recommendation = EXCLUDED.ai_recommendation,
    last_checked_at = NOW(),
    updated_at = NOW();
"""

_COMPLETE_AUDIT = """
UPDATE citation_audits SET
    status = 'completed',
    total_found = %(found)s,
    total_correct = %(correct)s,
    total_incorrect = %(incorrect)s,
    total_missing = %(missing)s,
    completed_at = NOW(),
    last_error = NULL
WHERE id = %(id)s
"""

_SELECT_CAMPAIGN_CANDIDATES = f"""
SELECT {_LOCATION_COLUMNS}
FROM locations l
WHERE l.active = TRUE
  AND l.external_location_id IS NOT NULL
  AND l.external_campaign_id IS NULL
  AND EXISTS (
      SELECT 1 FROM citation_audits a
      WHERE a.location_id = l.id AND a.status = 'completed'
  )
ORDER BY l.created_at ASC
LIMIT %(limit)s
"""

_INSERT_CAMPAIGN = """
INSERT INTO citation_builder_campaigns (location_id, external_campaign_id, external_location_id, status)
VALUES (%(location_id)s, %(campaign_id)s, %(external_location_id)s, %(status)s)
"""


class CitationStore:
    """Single-row reads and writes used by the sync phases.

    Every write commits on its own; nothing spans phases.
    """

    def _fetchall(self, sql: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        with get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
        return [dict(row) for row in rows]

    def _fetchone(self, sql: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            conn.commit()
        return dict(row) if row else None

    def _execute(self, sql: str, params: Dict[str, Any]) -> int:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rowcount = cur.rowcount
            conn.commit()
        return rowcount

    # ---------- locations ----------

    def list_unmapped_locations(self, limit: int) -> List[Location]:
        return [_location_from_row(row) for row in self._fetchall(_SELECT_UNMAPPED, {"limit": limit})]

    def list_locations(self, location_ids: Optional[Sequence[str]], limit: int) -> List[Location]:
        ids = [str(i) for i in location_ids or []]
        params = {"all": not ids, "ids": ids, "limit": limit}
        return [_location_from_row(row) for row in self._fetchall(_SELECT_LOCATIONS, params)]

    def get_location(self, location_id: str) -> Optional[Location]:
        row = self._fetchone(_SELECT_LOCATION, {"id": location_id})
        return _location_from_row(row) if row else None

    def get_active_profiles(self, location_ids: Iterable[str]) -> Dict[str, BusinessProfile]:
        ids = [str(i) for i in location_ids]
        if not ids:
            return {}
        rows = self._fetchall(_SELECT_ACTIVE_PROFILES, {"ids": ids})
        return {
            row["location_id"]: BusinessProfile(
                location_id=row["location_id"],
                primary_category_name=row.get("primary_category_name"),
                website_uri=row.get("website_uri"),
                sync_status=row.get("sync_status"),
            )
            for row in rows
        }

    def set_external_id(self, location_id: str, column: str, value: str) -> None:
        """Fill one external id column; never overwrites an existing value."""
        sql = _SET_EXTERNAL_ID.get(column)
        if sql is None:
            raise ValueError(f"unknown external id column: {column}")
        if not value:
            raise ValueError(f"{column} value is required")
        self._execute(sql, {"id": location_id, "value": value})
        logger.debug("Set %s=%s on location %s", column, value, location_id)

    # ---------- audits ----------

    def insert_audit(self, location_id: str, report_id: str) -> str:
        row = self._fetchone(_INSERT_AUDIT, {"location_id": location_id, "report_id": report_id})
        if not row:
            raise RuntimeError(f"failed to insert audit for location {location_id}")
        return row["id"]

    def claim_next_pending_audit(self) -> Optional[CitationAudit]:
        """Flip the oldest pending audit to running if nothing else is running."""
        try:
            row = self._fetchone(_CLAIM_NEXT_PENDING, {})
        except errors.UniqueViolation:
            logger.info("Another invocation claimed a running audit first")
            return None
        return _audit_from_row(row) if row else None

    def release_audit(self, audit_id: str) -> None:
        self._execute(_RELEASE_AUDIT, {"id": audit_id})

    def mark_audit_failed(self, audit_id: str, error: str) -> None:
        self._execute(_FAIL_AUDIT, {"id": audit_id, "error": error[:2000]})

    def list_running_audits(self, limit: int) -> List[CitationAudit]:
        return [_audit_from_row(row) for row in self._fetchall(_SELECT_RUNNING, {"limit": limit})]

    def get_open_audits(self, location_ids: Iterable[str]) -> Dict[str, CitationAudit]:
        ids = [str(i) for i in location_ids]
        if not ids:
            return {}
        rows = self._fetchall(_SELECT_OPEN_AUDITS, {"ids": ids})
        return {row["location_id"]: _audit_from_row(row) for row in rows}

    def upsert_listing(self, row: ListingRow) -> None:
        self._execute(_UPSERT_LISTING, _listing_params(row))

    def complete_audit(self, audit_id: str, totals: AuditTotals) -> None:
        self._execute(
            _COMPLETE_AUDIT,
            {
                "id": audit_id,
                "found": totals.found,
                "correct": totals.correct,
                "incorrect": totals.incorrect,
                "missing": totals.missing,
            },
        )

    # ---------- campaigns ----------

    def list_campaign_candidates(self, limit: int) -> List[Location]:
        return [_location_from_row(row) for row in self._fetchall(_SELECT_CAMPAIGN_CANDIDATES, {"limit": limit})]

    def insert_campaign(self, location_id: str, campaign_id: str, external_location_id: str) -> None:
        self._execute(
            _INSERT_CAMPAIGN,
            {
                "location_id": location_id,
                "campaign_id": campaign_id,
                "external_location_id": external_location_id,
                "status": CAMPAIGN_LOOKUP,
            },
        )
