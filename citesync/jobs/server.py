"""HTTP entrypoint for the scheduled citation sync (Cloud Run / cron friendly)."""

from __future__ import annotations

import hmac
import logging
import os
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from citesync.core.config import ConfigError, get_settings
from citesync.core.db import CitationStore, init_pool
from citesync.jobs.citation_sync import request_audits, run_citation_sync
from citesync.models import SyncStats
from citesync.vendors.brightlocal import BrightLocalClient

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App ----------
app = Flask(__name__)

# ---------- Routes ----------


@app.get("/")
def root() -> Any:
    """Simple root to avoid 404 on GET /"""
    return "ok", 200


@app.get("/healthz")
def healthcheck() -> Any:
    """Lightweight health endpoint; reads settings only, never the database."""
    try:
        settings = get_settings()
    except ConfigError as exc:
        return jsonify({"status": "misconfigured", "error": str(exc)}), 503
    return (
        jsonify(
            {
                "status": "ok",
                "brightlocal_configured": settings.brightlocal_configured,
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.route("/cron/citation-sync", methods=["GET", "POST"])
def citation_sync() -> Any:
    """Run all four sync phases. Always answers 200 once authorized."""
    try:
        settings = get_settings()
    except ConfigError as exc:
        if not _authorized(os.getenv("CRON_SECRET")):
            return jsonify({"error": "Unauthorized"}), 401
        logger.error("Configuration error: %s", exc)
        return jsonify({"ok": False, **SyncStats(configured=False, errors=1).to_dict()}), 200

    if not _authorized(settings.cron_secret):
        return jsonify({"error": "Unauthorized"}), 401

    if not settings.brightlocal_configured:
        return jsonify({"ok": True, **SyncStats(configured=False).to_dict()}), 200

    try:
        stats = run_citation_sync(settings=settings)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Citation sync failed: %s", exc)
        stats = SyncStats(errors=1)

    return jsonify({"ok": True, **stats.to_dict()}), 200


@app.post("/citations/audit")
def audit_locations() -> Any:
    """
    Queue audits for specific locations.
    Optional JSON field: location_ids (list of location ids); default all active.
    """
    try:
        settings = get_settings()
    except ConfigError as exc:
        if not _authorized(os.getenv("CRON_SECRET")):
            return jsonify({"error": "Unauthorized"}), 401
        logger.error("Configuration error: %s", exc)
        return jsonify({"ok": False, "configured": False, "error": "invalid configuration"}), 500

    if not _authorized(settings.cron_secret):
        return jsonify({"error": "Unauthorized"}), 401

    if not settings.brightlocal_configured:
        return jsonify({"ok": True, "configured": False}), 200

    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    location_ids = payload.get("location_ids")
    if location_ids is not None and (
        not isinstance(location_ids, list) or not all(isinstance(i, (str, int)) for i in location_ids)
    ):
        return jsonify({"error": "location_ids must be a list of ids"}), 400

    try:
        store = _build_store()
        client = BrightLocalClient.from_settings(settings)
        result = request_audits(
            [str(i) for i in location_ids] if location_ids else None,
            store=store,
            client=client,
            settings=settings,
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("On-demand audit failed: %s", exc)
        return jsonify({"ok": False, "error": "audit request failed"}), 500

    if result is None:
        return jsonify({"error": "No matching locations found"}), 404

    return jsonify({"ok": True, **result.to_dict()}), 200


# ---------- Internals ----------


def _authorized(secret: Optional[str]) -> bool:
    if not secret:
        return True
    header = request.headers.get("Authorization", "")
    return hmac.compare_digest(header, f"Bearer {secret}")


def _build_store() -> CitationStore:
    init_pool()
    return CitationStore()


def main() -> None:
    """Cloud Run injects PORT; fall back to WORKER_PORT / 8080 locally."""
    port = get_settings().worker_port
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
