"""Client for the BrightLocal citation-tracking service.

BrightLocal exposes two surfaces with different conventions:

* the Management API (JSON bodies, ``x-api-key`` header) for locations,
  business categories and Citation Builder campaigns;
* the legacy SEO-tools API (form-encoded, ``api-key`` parameter, optionally
  signed) for the Citation Tracker report lifecycle.

Legacy responses are inconsistent between operations: payloads are sometimes
nested under ``response``, sometimes flat, ``get`` uses a ``report`` envelope,
and ids appear as both ``report-id`` and ``report_id``. Everything returned
from :class:`BrightLocalClient` is normalized into ``citesync.models`` types or
plain string ids so the pipeline never sees those shapes.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Iterable, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from citesync.core.config import Settings
from citesync.models import CitationRecord, ReportStatus

logger = logging.getLogger(__name__)

MANAGE_BASE_URL = "https://api.brightlocal.com/manage/v1"
LEGACY_BASE_URL = "https://tools.brightlocal.com/seo-tools/api"
REQUEST_TIMEOUT = 20
SIGNATURE_TTL_SECONDS = 1800

RUN_STARTED = "started"
RUN_ALREADY_RUNNING = "already_running"

_RESULT_GROUPS = ("active", "pending", "possible")


class BrightLocalError(RuntimeError):
    """Raised when BrightLocal fails or returns an unusable response."""


def build_session() -> requests.Session:
    """Session with retries for transient 5xx failures."""
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("GET", "POST", "DELETE"),
        raise_on_status=False,
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    return session


def format_errors(errors: Any) -> str:
    if not errors:
        return "unknown error"
    if isinstance(errors, str):
        return errors
    if isinstance(errors, (list, tuple)):
        return ", ".join(str(item) for item in errors)
    if isinstance(errors, dict):
        return ", ".join(f"{key}: {value}" for key, value in errors.items())
    return json.dumps(errors)


def sign_request(api_key: str, api_secret: str, expires: int) -> str:
    """Legacy signature: base64(HMAC-SHA1(api_key + expires, secret))."""
    digest = hmac.new(api_secret.encode("utf-8"), f"{api_key}{expires}".encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def _first(mapping: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return value
    return None


def _payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Unwrap ``{"response": {...}}`` envelopes; flat payloads pass through."""
    nested = data.get("response")
    if isinstance(nested, dict):
        return nested
    return data


def _items(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        for key in ("items", "results", "response"):
            value = data.get(key)
            if isinstance(value, list):
                return [item for item in value if isinstance(item, dict)]
            if isinstance(value, dict):
                nested = _items(value)
                if nested:
                    return nested
    return []


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def pick_category(categories: Iterable[Dict[str, Any]], name: str) -> Optional[str]:
    """Exact name match, else prefix match, else the first category listed."""
    candidates = [c for c in categories if _first(c, "id", "business_category_id", "category_id") is not None]
    if not candidates:
        return None

    wanted = name.strip().lower()

    def _id(category: Dict[str, Any]) -> str:
        return str(_first(category, "id", "business_category_id", "category_id"))

    def _name(category: Dict[str, Any]) -> str:
        return str(category.get("name") or "").strip().lower()

    for category in candidates:
        if _name(category) == wanted:
            return _id(category)
    for category in candidates:
        if wanted and _name(category).startswith(wanted):
            return _id(category)
    return _id(candidates[0])


def parse_citation(raw: Dict[str, Any]) -> Optional[CitationRecord]:
    directory = _strip_or_none(_first(raw, "source", "directory", "site"))
    if not directory:
        return None
    return CitationRecord(
        directory=directory,
        url=_strip_or_none(raw.get("url")),
        citation_status=_strip_or_none(_first(raw, "citation-status", "citation_status")),
        business_name=_strip_or_none(_first(raw, "business-name", "business_name")),
        address=_strip_or_none(raw.get("address")),
        telephone=_strip_or_none(_first(raw, "telephone", "phone")),
    )


def parse_results(data: Dict[str, Any]) -> List[CitationRecord]:
    """Flatten the active/pending/possible result groups into one list."""
    results = _payload(data).get("results")
    if isinstance(results, list):
        groups: List[Any] = [results]
    elif isinstance(results, dict):
        groups = [results.get(group) or [] for group in _RESULT_GROUPS]
    else:
        raise BrightLocalError(f"Malformed citation results payload: keys={list(data.keys())[:10]}")

    records: List[CitationRecord] = []
    for group in groups:
        for raw in group:
            if not isinstance(raw, dict):
                continue
            record = parse_citation(raw)
            if record is None:
                logger.debug("Skipping citation without source: %s", raw)
                continue
            records.append(record)
    return records


class BrightLocalClient:
    """Adapter that normalizes both BrightLocal API surfaces."""

    def __init__(
        self,
        api_key: str,
        *,
        api_secret: Optional[str] = None,
        auth_mode: str = "key",
        session: Optional[requests.Session] = None,
        manage_base_url: str = MANAGE_BASE_URL,
        legacy_base_url: str = LEGACY_BASE_URL,
    ) -> None:
        if not api_key:
            raise BrightLocalError("BRIGHTLOCAL_API_KEY must be set")
        if auth_mode == "signed" and not api_secret:
            raise BrightLocalError("signed auth requires an API secret")
        self.api_key = api_key
        self.api_secret = api_secret
        self.auth_mode = auth_mode
        self.session = session or build_session()
        self.manage_base_url = manage_base_url.rstrip("/")
        self.legacy_base_url = legacy_base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "BrightLocalClient":
        return cls(
            settings.brightlocal_api_key,
            api_secret=settings.brightlocal_api_secret,
            auth_mode=settings.brightlocal_auth_mode,
        )

    # ---------- transport ----------

    def _send(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = self.session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as exc:
            raise BrightLocalError(f"BrightLocal {method} {url} failed: {exc}") from exc

        if not (200 <= response.status_code < 300):
            raise BrightLocalError(
                f"BrightLocal {method} {url} failed ({response.status_code}): {response.text[:500]}"
            )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise BrightLocalError(f"BrightLocal {method} {url} returned non-JSON body") from exc

    def _manage(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None,
                body: Optional[Dict[str, Any]] = None) -> Any:
        headers = {"x-api-key": self.api_key, "Accept": "application/json"}
        return self._send(method, f"{self.manage_base_url}{path}", params=params, json=body, headers=headers)

    def _auth_params(self) -> Dict[str, str]:
        params = {"api-key": self.api_key}
        if self.auth_mode == "signed":
            expires = int(time.time()) + SIGNATURE_TTL_SECONDS
            params["sig"] = sign_request(self.api_key, self.api_secret or "", expires)
            params["expires"] = str(expires)
        return params

    def _legacy(self, method: str, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        all_params = {**self._auth_params(), **{k: str(v) for k, v in params.items()}}
        url = f"{self.legacy_base_url}{path}"
        if method == "GET":
            data = self._send(method, url, params=all_params)
        else:
            data = self._send(method, url, data=all_params)
        if not isinstance(data, dict):
            raise BrightLocalError(f"BrightLocal {method} {path} returned unexpected payload type")
        return data

    # ---------- Management API ----------

    def search_business_category(self, name: str, country: str = "USA") -> Optional[str]:
        data = self._manage("GET", "/business-categories", params={"country": country, "q": name})
        return pick_category(_items(data), name)

    def find_location(self, reference: str) -> Optional[str]:
        data = self._manage("GET", "/locations", params={"query": reference})
        for item in _items(data):
            item_ref = _first(item, "location_reference", "location-reference")
            if item_ref is not None and str(item_ref) != reference:
                continue
            location_id = _first(item, "location_id", "location-id", "id")
            if location_id is not None:
                return str(location_id)
        return None

    def create_location(
        self,
        *,
        name: str,
        phone: str,
        city: str,
        region: str,
        postcode: str,
        country: str,
        website: str,
        business_category_id: str,
        address1: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> str:
        body: Dict[str, Any] = {
            "business_name": name,
            "telephone": phone,
            "url": website,
            "business_category_id": business_category_id,
            "country": country,
            "address": {"address1": address1 or "", "city": city, "region": region, "postcode": postcode},
        }
        if reference:
            body["location_reference"] = reference
        data = self._manage("POST", "/locations", body=body)
        location_id = _first(_payload(data), "location_id", "location-id", "id") if isinstance(data, dict) else None
        if location_id is None:
            raise BrightLocalError(f"Failed to create BrightLocal location: {format_errors(_errors_of(data))}")
        return str(location_id)

    def find_campaign(self, location_id: str) -> Optional[str]:
        data = self._manage("GET", "/citation-builder", params={"location_id": location_id})
        for item in _items(data):
            campaign_id = _first(item, "campaign_id", "campaign-id", "id")
            if campaign_id is not None:
                return str(campaign_id)
        return None

    def create_campaign(self, location_id: str) -> str:
        body = {"location_id": int(location_id) if location_id.isdigit() else location_id}
        data = self._manage("POST", "/citation-builder", body=body)
        campaign_id = _first(_payload(data), "campaign_id", "campaign-id", "id") if isinstance(data, dict) else None
        if campaign_id is None:
            raise BrightLocalError(f"Failed to create Citation Builder campaign: {format_errors(_errors_of(data))}")
        return str(campaign_id)

    # ---------- Citation Tracker (legacy API) ----------

    def find_report(self, location_id: str) -> Optional[str]:
        data = self._legacy("GET", "/v2/ct/get-all", {"location-id": location_id})
        for item in _items(_payload(data)):
            item_location = _first(item, "location_id", "location-id")
            if item_location is not None and str(item_location) != str(location_id):
                continue
            report_id = _first(item, "report_id", "report-id")
            if report_id is not None:
                return str(report_id)
        return None

    def create_report(self, location_id: str, business_type: str, primary_location: str) -> str:
        data = self._legacy(
            "POST",
            "/v2/ct/add",
            {"location-id": location_id, "business-type": business_type, "primary-location": primary_location},
        )
        report_id = _first(_payload(data), "report-id", "report_id") or _first(data, "report-id", "report_id")
        if report_id is None:
            raise BrightLocalError(f"Failed to create CT report: {format_errors(data.get('errors'))}")
        return str(report_id)

    def run_report(self, report_id: str) -> str:
        """Start a scan; returns RUN_STARTED or RUN_ALREADY_RUNNING."""
        data = self._legacy("POST", "/v2/ct/run", {"report-id": report_id})
        status = str(_first(_payload(data), "status") or _first(data, "status") or "").lower()
        errors_text = format_errors(data.get("errors")).lower() if data.get("errors") else ""
        if status == RUN_ALREADY_RUNNING or "already running" in errors_text or "already_running" in errors_text:
            logger.info("CT report %s already has a scan in progress", report_id)
            return RUN_ALREADY_RUNNING
        if data.get("success") is False:
            raise BrightLocalError(f"Failed to run CT report {report_id}: {format_errors(data.get('errors'))}")
        return RUN_STARTED

    def get_report(self, report_id: str) -> ReportStatus:
        data = self._legacy("GET", "/v2/ct/get", {"report-id": report_id})
        report = data.get("report") or data.get("response")
        if data.get("success") is False or not isinstance(report, dict):
            raise BrightLocalError(f"Failed to get CT report {report_id}: {format_errors(data.get('errors'))}")
        status = _strip_or_none(report.get("status"))
        if status is None:
            raise BrightLocalError(f"CT report {report_id} has no status")
        return ReportStatus(
            report_id=str(_first(report, "report_id", "report-id") or report_id),
            status=status,
        )

    def get_results(self, report_id: str) -> List[CitationRecord]:
        data = self._legacy("GET", "/v2/ct/get-results", {"report-id": report_id})
        if data.get("success") is False:
            raise BrightLocalError(f"Failed to get CT results for {report_id}: {format_errors(data.get('errors'))}")
        return parse_results(data)

    def delete_report(self, report_id: str) -> None:
        data = self._legacy("DELETE", "/v2/ct/delete", {"report-id": report_id})
        if data.get("success") is False:
            raise BrightLocalError(f"Failed to delete CT report {report_id}: {format_errors(data.get('errors'))}")


def _errors_of(data: Any) -> Any:
    if isinstance(data, dict):
        return data.get("errors") or data.get("message")
    return None
