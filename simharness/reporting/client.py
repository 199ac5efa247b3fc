"""Remote reporting sink client.

The harness pushes deduplicated violation records to a bug tracker. Each
remote report embeds the fingerprint in its title (``[AUTO:<fingerprint>]``)
so a later sync can find and update it instead of filing a duplicate.

``ReportingClient`` is the interface the syncer talks to.
``HttpReportingClient`` implements it against a small JSON HTTP API:

    GET   {base}/reports?fingerprint=<fp>   -> [{"id": ..., "title": ...}]
    POST  {base}/reports                    -> {"id": ...}
    PATCH {base}/reports/<id>               -> {"id": ...}
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

import requests

from simharness.errors import SyncError
from simharness.models import ViolationCategory, ViolationRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
REPORT_STATUS_OPEN = "open"

REMOTE_CATEGORIES: dict[ViolationCategory, str] = {
    ViolationCategory.STATE_CORRUPTION: "game_logic",
    ViolationCategory.RULE_VIOLATION: "game_logic",
    ViolationCategory.KEYWORD_VIOLATION: "game_logic",
    ViolationCategory.COMBAT_ERROR: "game_logic",
    ViolationCategory.CALCULATION_ERROR: "game_logic",
    ViolationCategory.DATA_INTEGRITY: "game_logic",
    ViolationCategory.CARD_CONSERVATION: "game_logic",
    ViolationCategory.EFFECT_ERROR: "game_logic",
    ViolationCategory.OTHER: "other",
}


class ReportingClient(Protocol):
    """What the syncer needs from a remote reporting sink.

    Implementations raise SyncError when the sink cannot be reached or
    rejects the request.
    """

    def find_by_fingerprint(self, fingerprint: str) -> dict[str, Any] | None: ...

    def create_report(self, payload: dict[str, Any]) -> dict[str, Any]: ...

    def update_report(self, remote_id: str, payload: dict[str, Any]) -> dict[str, Any]: ...


# ---------------------------------------------------------------------------
# Payload formatting
# ---------------------------------------------------------------------------


def title_marker(fingerprint: str) -> str:
    return f"[AUTO:{fingerprint}]"


def readable_type(kind: str) -> str:
    """``zombie-entity`` -> ``Zombie Entity``."""
    words = kind.replace("-", " ").replace("_", " ").split()
    return " ".join(word.capitalize() for word in words)


def format_title(record: ViolationRecord) -> str:
    return f"{title_marker(record.fingerprint)} {readable_type(record.type)}"


def _format_time(epoch: float | None) -> str:
    if not epoch:
        return "N/A"
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def format_description(record: ViolationRecord) -> str:
    """Markdown body for the remote report, built from the newest sample."""
    sample = record.sample_reports[0] if record.sample_reports else {}
    context = sample.get("context") or {}
    components = sample.get("fingerprintComponents") or record.fingerprint_components or "N/A"

    def value(key: str) -> Any:
        found = context.get(key)
        return "N/A" if found is None else found

    lines = [
        "**Automated detection by the simulation harness**",
        "",
        f"**Violation Type:** {record.type}",
        f"**Severity:** {record.severity.value}",
        f"**Occurrences:** {record.occurrence_count}",
        f"**First Seen:** {_format_time(record.first_seen)}",
        f"**Last Seen:** {_format_time(record.last_seen)}",
        "",
        "**Sample Message:**",
        f"> {sample.get('message') or record.message or 'No message available'}",
        "",
        "**Context:**",
        f"- Action: {value('action')}",
        f"- Phase: {value('phase')}",
        f"- Turn: {value('turn')}",
        "",
        "**Fingerprint Components:**",
        components,
    ]
    details = sample.get("details")
    if details:
        lines += ["", "**Details:**", "```json", json.dumps(details, indent=2, default=str), "```"]
    return "\n".join(lines)


def remote_category(category: ViolationCategory) -> str:
    return REMOTE_CATEGORIES.get(category, "other")


def build_create_payload(record: ViolationRecord) -> dict[str, Any]:
    return {
        "title": format_title(record),
        "description": format_description(record),
        "category": remote_category(record.category),
        "status": REPORT_STATUS_OPEN,
    }


def build_update_payload(record: ViolationRecord) -> dict[str, Any]:
    return {
        "description": format_description(record),
        "updatedAt": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# HTTP implementation
# ---------------------------------------------------------------------------


class HttpReportingClient:
    """ReportingClient backed by ``requests``.

    Args:
        base_url: Root of the reporting API, e.g. ``https://bugs.example/api``.
        api_key: Sent as a bearer token when set.
        timeout: Per-request timeout in seconds.
        session: Optional pre-configured ``requests.Session``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if api_key:
            self.session.headers.update({"Authorization": f"Bearer {api_key}"})

    def _request(
        self,
        method: str,
        path: str,
        fingerprint: str | None = None,
        **kwargs: Any,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise SyncError(
                f"{method} {url} failed: {e}", fingerprint=fingerprint
            ) from e

        if response.status_code >= 400:
            raise SyncError(
                f"{method} {url} returned {response.status_code}",
                fingerprint=fingerprint,
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise SyncError(
                f"{method} {url} returned a non-JSON body",
                fingerprint=fingerprint,
                status_code=response.status_code,
            ) from e

    def find_by_fingerprint(self, fingerprint: str) -> dict[str, Any] | None:
        """Existing remote report whose title carries the fingerprint."""
        data = self._request(
            "GET", "/reports", fingerprint=fingerprint, params={"fingerprint": fingerprint}
        )
        if isinstance(data, dict):
            data = data.get("reports", [data])
        marker = title_marker(fingerprint)
        for item in data or []:
            if isinstance(item, dict) and marker in str(item.get("title", "")):
                return item
        return None

    def create_report(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = self._request("POST", "/reports", json=payload)
        if not isinstance(data, dict) or data.get("id") is None:
            raise SyncError("Reporting sink did not return an id for the new report")
        return data

    def update_report(self, remote_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        data = self._request("PATCH", f"/reports/{remote_id}", json=payload)
        return data if isinstance(data, dict) else {"id": remote_id}

    def close(self) -> None:
        self.session.close()
