"""Remote reporting: HTTP client and background violation sync."""

from simharness.reporting.client import (
    HttpReportingClient,
    ReportingClient,
    build_create_payload,
    build_update_payload,
    format_description,
    format_title,
)
from simharness.reporting.sync import ViolationSyncer

__all__ = [
    "HttpReportingClient",
    "ReportingClient",
    "ViolationSyncer",
    "build_create_payload",
    "build_update_payload",
    "format_description",
    "format_title",
]
