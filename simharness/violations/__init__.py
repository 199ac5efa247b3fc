"""Violation fingerprinting and the deduplicating registry."""

from simharness.violations.fingerprint import (
    categorize,
    describe_fingerprint_components,
    extract_subject,
    fingerprint,
    normalize_subject,
)
from simharness.violations.registry import ViolationRegistry

__all__ = [
    "ViolationRegistry",
    "categorize",
    "describe_fingerprint_components",
    "extract_subject",
    "fingerprint",
    "normalize_subject",
]
