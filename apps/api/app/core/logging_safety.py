"""Utilities for safe structured logging fields."""

from __future__ import annotations

import hashlib
from typing import Any
from urllib.parse import urlsplit


def safe_log_identifier(value: Any, *, prefix: str) -> str:
    """Return a deterministic non-reversible token for log correlation fields."""
    text = str(value or "").strip()
    if not text:
        return f"{prefix}-missing"

    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]
    return f"{prefix}-{digest}"


def safe_output_summary(outputs: list[str]) -> str:
    """Summarize output references as host counts; signed URLs carry credentials."""
    hosts: dict[str, int] = {}
    for reference in outputs:
        host = urlsplit(reference).netloc or "opaque"
        hosts[host] = hosts.get(host, 0) + 1
    return ",".join(f"{host}:{count}" for host, count in sorted(hosts.items())) or "none"
