"""Shared constants for the Textual UI."""

from __future__ import annotations

ACCENT = "#FF9900"
HISTORY_LIMIT = 200
REFRESH_SECONDS = 0.5
