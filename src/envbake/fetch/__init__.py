"""Integrity-checked installer retrieval."""

from __future__ import annotations

from .http import FetchResult, fetch

__all__ = ["FetchResult", "fetch"]
