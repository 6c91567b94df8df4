"""Settings models."""

from __future__ import annotations

from haspbridge.models.config import AppSettings

__all__ = ["AppSettings"]
