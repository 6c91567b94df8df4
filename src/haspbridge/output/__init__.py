from __future__ import annotations

from haspbridge.output.formatter import OutputFormatter

__all__ = ["OutputFormatter"]
