"""Decode Signal K stream messages.

Two message shapes arrive on ``/signalk/v1/stream``:

Hello (first message after connect)::

    {"name": "signalk-server", "version": "2.8.0",
     "self": "vessels.urn:mrn:imo:mmsi:230099999", "roles": ["master", "main"]}

Delta::

    {"context": "vessels.urn:mrn:imo:mmsi:230099999",
     "updates": [{"$source": "n2k.115", "timestamp": "2026-01-31T12:00:00.000Z",
                  "values": [{"path": "electrical.batteries.1.voltage", "value": 12.6}]}]}

A delta without ``context`` refers to the self vessel.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from haspbridge.signalk.bus import PathValue

logger = logging.getLogger(__name__)

SELF_CONTEXT = "vessels.self"


@dataclass(frozen=True, slots=True)
class Hello:
    """Server hello message."""

    name: str | None
    version: str | None
    self_id: str | None


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, str):
        try:
            ts = datetime.fromisoformat(raw)
        except ValueError:
            logger.debug("Unparseable delta timestamp %r, using receive time", raw)
        else:
            return ts if ts.tzinfo is not None else ts.replace(tzinfo=UTC)
    return datetime.now(UTC)


def _source_label(update: dict[str, Any]) -> str | None:
    label = update.get("$source")
    if isinstance(label, str):
        return label
    source = update.get("source")
    if isinstance(source, dict):
        label = source.get("label")
        if isinstance(label, str):
            return label
    return None


def parse_message(raw: str | bytes) -> dict[str, Any] | None:
    """Parse a raw stream frame, returning ``None`` for anything but a JSON object."""
    try:
        msg = json.loads(raw)
    except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
        logger.warning("Received non-JSON frame, ignoring")
        return None
    if not isinstance(msg, dict):
        return None
    return msg


def parse_hello(msg: dict[str, Any]) -> Hello | None:
    """Return a :class:`Hello` if *msg* is a server hello, otherwise ``None``."""
    if "updates" in msg or "self" not in msg:
        return None
    self_id = msg.get("self")
    return Hello(
        name=msg.get("name"),
        version=msg.get("version"),
        self_id=self_id if isinstance(self_id, str) else None,
    )


def is_self_context(context: str | None, self_id: str | None) -> bool:
    """Return ``True`` if a delta *context* refers to the self vessel."""
    if context is None or context == SELF_CONTEXT:
        return True
    return self_id is not None and context == self_id


def decode_delta(msg: dict[str, Any], self_id: str | None) -> list[PathValue]:
    """Extract self-vessel path values from a delta message.

    Values for other contexts (AIS targets, other vessels) are skipped, as
    are malformed updates.
    """
    updates = msg.get("updates")
    if not isinstance(updates, list):
        return []
    if not is_self_context(msg.get("context"), self_id):
        return []

    result: list[PathValue] = []
    for update in updates:
        if not isinstance(update, dict):
            continue
        values = update.get("values")
        if not isinstance(values, list):
            continue
        timestamp = _parse_timestamp(update.get("timestamp"))
        source = _source_label(update)
        for entry in values:
            if not isinstance(entry, dict):
                continue
            path = entry.get("path")
            if not isinstance(path, str) or not path:
                continue
            result.append(
                PathValue(path=path, value=entry.get("value"), timestamp=timestamp, source=source)
            )
    return result


def build_subscribe_message(paths: list[str]) -> dict[str, Any]:
    """Subscription request for *paths* on the self vessel, sent as each value changes."""
    return {
        "context": SELF_CONTEXT,
        "subscribe": [{"path": path, "policy": "instant"} for path in paths],
    }
