"""openHASP topic and payload conventions.

Outbound (must match the display firmware bit-for-bit):

- command topic:  ``hasp/<nodename>/command``
- page load body: ``jsonl <pages>``
- value update:   ``<keyword>=<value>``

Inbound (parsed, dispatched through the session's action table):

- ``<action>/signalk/<systemId>/<subPath...>``
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

SIGNALK_DOMAIN = "signalk"

_HASP_PREFIX = "hasp"
_COMMAND_SUFFIX = "command"
_PAGES_COMMAND = "jsonl"


def build_command_topic(node_name: str) -> str:
    """Return the command topic for an openHASP node.

    No validation; *node_name* is expected to be a plain identifier.
    """
    return f"{_HASP_PREFIX}/{node_name}/{_COMMAND_SUFFIX}"


def build_client_id(system_id: str) -> str:
    """Stable MQTT client identifier for a bridge instance."""
    return f"{SIGNALK_DOMAIN}/{system_id}"


def build_inbound_subscription(system_id: str) -> str:
    """Topic filter matching every inbound message addressed to *system_id*."""
    return f"+/{SIGNALK_DOMAIN}/{system_id}/#"


def format_pages_payload(pages: str) -> str:
    """Body of the page-load command sent on every (re)connect."""
    return f"{_PAGES_COMMAND} {pages}"


def _format_float(value: float) -> str:
    """Shortest round-trip digits laid out like JavaScript's ``Number#toString``.

    Plain notation for magnitudes in ``[1e-6, 1e21)``, otherwise exponent
    notation with an explicit sign and no zero padding (``1e-7``, ``1.5e+21``).
    """
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    digits = "".join(map(str, digit_tuple)).rstrip("0")
    exponent += len(digit_tuple) - len(digits)
    k = len(digits)
    n = exponent + k  # value == 0.<digits> * 10**n

    if k <= n <= 21:
        return sign + digits + "0" * (n - k)
    if 0 < n <= 21:
        return sign + digits[:n] + "." + digits[n:]
    if -6 < n <= 0:
        return sign + "0." + "0" * -n + digits
    e = n - 1
    mantissa = digits if k == 1 else digits[0] + "." + digits[1:]
    exp_sign = "+" if e >= 0 else "-"
    return f"{sign}{mantissa}e{exp_sign}{abs(e)}"


def format_value(value: Any) -> str:
    """Stringify a telemetry value the way the display firmware expects.

    Floats follow JavaScript number formatting (``13.0`` is ``13``, ``1e-07``
    is ``1e-7``, ``1e21`` is ``1e+21``); Python integers are written in full.
    Booleans become ``true``/``false`` and ``None`` becomes ``null``.
    Structured values (positions, attitudes) are sent as compact JSON.  No
    escaping and no truncation.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        return _format_float(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def format_value_update(keyword: str, value: Any) -> str:
    """Body of a single property update, e.g. ``p5b51.val=12.6``."""
    return f"{keyword}={format_value(value)}"


@dataclass(frozen=True, slots=True)
class InboundTopic:
    """Components of an inbound topic.

    ``domain`` and ``system_id`` are ``None`` when the topic has fewer than
    three segments; such topics never match a session.
    """

    action: str
    domain: str | None
    system_id: str | None
    sub_path: str

    def matches(self, system_id: str) -> bool:
        """Return ``True`` if this topic is addressed to *system_id*."""
        return self.domain == SIGNALK_DOMAIN and self.system_id == system_id


def parse_inbound_topic(topic: str) -> InboundTopic:
    """Split an inbound topic into action, domain, system id and sub path."""
    parts = topic.split("/")
    return InboundTopic(
        action=parts[0],
        domain=parts[1] if len(parts) >= 3 else None,
        system_id=parts[2] if len(parts) >= 3 else None,
        sub_path="/".join(parts[3:]),
    )
