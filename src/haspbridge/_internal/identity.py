"""System id inference from the Signal K ``self`` identifier."""

from __future__ import annotations


def infer_system_id(self_id: str | None) -> str | None:
    """Derive the bridge system id from a Signal K self identifier.

    With an MMSI configured the server reports
    ``vessels.urn:mrn:imo:mmsi:230099999`` and the MMSI is used as-is.
    Without one it reports a generated UUID
    (``vessels.urn:mrn:signalk:uuid:c0d79334-4e25-4245-8892-54e8ccc8021d``)
    and the last group of the UUID (``54e8ccc8021d``) is used.

    Returns ``None`` when *self_id* is missing or yields an empty id.
    """
    if not self_id:
        return None
    system_id = self_id.rsplit(":", 1)[-1].rsplit("-", 1)[-1].strip()
    return system_id or None
