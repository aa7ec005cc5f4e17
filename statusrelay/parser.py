"""
Statuspage JSON Parser.

Parses ``/api/v2/incidents.json`` and ``/api/v2/scheduled-maintenances.json``
documents, as well as inbound webhook payloads, into Incident objects.
Timestamps are parsed with dateutil and always normalised to aware UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from dateutil import parser as dateutil_parser

from statusrelay.models import AffectedComponent, Incident, IncidentUpdate


class MalformedPayload(ValueError):
    """A status document or push payload could not be understood."""


def _parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp into aware UTC, None when missing."""
    if not value:
        return None
    if not isinstance(value, str):
        raise MalformedPayload(f"invalid timestamp: {value!r}")
    try:
        parsed = dateutil_parser.isoparse(value)
    except (ValueError, OverflowError) as exc:
        raise MalformedPayload(f"invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _require(raw: Dict[str, Any], key: str) -> Any:
    value = raw.get(key)
    if value in (None, ""):
        raise MalformedPayload(f"missing field {key!r}")
    return value


def _object(value: Any, what: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise MalformedPayload(f"{what} must be an object")
    return value


def _parse_component(raw: Any) -> AffectedComponent:
    raw = _object(raw, "affected component")
    return AffectedComponent(
        code=raw.get("code") or "",
        name=raw.get("name") or "Unknown",
        old_status=raw.get("old_status") or "",
        new_status=raw.get("new_status") or "",
    )


def _parse_update(raw: Any, incident_id: str) -> IncidentUpdate:
    raw = _object(raw, "incident update")
    components = raw.get("affected_components") or []
    if not isinstance(components, list):
        raise MalformedPayload("affected_components must be a list")
    created = _parse_datetime(_require(raw, "created_at"))
    return IncidentUpdate(
        id=str(_require(raw, "id")),
        incident_id=raw.get("incident_id") or incident_id,
        status=raw.get("status") or "investigating",
        body=raw.get("body") or "",
        created_at=created,
        updated_at=_parse_datetime(raw.get("updated_at")),
        affected_components=[_parse_component(c) for c in components],
    )


# ─── Public API ───────────────────────────────────────────────


def parse_incident(raw: Any) -> Incident:
    """
    Parse a single incident object.

    Raises:
        MalformedPayload: when the object lacks an id, a creation time,
            or carries unparsable timestamps.
    """
    if not isinstance(raw, dict):
        raise MalformedPayload("incident must be an object")
    incident_id = str(_require(raw, "id"))
    updates = raw.get("incident_updates") or []
    if not isinstance(updates, list):
        raise MalformedPayload("incident_updates must be a list")

    return Incident(
        id=incident_id,
        name=raw.get("name") or "Unknown Incident",
        impact=raw.get("impact") or "none",
        status=raw.get("status") or "investigating",
        created_at=_parse_datetime(_require(raw, "created_at")),
        shortlink=raw.get("shortlink") or "",
        updated_at=_parse_datetime(raw.get("updated_at")),
        scheduled_for=_parse_datetime(raw.get("scheduled_for")),
        scheduled_until=_parse_datetime(raw.get("scheduled_until")),
        updates=[_parse_update(u, incident_id) for u in updates],
    )


def parse_incidents_payload(data: Any, key: str = "incidents") -> List[Incident]:
    """
    Parse an ``incidents.json`` or ``scheduled-maintenances.json`` document.

    Args:
        data: Decoded JSON body.
        key: ``"incidents"`` or ``"scheduled_maintenances"``.

    Returns:
        Incidents in document order.
    """
    if not isinstance(data, dict) or not isinstance(data.get(key), list):
        raise MalformedPayload(f"document has no {key!r} list")
    return [parse_incident(raw) for raw in data[key]]


def merge_incidents(*groups: Iterable[Incident]) -> List[Incident]:
    """Merge incident lists into one, sorted ascending by creation time."""
    merged: List[Incident] = []
    for group in groups:
        merged.extend(group)
    merged.sort(key=lambda i: i.created_at)
    return merged


def parse_component_update(raw: Any) -> AffectedComponent:
    """
    Parse the ``component_update`` delta of a push payload.

    The component name travels in the sibling ``component`` object.
    """
    if not isinstance(raw, dict) or not isinstance(raw.get("component_update"), dict):
        raise MalformedPayload("payload has no component_update object")
    delta = raw["component_update"]
    component = _object(raw.get("component") or {}, "component")
    return AffectedComponent(
        code=str(_require(delta, "component_id")),
        name=component.get("name") or "Unknown",
        old_status=delta.get("old_status") or "",
        new_status=str(_require(delta, "new_status")),
    )
