"""
Embed rendering.

Turns an (incident, update) pair into the embed posted to a destination,
and reduces embeds to a canonical form used to detect content changes.
The footer encodes the incident and update ids so delivered messages can
be matched back to their update during backfill.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from statusrelay.models import Incident, IncidentUpdate

INCIDENT_COLORS = {
    "none": 0x33CC66,
    "minor": 0xF1C40F,
    "major": 0xCC6600,
    "critical": 0xCC3333,
    "maintenance": 0x3498DB,
}

COMPONENT_EMOJI = {
    "operational": "<:operational:685538400639385649>",
    "degraded_performance": "<:degraded_performance:685538400228343808>",
    "partial_outage": "<:partial_outage:685538400555499675>",
    "major_outage": "<:major_outage:685538400639385706>",
    "under_maintenance": "<:maintenance:685538400337395743>",
}

_DEFAULT_COLOR = 0xFFFFFF
_MAX_DESCRIPTION = 4096
_MAX_FIELD_VALUE = 1024

_FOOTER_RE = re.compile(
    r"Incident ID: (?P<incident>\w+) \| Update ID: (?P<update>\w+)",
    re.IGNORECASE,
)


def title_case(text: str) -> str:
    """'degraded_performance' -> 'Degraded Performance'."""
    words = text.replace("_", " ").lower().split(" ")
    return " ".join(w[:1].upper() + w[1:] for w in words)


def footer_text(incident_id: str, update_id: str) -> str:
    return f"Incident ID: {incident_id} | Update ID: {update_id}"


def parse_footer(embed: Optional[Dict[str, Any]]) -> Optional[Tuple[str, str]]:
    """Recover (incident id, update id) from an embed footer, if present."""
    if not embed:
        return None
    text = (embed.get("footer") or {}).get("text") or ""
    match = _FOOTER_RE.search(text)
    if not match:
        return None
    return match.group("incident"), match.group("update")


def _component_lines(update: IncidentUpdate) -> List[str]:
    components = update.affected_components
    # pages without component codes send placeholder entries
    if not components or not components[0].code:
        return []
    return [
        f"{COMPONENT_EMOJI.get(c.new_status, '')} **{c.name}**: {title_case(c.new_status)}"
        for c in components
    ]


def render_update_embed(incident: Incident, update: IncidentUpdate) -> Dict[str, Any]:
    """
    Render an update as a chat-platform embed (JSON-ready dict).

    The timestamp is the scheduled start for a maintenance's "scheduled"
    update, otherwise the update's revision time.
    """
    body = update.body
    if len(body) > _MAX_FIELD_VALUE:
        body = body[: _MAX_FIELD_VALUE - 3] + "..."

    if incident.scheduled_for and update.status == "scheduled":
        timestamp = incident.scheduled_for
    else:
        timestamp = update.revised_at

    embed: Dict[str, Any] = {
        "title": incident.name,
        "url": f"{incident.shortlink}?u={update.id}" if incident.shortlink else None,
        "color": INCIDENT_COLORS.get(incident.impact, _DEFAULT_COLOR),
        "fields": [{"name": title_case(update.status), "value": body or "\u200b", "inline": False}],
        "footer": {"text": footer_text(incident.id, update.id)},
        "timestamp": timestamp.isoformat(),
    }
    description = "\n".join(_component_lines(update))
    if description and len(description) <= _MAX_DESCRIPTION:
        embed["description"] = description
    if embed["url"] is None:
        del embed["url"]
    return embed


@dataclass(frozen=True)
class CanonicalEmbed:
    """The parts of an embed that matter when deciding whether to edit."""

    title: Optional[str]
    description: Optional[str]
    status: str
    body: str
    color: Optional[int]
    footer: Optional[str]

    @classmethod
    def from_embed(cls, embed: Optional[Dict[str, Any]]) -> "CanonicalEmbed":
        embed = embed or {}
        fields = embed.get("fields") or [{}]
        return cls(
            title=embed.get("title"),
            description=embed.get("description") or None,
            status=fields[0].get("name") or "Unknown",
            body=fields[0].get("value") or "Unknown",
            color=embed.get("color"),
            footer=(embed.get("footer") or {}).get("text"),
        )
