"""
Event names, topics and payload builders for real-time fan-out.

Wire envelope:
    {"type": "<event name>", "topic": "<topic>", "payload": {...}, "emitted_at": "<iso8601>"}

Consumers must treat every payload field as optional: conflict events carry
either the full conflict or only the delta named here.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EventName(str, Enum):
    ANALYSIS_PROGRESS = "analysis:progress"
    ANALYSIS_COMPLETE = "analysis:complete"
    ANALYSIS_FAILED = "analysis:failed"
    CONFLICT_NEW = "conflict:new"
    CONFLICT_ASSIGNED = "conflict:assigned"
    CONFLICT_IN_PROGRESS = "conflict:in_progress"
    CONFLICT_RESOLVED = "conflict:resolved"
    CONFLICT_REJECTED = "conflict:rejected"


def org_topic(organization_id) -> str:
    return f"org:{organization_id}"


def analysis_topic(analysis_id) -> str:
    return f"analysis:{analysis_id}"


@dataclass(frozen=True)
class Event:
    name: EventName
    topic: str
    payload: dict[str, Any]
    emitted_at: datetime = field(default_factory=datetime.utcnow)

    def to_message(self) -> str:
        return json.dumps(
            {
                "type": self.name.value,
                "topic": self.topic,
                "payload": self.payload,
                "emitted_at": self.emitted_at.isoformat(),
            },
            default=str,
        )

    @classmethod
    def from_message(cls, raw: str | bytes) -> "Event":
        data = json.loads(raw)
        return cls(
            name=EventName(data["type"]),
            topic=data.get("topic", ""),
            payload=data.get("payload") or {},
            emitted_at=datetime.fromisoformat(data["emitted_at"]) if data.get("emitted_at") else datetime.utcnow(),
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_conflict(conflict) -> dict[str, Any]:
    return {
        "conflict_id": str(conflict.conflict_id),
        "organization_id": str(conflict.organization_id),
        "analysis_id": str(conflict.analysis_id),
        "conflict_type": conflict.conflict_type,
        "natural_key": conflict.natural_key,
        "upc": conflict.upc,
        "product_id": conflict.product_id,
        "related_product_ids": list(conflict.related_product_ids or []),
        "related_upcs": list(conflict.related_upcs or []),
        "locations": list(conflict.locations or []),
        "warehouses": list(conflict.warehouses or []),
        "severity": conflict.severity,
        "priority": conflict.priority,
        "cost_impact": conflict.cost_impact,
        "description": conflict.description,
        "status": conflict.status,
        "assigned_to": conflict.assigned_to,
        "assigned_at": _iso(conflict.assigned_at),
        "resolved_by": conflict.resolved_by,
        "resolved_at": _iso(conflict.resolved_at),
        "resolution": conflict.resolution,
        "resolution_notes": conflict.resolution_notes,
        "created_at": _iso(conflict.created_at),
        "updated_at": _iso(conflict.updated_at),
    }


def conflict_new(conflict) -> dict[str, Any]:
    return {"conflict": serialize_conflict(conflict)}


def conflict_assigned(conflict) -> dict[str, Any]:
    return {
        "conflict_id": str(conflict.conflict_id),
        "assigned_to": conflict.assigned_to,
        "assigned_at": _iso(conflict.assigned_at),
        "status": conflict.status,
    }


def conflict_in_progress(conflict) -> dict[str, Any]:
    return {
        "conflict_id": str(conflict.conflict_id),
        "assigned_to": conflict.assigned_to,
        "status": conflict.status,
    }


def conflict_resolved(conflict) -> dict[str, Any]:
    return {
        "conflict_id": str(conflict.conflict_id),
        "resolved_at": _iso(conflict.resolved_at),
        "resolved_by": conflict.resolved_by,
        "resolution": conflict.resolution,
        "status": conflict.status,
    }


def conflict_rejected(conflict) -> dict[str, Any]:
    return {
        "conflict_id": str(conflict.conflict_id),
        "resolved_by": conflict.resolved_by,
        "status": conflict.status,
    }


def analysis_progress(analysis_id, percent: int) -> dict[str, Any]:
    return {"analysis_id": str(analysis_id), "percent": percent}


def analysis_complete(analysis_id, conflicts_found: int, counts: dict[str, int]) -> dict[str, Any]:
    return {"analysis_id": str(analysis_id), "conflicts_found": conflicts_found, **counts}


def analysis_failed(analysis_id, error: str, counts: dict[str, int], reason: str = "error") -> dict[str, Any]:
    return {"analysis_id": str(analysis_id), "error": error, "reason": reason, **counts}
