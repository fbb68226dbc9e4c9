"""Status condition ledger helpers.

Conditions are recomputed from observed state on every cycle and merged into
the ledger by type (upsert), mirroring ``meta.SetStatusCondition`` semantics:
the transition time only moves when the status value changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

# Condition types read by other controllers (e.g. replica creation)
CONDITION_REPO_HOST_READY = "PGBackRestRepoHostReady"
CONDITION_REPLICA_REPO_READY = "PGBackRestReplicaRepoReady"
CONDITION_REPLICA_CREATE = "PGBackRestReplicaCreate"


def _now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Condition:
    type: str
    status: str = CONDITION_UNKNOWN
    reason: str = ""
    message: str = ""
    observed_generation: int = 0
    last_transition_time: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Condition":
        return cls(
            type=data.get("type", ""),
            status=data.get("status", CONDITION_UNKNOWN),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            observed_generation=int(data.get("observedGeneration", 0) or 0),
            last_transition_time=data.get("lastTransitionTime", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "observedGeneration": self.observed_generation,
            "lastTransitionTime": self.last_transition_time,
        }


def find_status_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_status_condition_true(conditions: list[Condition], condition_type: str) -> bool:
    condition = find_status_condition(conditions, condition_type)
    return condition is not None and condition.status == CONDITION_TRUE


def set_status_condition(conditions: list[Condition], new: Condition) -> None:
    """Upsert ``new`` into ``conditions`` by type."""
    existing = find_status_condition(conditions, new.type)
    if existing is None:
        if not new.last_transition_time:
            new.last_transition_time = _now()
        conditions.append(new)
        return

    if existing.status != new.status:
        existing.status = new.status
        existing.last_transition_time = new.last_transition_time or _now()
    existing.reason = new.reason
    existing.message = new.message
    existing.observed_generation = new.observed_generation


def remove_status_condition(conditions: list[Condition], condition_type: str) -> None:
    conditions[:] = [c for c in conditions if c.type != condition_type]
