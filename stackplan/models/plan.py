from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from stackplan.expressions import to_plain
from stackplan.models.state import ResourceState


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP   = "no-op"


@dataclass
class Operation:
    address: str
    resource_type: str
    action: Action
    provider: str = "aws"
    desired: Optional[Dict[str, Any]] = None   # resolved at plan time, may hold UNKNOWN
    prior: Optional[ResourceState] = None
    changed: List[str] = field(default_factory=list)
    requires: List[str] = field(default_factory=list)
    protected: bool = False
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "resource_type": self.resource_type,
            "action": self.action.value,
            "provider": self.provider,
            "desired": to_plain(self.desired) if self.desired is not None else None,
            "prior": self.prior.inputs if self.prior is not None else None,
            "changed": self.changed,
            "requires": self.requires,
            "protected": self.protected,
            "reason": self.reason,
        }


@dataclass
class Plan:
    operations: List[Operation] = field(default_factory=list)
    destroy: bool = False

    @property
    def changes(self) -> List[Operation]:
        return [op for op in self.operations if op.action != Action.NOOP]

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def summary(self) -> Dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for op in self.operations:
            counts[op.action.value] += 1
        return counts

    def get(self, address: str) -> Optional[Operation]:
        return next((op for op in self.operations if op.address == address), None)

    def to_dict(self) -> dict:
        return {
            "destroy": self.destroy,
            "summary": self.summary(),
            "operations": [op.to_dict() for op in self.operations],
        }


@dataclass
class ApplyResult:
    applied: List[Operation] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)   # re-checked at apply time, nothing to do
    outputs: Dict[str, Any] = field(default_factory=dict)

    def summary(self) -> Dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for op in self.applied:
            counts[op.action.value] += 1
        return counts
