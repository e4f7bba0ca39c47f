"""
Persisted state: what the cloud API last told us about each resource.
"""
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

STATE_VERSION = 1


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class ResourceState:
    address: str
    resource_type: str
    resource_id: str
    provider: str = "aws"
    attributes: Dict[str, Any] = field(default_factory=dict)  # live, from the API
    inputs: Dict[str, Any] = field(default_factory=dict)      # resolved spec attributes
    spec_hash: str = ""
    dependencies: List[str] = field(default_factory=list)
    protected: bool = False
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceState":
        return cls(
            address=data["address"],
            resource_type=data["resource_type"],
            resource_id=data.get("resource_id", ""),
            provider=data.get("provider", "aws"),
            attributes=data.get("attributes") or {},
            inputs=data.get("inputs") or {},
            spec_hash=data.get("spec_hash", ""),
            dependencies=list(data.get("dependencies") or []),
            protected=bool(data.get("protected", False)),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class StateSnapshot:
    serial: int = 0
    lineage: str = field(default_factory=lambda: str(uuid.uuid4()))
    resources: Dict[str, ResourceState] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    version: int = STATE_VERSION

    def get(self, address: str):
        return self.resources.get(address)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "serial": self.serial,
            "lineage": self.lineage,
            "resources": {a: r.to_dict() for a, r in sorted(self.resources.items())},
            "outputs": self.outputs,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateSnapshot":
        if data.get("version", STATE_VERSION) > STATE_VERSION:
            raise ValueError(
                f"state file version {data['version']} is newer than supported ({STATE_VERSION})"
            )
        return cls(
            serial=int(data.get("serial", 0)),
            lineage=data.get("lineage") or str(uuid.uuid4()),
            resources={
                a: ResourceState.from_dict(r) for a, r in (data.get("resources") or {}).items()
            },
            outputs=data.get("outputs") or {},
            version=STATE_VERSION,
        )
