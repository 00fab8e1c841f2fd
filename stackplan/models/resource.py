from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from stackplan.models.values import Reference


@dataclass(frozen=True)
class Resource:
    plan: str              # owning plan, part of the backend identity
    name: str              # logical name, unique within the plan
    resource_type: str     # e.g. "aws_s3_bucket", "aws_instance"
    inputs: Dict[str, Any] = field(default_factory=dict, compare=False)
    depends_on: Tuple[str, ...] = ()

    @property
    def qualified_name(self) -> str:
        return f"{self.resource_type}.{self.name}"

    def ref(self, attribute: str) -> Reference:
        return Reference(self.name, attribute)


@dataclass(frozen=True)
class Lookup:
    name: str
    kind: str              # e.g. "aws_vpc", "aws_ami", "aws_secret"
    params: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def qualified_name(self) -> str:
        return f"data.{self.kind}.{self.name}"

    def ref(self, attribute: str) -> Reference:
        return Reference(self.name, attribute)


@dataclass(frozen=True)
class Output:
    name: str
    value: Any = field(compare=False)


@dataclass
class Observed:
    """What a backend currently holds for a resource."""
    outputs: Dict[str, Any]
    fingerprint: Optional[str] = None   # None when the backend cannot store one
    # None: not compared, the fingerprint decides. A boolean overrides the fingerprint.
    in_sync: Optional[bool] = None
