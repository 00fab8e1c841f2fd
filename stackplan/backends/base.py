"""
Contract the planner requires from a cloud backend.

Backends own resource identity: a retried create for a resource that already
exists must find it again through its deterministic name or tags rather than
duplicate it. Throttling and connectivity problems are signalled with
TransientBackendError so the planner can retry them.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from stackplan.models.resource import Lookup, Observed, Resource

PLAN_TAG = "stackplan:plan"
RESOURCE_TAG = "stackplan:resource"
FINGERPRINT_TAG = "stackplan:fingerprint"


def identity_tags(resource: Resource, fingerprint: Optional[str] = None) -> Dict[str, str]:
    tags = {PLAN_TAG: resource.plan, RESOURCE_TAG: resource.name}
    if fingerprint:
        tags[FINGERPRINT_TAG] = fingerprint
    return tags


def physical_name(resource: Resource, max_length: int = 63) -> str:
    """Deterministic provider-side name, ``{plan}-{logical name}``."""
    return f"{resource.plan}-{resource.name}"[:max_length].rstrip("-").lower()


class Backend(ABC):
    name = "base"

    @abstractmethod
    def lookup(self, lookup: Lookup, params: Dict[str, Any]) -> Dict[str, Any]:
        """Read existing cloud state. Returns the lookup's attributes."""

    @abstractmethod
    def read(self, resource: Resource, inputs: Dict[str, Any]) -> Optional[Observed]:
        """Current state of ``resource`` or None when it does not exist."""

    @abstractmethod
    def create(self, resource: Resource, inputs: Dict[str, Any], fingerprint: str) -> Dict[str, Any]:
        """Create the resource and return its output attributes."""

    @abstractmethod
    def update(
        self,
        resource: Resource,
        inputs: Dict[str, Any],
        fingerprint: str,
        observed: Observed,
    ) -> Dict[str, Any]:
        """Reconcile an existing resource with ``inputs``."""

    @abstractmethod
    def delete(self, resource: Resource, observed: Observed) -> None:
        """Delete an existing resource."""
