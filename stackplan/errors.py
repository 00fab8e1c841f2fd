"""
Exception hierarchy for plan validation and backend failures.

Structural errors (subclasses of InvalidPlanError) are always raised before the
backend is touched. Runtime errors carry the partial ApplyState of the run.
"""
from typing import List, Optional, Sequence


class StackplanError(Exception):
    """Base class for every error raised by stackplan."""


class InvalidPlanError(StackplanError):
    """The declared plan is structurally invalid."""


class DuplicateResourceError(InvalidPlanError):
    def __init__(self, name: str, existing_type: str):
        self.name = name
        self.existing_type = existing_type
        super().__init__(
            f"Logical name '{name}' is already declared (as {existing_type})."
        )


class UnresolvedReferenceError(InvalidPlanError):
    def __init__(self, consumer: str, target: str, attribute: Optional[str] = None):
        self.consumer = consumer
        self.target = target
        self.attribute = attribute
        what = f"'{target}.{attribute}'" if attribute else f"'{target}'"
        super().__init__(f"'{consumer}' references {what}, which is not declared.")


class UnknownResourceError(InvalidPlanError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"'{name}' is not a declared resource.")


class CyclicDependencyError(InvalidPlanError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__("Dependency cycle: " + " -> ".join(self.cycle))


class PlaintextSecretError(InvalidPlanError):
    def __init__(self, findings: list):
        self.findings = findings
        names = ", ".join(sorted({f.resource_name for f in findings}))
        super().__init__(f"Plaintext secret values declared on: {names}")


class PlanFileError(InvalidPlanError):
    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"{path}: {reason}")


class TransientBackendError(StackplanError):
    """Throttling or connectivity failure worth retrying."""


class ReplacementRequiredError(StackplanError):
    """A changed input cannot be applied to the live resource in place."""

    def __init__(self, resource: str, fields: Sequence[str]):
        self.resource = resource
        self.fields = list(fields)
        super().__init__(
            f"'{resource}' must be replaced to change {', '.join(self.fields)}; "
            "destroy it and apply again."
        )


class BackendRequestError(StackplanError):
    """A create/read/update/delete/lookup call failed for a specific node."""

    def __init__(self, resource: str, operation: str, cause: BaseException, state=None):
        self.resource = resource
        self.operation = operation
        self.cause = cause
        self.state = state
        super().__init__(f"{operation} '{resource}' failed: {cause}")


class ApplyInterrupted(StackplanError):
    def __init__(self, state, remaining: List[str]):
        self.state = state
        self.remaining = list(remaining)
        super().__init__(
            f"Interrupted; {len(self.remaining)} resource(s) not processed: "
            + ", ".join(self.remaining)
        )
