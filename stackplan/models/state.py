from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    NOOP   = "noop"
    DELETE = "delete"


@dataclass
class ApplyState:
    """Partial-completion record of one apply or destroy pass."""
    operation: str = "apply"
    actions: Dict[str, Action] = field(default_factory=dict)
    completed: List[str] = field(default_factory=list)
    failed: Optional[str] = None
    pending: List[str] = field(default_factory=list)
    interrupted: bool = False

    def record(self, name: str, action: Action) -> None:
        self.actions[name] = action
        self.completed.append(name)

    @property
    def created(self) -> List[str]:
        return [n for n in self.completed if self.actions.get(n) == Action.CREATE]

    @property
    def succeeded(self) -> bool:
        return self.failed is None and not self.pending and not self.interrupted

    def counts(self) -> Dict[str, int]:
        totals = {a.value: 0 for a in Action}
        for action in self.actions.values():
            totals[action.value] += 1
        return totals

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "summary": self.counts(),
            "completed": list(self.completed),
            "actions": {k: v.value for k, v in self.actions.items()},
            "failed": self.failed,
            "pending": list(self.pending),
            "interrupted": self.interrupted,
        }
