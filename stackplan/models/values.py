"""
Deferred input values: references to other nodes' outputs and pure functions
over them. Both are immutable and only evaluated once every source resolved.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Tuple


@dataclass(frozen=True)
class Reference:
    target: str        # logical name of a resource or lookup
    attribute: str     # output attribute, e.g. "id", "public_ip"

    def apply(self, fn: Callable[[Any], Any]) -> "Derived":
        return Derived(fn, (self,))

    def __str__(self) -> str:
        return f"{self.target}.{self.attribute}"


@dataclass(frozen=True)
class Derived:
    fn: Callable[..., Any] = field(compare=False)
    sources: Tuple[Any, ...] = ()
    label: str = ""

    def apply(self, fn: Callable[[Any], Any]) -> "Derived":
        return Derived(fn, (self,))

    def __str__(self) -> str:
        return self.label or "derived(" + ", ".join(str(s) for s in self.sources) + ")"


def derive(fn: Callable[..., Any], *values: Any) -> Derived:
    """Value computed by ``fn(*resolved_values)``."""
    return Derived(fn, tuple(values))


def interpolate(template: str, *values: Any) -> Derived:
    """``str.format`` over resolved values, e.g. a website URL from bucket + region."""
    return Derived(lambda *resolved: template.format(*resolved), tuple(values), label=template)


def to_json(structure: Any) -> Derived:
    """JSON-encode a structure that may contain references (policy documents)."""
    return Derived(
        lambda resolved: json.dumps(resolved, sort_keys=True),
        (structure,),
        label="json",
    )


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference nested in dicts, lists, tuples or Derived sources."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Derived):
        for src in value.sources:
            yield from iter_references(src)
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_references(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from iter_references(v)


def is_deferred(value: Any) -> bool:
    return isinstance(value, (Reference, Derived))


def resolve(value: Any, read: Callable[[Reference], Any]) -> Any:
    """Replace references with ``read(ref)`` and evaluate derived values."""
    if isinstance(value, Reference):
        return read(value)
    if isinstance(value, Derived):
        return value.fn(*(resolve(src, read) for src in value.sources))
    if isinstance(value, dict):
        return {k: resolve(v, read) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve(v, read) for v in value]
    if isinstance(value, tuple):
        return tuple(resolve(v, read) for v in value)
    return value
