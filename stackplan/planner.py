"""
Provisioning planner: declare resources and lookups, record their dependencies,
validate the graph and reconcile it against a backend.
"""
import hashlib
import json
import threading
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from rich.console import Console
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from stackplan import checks, scheduler
from stackplan.backends.base import Backend
from stackplan.config import PlannerConfig
from stackplan.errors import (
    ApplyInterrupted,
    BackendRequestError,
    CyclicDependencyError,
    DuplicateResourceError,
    InvalidPlanError,
    PlaintextSecretError,
    TransientBackendError,
    UnknownResourceError,
    UnresolvedReferenceError,
)
from stackplan.graph import DependencyGraph
from stackplan.models.resource import Lookup, Observed, Output, Resource
from stackplan.models.state import Action, ApplyState
from stackplan.models.values import Reference, iter_references, resolve

console = Console(stderr=True)
_default_console = console

NodeLike = Union[Resource, Lookup, str]

_ACTION_STYLE = {
    Action.CREATE: "[green]+[/green] create",
    Action.UPDATE: "[yellow]~[/yellow] update",
    Action.NOOP: "[dim]= unchanged[/dim]",
    Action.DELETE: "[red]-[/red] delete",
}


def fingerprint(inputs: Dict[str, Any]) -> str:
    """Stable hash of fully resolved inputs."""
    canonical = json.dumps(inputs, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _name_of(node: NodeLike) -> str:
    return node if isinstance(node, str) else node.name


class Planner:
    def __init__(
        self,
        name: str,
        backend: Backend,
        config: Optional[PlannerConfig] = None,
        console: Optional[Console] = None,
    ) -> None:
        self.name = name
        self.backend = backend
        self.config = config or PlannerConfig()
        self.console = console if console is not None else _default_console
        self.state: Optional[ApplyState] = None
        self.findings: List[checks.Finding] = []

        self._resources: Dict[str, Resource] = {}
        self._lookups: Dict[str, Lookup] = {}
        self._outputs: Dict[str, Output] = {}
        self._graph = DependencyGraph()
        self._lookup_cache: Dict[str, Dict[str, Any]] = {}
        self._resolved: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._cancel = threading.Event()

    # ------------------------------------------------------------ declaring
    @property
    def resources(self) -> List[Resource]:
        return list(self._resources.values())

    @property
    def lookups(self) -> List[Lookup]:
        return list(self._lookups.values())

    @property
    def outputs(self) -> List[Output]:
        return list(self._outputs.values())

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    def get(self, name: str) -> Union[Resource, Lookup]:
        if name in self._resources:
            return self._resources[name]
        return self._lookups[name]

    def _check_unique(self, name: str) -> None:
        if name in self._resources:
            raise DuplicateResourceError(name, self._resources[name].resource_type)
        if name in self._lookups:
            raise DuplicateResourceError(name, self._lookups[name].qualified_name)

    def declare(
        self,
        name: str,
        resource_type: str,
        inputs: Optional[Dict[str, Any]] = None,
        depends_on: Optional[Iterable[NodeLike]] = None,
    ) -> Resource:
        self._check_unique(name)
        deps = tuple(_name_of(d) for d in (depends_on or ()))
        resource = Resource(
            plan=self.name,
            name=name,
            resource_type=resource_type,
            inputs=dict(inputs or {}),
            depends_on=deps,
        )
        self._resources[name] = resource
        self._graph.add_node(name)
        for ref in iter_references(resource.inputs):
            self._graph.add_edge(name, ref.target)
        for dep in deps:
            self._graph.add_edge(name, dep)
        return resource

    def reference(self, target: NodeLike, attribute: str) -> Reference:
        return Reference(_name_of(target), attribute)

    def lookup(self, kind: str, name: Optional[str] = None, **params: Any) -> Lookup:
        name = name or kind
        self._check_unique(name)
        lk = Lookup(name=name, kind=kind, params=params)
        self._lookups[name] = lk
        self._graph.add_node(name)
        for ref in iter_references(params):
            self._graph.add_edge(name, ref.target)
        return lk

    def depends_on(self, resource: NodeLike, others: Iterable[NodeLike]) -> Resource:
        name = _name_of(resource)
        if name not in self._resources:
            raise UnknownResourceError(name)
        current = self._resources[name]
        added = tuple(_name_of(o) for o in others if _name_of(o) not in current.depends_on)
        updated = replace(current, depends_on=current.depends_on + added)
        self._resources[name] = updated
        for dep in added:
            self._graph.add_edge(name, dep)
        return updated

    def output(self, name: str, value: Any) -> Output:
        if name in self._outputs:
            raise DuplicateResourceError(name, "output")
        out = Output(name=name, value=value)
        self._outputs[name] = out
        return out

    # ----------------------------------------------------------- validation
    def _attribute_for(self, consumer: str, target: str) -> Optional[str]:
        node = self._resources.get(consumer) or self._lookups.get(consumer)
        values = node.inputs if isinstance(node, Resource) else getattr(node, "params", {})
        for ref in iter_references(values):
            if ref.target == target:
                return ref.attribute
        return None

    def _validate_structure(self) -> None:
        for consumer, target in self._graph.missing():
            raise UnresolvedReferenceError(consumer, target, self._attribute_for(consumer, target))

        for out in self._outputs.values():
            for ref in iter_references(out.value):
                if ref.target not in self._graph:
                    raise UnresolvedReferenceError(f"output:{out.name}", ref.target, ref.attribute)

        for lk in self._lookups.values():
            for dep in sorted(self._graph.dependencies(lk.name)):
                if dep in self._resources:
                    raise InvalidPlanError(
                        f"Lookup '{lk.name}' references resource '{dep}'; "
                        "lookups may only depend on other lookups."
                    )

        cycle = self._graph.find_cycle()
        if cycle:
            raise CyclicDependencyError(cycle)

    def validate(self) -> List[checks.Finding]:
        """Raise on an invalid plan; return the plan check findings."""
        self._validate_structure()
        self.findings = checks.run(self.resources, self._graph)
        errors = [f for f in self.findings if f.severity == checks.Severity.ERROR]
        if errors:
            raise PlaintextSecretError(errors)
        for f in self.findings:
            self.console.print(f"[yellow]Warning:[/yellow] {f.resource_name}: {f.message}")
        return self.findings

    def plan(self) -> List[str]:
        """Validated creation order of the declared resources."""
        self.validate()
        return self._graph.order(self._resources)

    # ---------------------------------------------------------------- apply
    def _call(self, node: str, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        retrying = Retrying(
            retry=retry_if_exception_type(TransientBackendError),
            stop=stop_after_attempt(max(1, self.config.max_attempts)),
            wait=wait_exponential(multiplier=self.config.retry_initial, max=self.config.retry_max)
            + wait_random(0, self.config.retry_initial),
            before_sleep=lambda rs: self.console.print(
                f"[yellow]Retry {rs.attempt_number}/{self.config.max_attempts}:[/yellow] "
                f"{operation} {node}: {rs.outcome.exception()}"
            ),
            reraise=True,
        )
        try:
            return retrying(fn, *args)
        except BackendRequestError:
            raise
        except Exception as exc:
            raise BackendRequestError(node, operation, exc) from exc

    def _reader(self, consumer: str) -> Callable[[Reference], Any]:
        def read(ref: Reference) -> Any:
            with self._lock:
                values = self._resolved.get(ref.target)
                if values is None:
                    values = self._lookup_cache.get(ref.target)
            if values is None or ref.attribute not in values:
                raise UnresolvedReferenceError(consumer, ref.target, ref.attribute)
            return values[ref.attribute]
        return read

    def _resolve_lookups(self, state: ApplyState, order: List[str]) -> None:
        for name in self._graph.order(self._lookups):
            if self._cancel.is_set():
                state.pending = list(order)
                state.interrupted = True
                raise ApplyInterrupted(state, order)
            if name in self._lookup_cache:
                continue
            lk = self._lookups[name]
            try:
                params = resolve(lk.params, self._reader(name))
                result = self._call(name, "lookup", self.backend.lookup, lk, params)
            except (BackendRequestError, UnresolvedReferenceError) as exc:
                state.failed = name
                state.pending = list(order)
                exc.state = state
                raise
            with self._lock:
                self._lookup_cache[name] = dict(result)
            self.console.print(f"[cyan]?[/cyan] lookup {lk.qualified_name}")

    def _apply_one(self, name: str) -> None:
        resource = self._resources[name]
        inputs = resolve(resource.inputs, self._reader(name))
        fp = fingerprint(inputs)
        observed = self._call(name, "read", self.backend.read, resource, inputs)

        if observed is None:
            action = Action.CREATE
            outputs = self._call(name, "create", self.backend.create, resource, inputs, fp)
        elif observed.in_sync or (observed.in_sync is None and observed.fingerprint == fp):
            action = Action.NOOP
            outputs = observed.outputs
        else:
            action = Action.UPDATE
            outputs = self._call(name, "update", self.backend.update, resource, inputs, fp, observed)

        with self._lock:
            self._resolved[name] = dict(outputs)
            self.state.record(name, action)
        self.console.print(f"{_ACTION_STYLE[action]} {resource.qualified_name}")

    def apply(self) -> Dict[str, Any]:
        """
        Reconcile every declared resource with the backend in dependency order
        and return the resolved outputs. Already-created resources are left in
        place when a later step fails.
        """
        self.validate()
        order = self._graph.order(self._resources)
        state = ApplyState(operation="apply")
        self.state = state
        self._cancel.clear()
        with self._lock:
            self._resolved = {}

        self._resolve_lookups(state, order)

        outcome = scheduler.run(
            order,
            self._graph.dependencies,
            self._apply_one,
            max_workers=self.config.max_workers,
            cancel=self._cancel,
        )
        state.pending = list(outcome.not_started)

        if outcome.failed is not None:
            failed, exc = outcome.failed
            state.failed = failed
            if isinstance(exc, (BackendRequestError, UnresolvedReferenceError)):
                exc.state = state
                raise exc
            raise BackendRequestError(failed, "resolve", exc, state) from exc

        if outcome.interrupted:
            state.interrupted = True
            raise ApplyInterrupted(state, outcome.not_started)

        results: Dict[str, Any] = {}
        for out in self._outputs.values():
            results[out.name] = resolve(out.value, self._reader(f"output:{out.name}"))
        return results

    def cancel(self) -> None:
        """Stop submitting new work; calls already in flight are completed."""
        self._cancel.set()

    # -------------------------------------------------------------- destroy
    def _discover(self, state: ApplyState, forward: List[str]) -> Dict[str, Observed]:
        """Read every resource in creation order to recover backend identities."""
        found: Dict[str, Observed] = {}
        for name in forward:
            resource = self._resources[name]
            try:
                inputs = resolve(resource.inputs, self._reader(name))
            except UnresolvedReferenceError:
                # a dependency is already gone, so this resource cannot exist
                continue
            try:
                observed = self._call(name, "read", self.backend.read, resource, inputs)
            except BackendRequestError as exc:
                state.failed = name
                state.pending = [n for n in reversed(forward) if n in found or n == name]
                exc.state = state
                raise
            if observed is not None:
                found[name] = observed
                with self._lock:
                    self._resolved[name] = dict(observed.outputs)
        return found

    def destroy(self) -> List[str]:
        """
        Delete resources in reverse dependency order and return what was
        deleted. On failure the raised error's state lists what remains.
        """
        self._validate_structure()
        forward = self._graph.order(self._resources)
        state = ApplyState(operation="destroy")
        self.state = state
        self._cancel.clear()
        with self._lock:
            self._resolved = {}

        self._resolve_lookups(state, forward)
        existing = self._discover(state, forward)
        order = list(reversed(forward))
        deleted: List[str] = []

        for i, name in enumerate(order):
            remaining = [n for n in order[i:] if n in existing]
            if self._cancel.is_set():
                state.pending = remaining
                state.interrupted = True
                raise ApplyInterrupted(state, remaining)
            resource = self._resources[name]
            if name not in existing:
                state.record(name, Action.NOOP)
                continue
            try:
                self._call(name, "delete", self.backend.delete, resource, existing[name])
            except BackendRequestError as exc:
                state.failed = name
                state.pending = remaining
                exc.state = state
                raise
            state.record(name, Action.DELETE)
            deleted.append(name)
            with self._lock:
                self._resolved.pop(name, None)
            self.console.print(f"{_ACTION_STYLE[Action.DELETE]} {resource.qualified_name}")

        return deleted
