"""
Bounded task-graph executor.

A node is submitted only once all of its dependencies completed successfully.
After the first failure, or once cancelled, nothing new is submitted but calls
already in flight are always waited for.
"""
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple


@dataclass
class RunOutcome:
    completed: List[str] = field(default_factory=list)
    failed: Optional[Tuple[str, BaseException]] = None
    not_started: List[str] = field(default_factory=list)
    interrupted: bool = False


def run(
    nodes: Iterable[str],
    dependencies: Callable[[str], Set[str]],
    task: Callable[[str], None],
    max_workers: int = 4,
    cancel: Optional[threading.Event] = None,
) -> RunOutcome:
    """Run ``task(node)`` for every node respecting ``dependencies``."""
    cancel = cancel or threading.Event()
    max_workers = max(1, int(max_workers))
    names = list(nodes)
    selected = set(names)
    waiting: Dict[str, Set[str]] = {
        n: {d for d in dependencies(n) if d in selected} for n in names
    }
    outcome = RunOutcome()
    running: Dict[Future, str] = {}

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="stackplan") as pool:
        while True:
            if outcome.failed is None and not cancel.is_set():
                ready = sorted(n for n, deps in waiting.items() if not deps)
                for name in ready[: max_workers - len(running)]:
                    del waiting[name]
                    running[pool.submit(task, name)] = name

            if not running:
                break

            try:
                finished, _ = wait(list(running), return_when=FIRST_COMPLETED)
            except KeyboardInterrupt:
                cancel.set()
                continue

            for fut in sorted(finished, key=lambda f: running[f]):
                name = running.pop(fut)
                exc = fut.exception()
                if exc is not None:
                    if outcome.failed is None:
                        outcome.failed = (name, exc)
                    continue
                outcome.completed.append(name)
                for deps in waiting.values():
                    deps.discard(name)

    outcome.not_started = sorted(waiting)
    outcome.interrupted = cancel.is_set() and outcome.failed is None and bool(waiting)
    return outcome
