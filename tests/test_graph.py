"""
Dependency graph and scheduler tests.
"""
import threading
import time

import pytest

from stackplan import scheduler
from stackplan.errors import CyclicDependencyError
from stackplan.graph import DependencyGraph


def _graph(edges, nodes=()):
    g = DependencyGraph()
    for n in nodes:
        g.add_node(n)
    for consumer, dep in edges:
        g.add_node(dep)
        g.add_edge(consumer, dep)
    return g


# --------------------------------------------------------- ordering
class TestOrder:
    def test_dependencies_come_first(self):
        g = _graph([("policy", "bucket"), ("policy", "bap"), ("bap", "bucket")])
        order = g.order()
        assert order.index("bucket") < order.index("bap") < order.index("policy")

    def test_ties_broken_by_name(self):
        g = _graph([], nodes=["zeta", "alpha", "mid"])
        assert g.order() == ["alpha", "mid", "zeta"]

    def test_declaration_order_does_not_matter(self):
        a = _graph([("sgB", "sgA"), ("instanceA", "sgB")])
        b = DependencyGraph()
        b.add_edge("instanceA", "sgB")
        b.add_edge("sgB", "sgA")
        b.add_node("sgA")
        assert a.order() == b.order() == ["sgA", "sgB", "instanceA"]

    def test_order_restricted_to_subset(self):
        g = _graph([("db", "subnets"), ("subnets", "vpc")])
        assert g.order(["db", "subnets"]) == ["subnets", "db"]

    def test_reverse_order(self):
        g = _graph([("b", "a"), ("c", "b")])
        assert g.reverse_order() == ["c", "b", "a"]


# --------------------------------------------------------- cycles
class TestCycles:
    def test_two_node_cycle(self):
        g = _graph([("a", "b"), ("b", "a")])
        cycle = g.find_cycle()
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b"}

    def test_long_cycle(self):
        g = _graph([("a", "b"), ("b", "c"), ("c", "d"), ("d", "a")])
        cycle = g.find_cycle()
        assert set(cycle) == {"a", "b", "c", "d"}
        assert len(cycle) == 5

    def test_self_cycle(self):
        g = DependencyGraph()
        g.add_edge("a", "a")
        assert g.find_cycle() == ["a", "a"]

    def test_order_raises_on_cycle(self):
        g = _graph([("a", "b"), ("b", "a")])
        with pytest.raises(CyclicDependencyError) as exc_info:
            g.order()
        assert set(exc_info.value.cycle) == {"a", "b"}

    def test_acyclic_has_no_cycle(self):
        g = _graph([("b", "a"), ("c", "a"), ("d", "b"), ("d", "c")])
        assert g.find_cycle() is None


class TestQueries:
    def test_missing_reports_dangling_edges(self):
        g = DependencyGraph()
        g.add_edge("policy", "bucket")
        assert g.missing() == [("policy", "bucket")]

    def test_ancestors_and_dependents(self):
        g = _graph([("b", "a"), ("c", "b")])
        assert g.ancestors("c") == {"a", "b"}
        assert g.dependents("a") == {"b"}
        assert "a" in g and len(g) == 3


# --------------------------------------------------------- scheduler
class TestScheduler:
    def test_runs_every_node_after_its_dependencies(self):
        g = _graph([("b", "a"), ("c", "a"), ("d", "b"), ("d", "c")])
        done = []
        lock = threading.Lock()

        def task(name):
            with lock:
                assert g.dependencies(name) <= set(done)
                done.append(name)

        outcome = scheduler.run(g.order(), g.dependencies, task, max_workers=3)
        assert sorted(outcome.completed) == ["a", "b", "c", "d"]
        assert outcome.failed is None and outcome.not_started == []

    def test_independent_nodes_run_concurrently(self):
        barrier = threading.Barrier(2, timeout=5)
        outcome = scheduler.run(["x", "y"], lambda n: set(), lambda n: barrier.wait(), max_workers=2)
        assert sorted(outcome.completed) == ["x", "y"]

    def test_failure_stops_new_submissions(self):
        g = _graph([("b", "a"), ("c", "b")])

        def task(name):
            if name == "b":
                raise RuntimeError("boom")

        outcome = scheduler.run(g.order(), g.dependencies, task, max_workers=1)
        assert outcome.completed == ["a"]
        assert outcome.failed[0] == "b"
        assert isinstance(outcome.failed[1], RuntimeError)
        assert outcome.not_started == ["c"]

    def test_cancel_drains_in_flight_calls(self):
        cancel = threading.Event()
        started = threading.Event()
        finished = []

        def task(name):
            if name == "a":
                started.set()
                cancel.set()
                time.sleep(0.05)
            finished.append(name)

        outcome = scheduler.run(
            ["a", "b"], lambda n: {"a"} if n == "b" else set(), task,
            max_workers=2, cancel=cancel,
        )
        assert started.is_set()
        assert finished == ["a"]
        assert outcome.interrupted is True
        assert outcome.not_started == ["b"]
