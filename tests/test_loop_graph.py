"""Tests for the LangGraph trace harness: same phases, same summary."""

import pytest

from fakes import FakeRunner, ScriptedOracle
from lumen_agent.command_runner import STATUS_ERROR
from lumen_agent.config import LoopConfig
from lumen_agent.execution_state import ABORTED
from lumen_agent.iteration_loop import ResilientLoop
from lumen_agent.loop_graph import build_loop_graph, loop_graph, recursion_limit_for, run_loop_graph


def build(outcomes=None, revisions=None, **config):
    oracle = ScriptedOracle(revisions=revisions)
    loop = ResilientLoop(oracle, runner=FakeRunner(outcomes), config=LoopConfig(**config))
    return loop, oracle


class TestGraphStructure:
    """The graph exposes the loop phases as nodes."""

    def test_nodes(self):
        """start, attempt, recover, reassess and finish are nodes."""
        graph = build_loop_graph()
        assert {"start", "attempt", "recover", "reassess", "finish"} <= set(graph.nodes)

    def test_precompiled_graph_exists(self):
        """A compiled graph is exported for Studio."""
        assert loop_graph is not None

    def test_recursion_limit_scales(self):
        """The recursion limit grows with the iteration budget."""
        assert recursion_limit_for(50) > 50 * 2
        assert recursion_limit_for(1) > 3


class TestGraphMatchesLoop:
    """Graph runs and plain runs give the same summary."""

    def test_happy_path(self):
        """All-success plan."""
        plain_loop, _ = build()
        graph_loop, _ = build()
        plan = ["ls", "pwd", "whoami"]
        assert run_loop_graph(graph_loop, plan).to_dict() == plain_loop.run(plan).to_dict()

    def test_recovery_and_reassessment(self):
        """Failures, recovery and a reassessment."""
        outcomes = {"broken": [STATUS_ERROR]}
        plain_loop, _ = build(outcomes, revisions=[["alt"]], max_consecutive_failures=2)
        graph_loop, _ = build(outcomes, revisions=[["alt"]], max_consecutive_failures=2)
        plan = ["ok", "broken", "later"]

        expected = plain_loop.run(plan)
        actual = run_loop_graph(graph_loop, plan)
        assert actual.to_dict() == expected.to_dict()
        assert actual.reassessments == 1

    def test_exhaustion(self):
        """A run that spends its whole budget."""
        outcomes = {"a": [STATUS_ERROR]}
        plain_loop, _ = build(outcomes, max_iterations=6)
        graph_loop, _ = build(outcomes, max_iterations=6)

        expected = plain_loop.run(["a"])
        actual = run_loop_graph(graph_loop, ["a"])
        assert actual.to_dict() == expected.to_dict()
        assert actual.iterations == 6

    def test_malformed_plan(self):
        """A malformed plan is aborted before any node runs the oracle."""
        graph_loop, oracle = build()
        summary = run_loop_graph(graph_loop, [])
        assert summary.state == ABORTED
        assert oracle.calls == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
