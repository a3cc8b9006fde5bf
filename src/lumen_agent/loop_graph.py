"""LangGraph wrapper for the resilient loop - trace harness only.

Each loop phase (start, attempt, recover, reassess, finish) becomes a node
in a StateGraph so a run is visible step by step in LangGraph Studio.

NO new orchestration logic. Routing is ResilientLoop.next_phase(), so a
graph run and ResilientLoop.run() produce the same summary.
"""

from typing import Any, Optional
from typing_extensions import TypedDict

from langgraph.graph import StateGraph, END

from lumen_agent.errors import PlanMalformed
from lumen_agent.execution_state import LoopSummary
from lumen_agent.iteration_loop import (
    PHASE_ATTEMPT,
    PHASE_FINISH,
    PHASE_REASSESS,
    PHASE_RECOVER,
    LoopRun,
    ResilientLoop,
)


class LoopGraphState(TypedDict):
    """State for the loop graph."""
    plan: Any
    global_context: Optional[str]
    # ResilientLoop reference (passed through state)
    loop: Any
    run: Optional[LoopRun]
    summary: Optional[LoopSummary]


# --- Graph Nodes ---

def node_start(state: LoopGraphState) -> dict:
    """Normalise the plan and open a run."""
    loop: ResilientLoop = state["loop"]
    try:
        run = loop.start(state["plan"], state.get("global_context"))
    except PlanMalformed as e:
        return {"run": None, "summary": loop.aborted_summary(e)}
    return {"run": run}


def node_attempt(state: LoopGraphState) -> dict:
    """One iteration against the current step."""
    state["loop"].attempt(state["run"])
    return {"run": state["run"]}


def node_recover(state: LoopGraphState) -> dict:
    """One oracle-proposed recovery action."""
    state["loop"].recover(state["run"])
    return {"run": state["run"]}


def node_reassess(state: LoopGraphState) -> dict:
    """Replace the remaining steps after repeated failures."""
    state["loop"].reassess(state["run"])
    return {"run": state["run"]}


def node_finish(state: LoopGraphState) -> dict:
    """Build the summary (and verification, if enabled)."""
    return {"summary": state["loop"].finish(state["run"])}


# --- Conditional Edges ---

def route_after_start(state: LoopGraphState) -> str:
    if state.get("summary") is not None:
        return "end"
    return state["loop"].next_phase(state["run"])


def route_next_phase(state: LoopGraphState) -> str:
    return state["loop"].next_phase(state["run"])


_PHASE_TARGETS = {
    PHASE_ATTEMPT: "attempt",
    PHASE_RECOVER: "recover",
    PHASE_REASSESS: "reassess",
    PHASE_FINISH: "finish",
}


# --- Graph Builder ---

def build_loop_graph() -> StateGraph:
    """
    Build the loop graph.

    Flow:
        start -> attempt -> (success) -> attempt | finish
                         -> (failure) -> recover -> attempt | finish
                         -> (threshold) -> reassess -> attempt | finish
    """
    graph = StateGraph(LoopGraphState)

    graph.add_node("start", node_start)
    graph.add_node("attempt", node_attempt)
    graph.add_node("recover", node_recover)
    graph.add_node("reassess", node_reassess)
    graph.add_node("finish", node_finish)

    graph.set_entry_point("start")

    graph.add_conditional_edges("start", route_after_start, {**_PHASE_TARGETS, "end": END})
    for node in ("attempt", "recover", "reassess"):
        graph.add_conditional_edges(node, route_next_phase, _PHASE_TARGETS)
    graph.add_edge("finish", END)

    return graph


def recursion_limit_for(max_iterations: int) -> int:
    # attempt + recover/reassess per iteration, plus start and finish
    return max_iterations * 3 + 10


def run_loop_graph(
    loop: ResilientLoop,
    plan: Any,
    global_context: Optional[str] = None,
) -> LoopSummary:
    """
    Run the loop graph and return the summary.

    This is the traced equivalent of ResilientLoop.run().
    """
    compiled = build_loop_graph().compile()

    initial_state: LoopGraphState = {
        "plan": plan,
        "global_context": global_context,
        "loop": loop,
        "run": None,
        "summary": None,
    }

    final_state = compiled.invoke(
        initial_state,
        config={"recursion_limit": recursion_limit_for(loop.config.max_iterations)},
    )
    return final_state["summary"]


# Pre-compiled graph for Studio discovery
loop_graph = build_loop_graph().compile()
