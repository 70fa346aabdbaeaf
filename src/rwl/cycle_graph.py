"""LangGraph wrapper for the iteration loop - trace harness only.

This wraps the LoopController's cycle steps in a LangGraph StateGraph so that
each phase of a cycle is visible as a node in LangGraph Studio.

NO new orchestration logic. Same steps, same order, same exit policy as
LoopController.run(); just structured visibility.
"""

from typing import Any, Optional
from typing_extensions import TypedDict

from langgraph.graph import StateGraph, END

from rwl.controller import CycleState, LoopController
from rwl.loop_state import Outcome


class CycleGraphState(TypedDict):
    """State for the cycle graph."""
    loop_id: str
    # Controller, record and tracker references (passed through state)
    controller: Any
    record: Any
    tracker: Any
    cycle: Optional[CycleState]
    outcome: Optional[Outcome]


# --- Graph Nodes ---

def node_begin(state: CycleGraphState) -> dict:
    """Signal poll and pre-cycle limit checks."""
    controller: LoopController = state["controller"]
    record = state["record"]
    outcome = controller.begin_cycle(record)
    if outcome is not None:
        return {"outcome": outcome, "cycle": None}
    return {"cycle": CycleState(cycle=record.cycle_count + 1)}


def node_call_agent(state: CycleGraphState) -> dict:
    """Build the single message and make the stateless agent call."""
    controller: LoopController = state["controller"]
    cycle = state["cycle"]
    cycle.message = controller.build_message(state["record"], state["tracker"])
    controller.call_agent(cycle)
    return {"cycle": cycle}


def node_apply_actions(state: CycleGraphState) -> dict:
    state["controller"].apply_actions(state["cycle"], state["record"])
    return {"cycle": state["cycle"]}


def node_checkpoint(state: CycleGraphState) -> dict:
    state["controller"].checkpoint(state["cycle"], state["record"])
    return {"cycle": state["cycle"]}


def node_validate(state: CycleGraphState) -> dict:
    """Validation, completion token and quality gates."""
    controller: LoopController = state["controller"]
    cycle = state["cycle"]
    controller.validate(cycle, state["record"])
    controller.detect_promise(cycle)
    controller.check_gates(cycle, state["record"])
    return {"cycle": cycle}


def node_finish(state: CycleGraphState) -> dict:
    """Exit policy, progress entry and persistence."""
    controller: LoopController = state["controller"]
    outcome = controller.finish_cycle(state["cycle"], state["record"], state["tracker"])
    if outcome is None and controller.config.loop.sleep_between > 0:
        controller.sleep(controller.config.loop.sleep_between)
    return {"outcome": outcome}


# --- Conditional Edges ---

def after_begin(state: CycleGraphState) -> str:
    return "end" if state.get("outcome") is not None else "call_agent"


def after_agent(state: CycleGraphState) -> str:
    """A failed agent call skips actions and validation but still checkpoints."""
    if state["cycle"].agent_error is not None:
        return "checkpoint"
    return "apply_actions"


def after_checkpoint(state: CycleGraphState) -> str:
    if state["cycle"].agent_error is not None:
        return "finish"
    return "validate"


def after_finish(state: CycleGraphState) -> str:
    return "end" if state.get("outcome") is not None else "begin"


# --- Graph Builder ---

def build_cycle_graph() -> StateGraph:
    """
    Build the cycle graph.

    Flow:
        begin -> (preempted?) -> end
              -> call_agent -> apply_actions -> checkpoint -> validate -> finish
                            -> (agent failed) -> checkpoint -> finish
        finish -> (terminal?) -> end
               -> begin
    """
    graph = StateGraph(CycleGraphState)

    graph.add_node("begin", node_begin)
    graph.add_node("call_agent", node_call_agent)
    graph.add_node("apply_actions", node_apply_actions)
    graph.add_node("checkpoint", node_checkpoint)
    graph.add_node("validate", node_validate)
    graph.add_node("finish", node_finish)

    graph.set_entry_point("begin")

    graph.add_conditional_edges("begin", after_begin, {"end": END, "call_agent": "call_agent"})
    graph.add_conditional_edges(
        "call_agent",
        after_agent,
        {"apply_actions": "apply_actions", "checkpoint": "checkpoint"},
    )
    graph.add_edge("apply_actions", "checkpoint")
    graph.add_conditional_edges(
        "checkpoint",
        after_checkpoint,
        {"validate": "validate", "finish": "finish"},
    )
    graph.add_edge("validate", "finish")
    graph.add_conditional_edges("finish", after_finish, {"end": END, "begin": "begin"})

    return graph


# Upper bound on graph steps per cycle (begin, agent, actions, checkpoint, validate, finish)
STEPS_PER_CYCLE = 6


def run_cycle_graph(
    controller: LoopController,
    loop_id: str,
    task: Optional[str] = None,
    workspace: Optional[str] = None,
) -> Outcome:
    """
    Run a loop through the graph and return its outcome.

    This is the traced equivalent of LoopController.run().
    """
    record, finished = controller.start(loop_id, task, workspace)
    if finished is not None:
        return finished

    try:
        compiled = build_cycle_graph().compile()
        initial_state: CycleGraphState = {
            "loop_id": loop_id,
            "controller": controller,
            "record": record,
            "tracker": controller.open_tracker(record),
            "cycle": None,
            "outcome": None,
        }
        remaining = max(controller.config.loop.max_cycles - record.cycle_count, 0) + 1
        final_state = compiled.invoke(
            initial_state,
            {"recursion_limit": remaining * STEPS_PER_CYCLE + 10},
        )
        return final_state["outcome"]
    finally:
        controller.release()


# Pre-compiled graph for Studio discovery
cycle_graph = build_cycle_graph().compile()
