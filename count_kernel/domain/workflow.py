"""
Canonical workflow types (``count_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects for the count-session state machine and the single
workflow definition the lifecycle service drives.  The service asks the
workflow which transition an action maps to; guards are named here and
evaluated by the service's guard registry before the transition fires.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Transitions reference only states in ``Workflow.states``.
* ``initial_state`` is a member of ``states``.
* Terminal states have no outgoing transitions.
"""

from __future__ import annotations

from dataclasses import dataclass

from count_kernel.domain.values import LifecycleState


@dataclass(frozen=True)
class Guard:
    """A condition that must be satisfied before a transition fires.

    Contract: frozen, descriptive only.
    Non-goals: does not evaluate the condition; evaluators are registered
    by name with the lifecycle service.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition in a workflow."""
    from_state: LifecycleState
    to_state: LifecycleState
    action: str
    guard: Guard | None = None


@dataclass(frozen=True)
class Workflow:
    """A state machine definition for a document lifecycle."""
    name: str
    description: str
    initial_state: LifecycleState
    states: tuple[LifecycleState, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[LifecycleState, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(f"Initial state {self.initial_state} not in states")
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(f"Transition {t.action} references unknown state")
            if t.from_state in self.terminal_states:
                raise ValueError(f"Terminal state {t.from_state} has outgoing transition")

    def find_transition(self, from_state: LifecycleState, action: str) -> Transition | None:
        for t in self.transitions:
            if t.from_state == from_state and t.action == action:
                return t
        return None


# Actions
ACTION_START = "start"
ACTION_SUBMIT_COUNT = "submit_count"
ACTION_CONFIRM_DISCREPANCIES = "confirm_discrepancies"
ACTION_CONFIRM_SIGNATURE = "confirm_signature"
ACTION_BACK = "back"

GUARD_ALL_DISCREPANCIES_SETTLED = Guard(
    name="all_discrepancies_settled",
    description="Every discrepancy is auto-resolved or has a reason",
)

CYCLE_COUNT_WORKFLOW = Workflow(
    name="cycle_count",
    description="Daily store cycle count: scan, reconcile, sign",
    initial_state=LifecycleState.PENDING,
    states=tuple(LifecycleState),
    transitions=(
        Transition(LifecycleState.PENDING, LifecycleState.IN_PROGRESS, ACTION_START),
        Transition(LifecycleState.IN_PROGRESS, LifecycleState.RECONCILING, ACTION_SUBMIT_COUNT),
        Transition(
            LifecycleState.RECONCILING,
            LifecycleState.AWAITING_SIGNATURE,
            ACTION_CONFIRM_DISCREPANCIES,
            guard=GUARD_ALL_DISCREPANCIES_SETTLED,
        ),
        Transition(
            LifecycleState.AWAITING_SIGNATURE,
            LifecycleState.COMPLETED,
            ACTION_CONFIRM_SIGNATURE,
        ),
        Transition(LifecycleState.RECONCILING, LifecycleState.IN_PROGRESS, ACTION_BACK),
        Transition(LifecycleState.AWAITING_SIGNATURE, LifecycleState.RECONCILING, ACTION_BACK),
    ),
    terminal_states=(LifecycleState.COMPLETED,),
)
