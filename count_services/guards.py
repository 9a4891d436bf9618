"""
Guard evaluation for lifecycle transitions.

Guards are declared on workflow transitions by name only.  ``GuardExecutor``
holds the evaluator for each name.  An evaluator takes the session and
returns the identifiers that block the transition; an empty tuple means the
guard passes.
"""

from __future__ import annotations

from typing import Callable

from count_engines.reconciliation import blocking_discrepancies
from count_kernel.domain.values import CountSession
from count_kernel.domain.workflow import GUARD_ALL_DISCREPANCIES_SETTLED, Guard
from count_kernel.exceptions import UnregisteredGuardError
from count_kernel.logging_config import get_logger

logger = get_logger("services.guards")

GuardEvaluator = Callable[[CountSession], tuple[str, ...]]


class GuardExecutor:
    """Evaluates workflow guards against a session."""

    def __init__(self) -> None:
        self._evaluators: dict[str, GuardEvaluator] = {}

    def register(self, guard_name: str, evaluator: GuardEvaluator) -> None:
        self._evaluators[guard_name] = evaluator

    def blocking(self, guard: Guard, session: CountSession) -> tuple[str, ...]:
        """Return the identifiers blocking ``guard``; empty when it passes."""
        fn = self._evaluators.get(guard.name)
        if fn is None:
            logger.warning("guard_no_evaluator", extra={"guard_name": guard.name})
            raise UnregisteredGuardError(guard.name)
        return tuple(fn(session))


def _all_discrepancies_settled(session: CountSession) -> tuple[str, ...]:
    return blocking_discrepancies(session.discrepancies)


def default_guard_executor() -> GuardExecutor:
    """Return a GuardExecutor with the cycle-count evaluators registered."""
    executor = GuardExecutor()
    executor.register(GUARD_ALL_DISCREPANCIES_SETTLED.name, _all_discrepancies_settled)
    return executor
