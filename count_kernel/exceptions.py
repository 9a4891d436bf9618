"""
Typed Exception Hierarchy for the Cycle-Count Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The surrounding UI needs to re-prompt the operator, focus a blocking
discrepancy, or show a one-off storage warning.  None of that should depend
on parsing message strings, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, UI-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        lifecycle.advance()
    except UnresolvedDiscrepanciesError as e:
        focus_row(e.blocking[0])

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from CycleCountError:

    CycleCountError (base)
    |
    +-- ValidationError
    |   +-- MalformedIdentifierError
    |   +-- NegativeQuantityError
    |   +-- UnknownSkuError
    |   +-- CountModeMismatchError
    |   +-- ReasonNoteRequiredError
    |   +-- DiscrepancyNotFoundError
    |   +-- DiscrepancyAlreadyResolvedError
    |
    +-- LifecycleError
    |   +-- IllegalTransitionError
    |   +-- UnresolvedDiscrepanciesError
    |   +-- NoActiveSessionError
    |   +-- SessionCompletedError
    |   +-- UnregisteredGuardError
    |
    +-- PersistenceError
    |   +-- SessionRecordError
    |
    +-- ConfigError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|---------------------------------------
Validation      | MALFORMED_IDENTIFIER          | Scanned/typed identifier rejected
                | NEGATIVE_QUANTITY             | Manual count below zero
                | UNKNOWN_SKU                   | SKU not in the expectation list
                | COUNT_MODE_MISMATCH           | Quantity entry on a scan-counted SKU
                | REASON_NOTE_REQUIRED          | "other" reason without a note
                | DISCREPANCY_NOT_FOUND         | No discrepancy for identifier
                | DISCREPANCY_ALREADY_RESOLVED  | Auto-resolved entries are read-only
----------------|-------------------------------|---------------------------------------
Lifecycle       | ILLEGAL_TRANSITION            | Action not legal in current stage
                | UNRESOLVED_DISCREPANCIES      | Signature step blocked by open lines
                | NO_ACTIVE_SESSION             | Operation needs a session
                | SESSION_COMPLETED             | Session is read-only
                | GUARD_UNREGISTERED            | Transition guard has no evaluator
----------------|-------------------------------|---------------------------------------
Persistence     | SESSION_RECORD_INVALID        | Stored record cannot be decoded
----------------|-------------------------------|---------------------------------------
Config          | CONFIG_INVALID                | Settings failed validation

Expected outcomes (duplicate scan, zero-quantity confirmation) are NOT
exceptions; they are returned as outcome records from the command layer.
"""

from __future__ import annotations


class CycleCountError(Exception):
    """
    Base exception for all cycle-count errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "CYCLE_COUNT_ERROR"


# Validation exceptions


class ValidationError(CycleCountError):
    """Input rejected synchronously; the operation had no effect."""

    code: str = "VALIDATION_ERROR"


class MalformedIdentifierError(ValidationError):
    """Identifier is empty, too short, or contains whitespace."""

    code: str = "MALFORMED_IDENTIFIER"

    def __init__(self, identifier: str, min_length: int):
        self.identifier = identifier
        self.min_length = min_length
        super().__init__(
            f"Malformed identifier {identifier!r}: "
            f"expected at least {min_length} non-blank characters"
        )


class NegativeQuantityError(ValidationError):
    """Manual count must be zero or positive."""

    code: str = "NEGATIVE_QUANTITY"

    def __init__(self, sku: str, count: int):
        self.sku = sku
        self.count = count
        super().__init__(f"Quantity for SKU {sku} cannot be negative: {count}")


class UnknownSkuError(ValidationError):
    """SKU has no item in the session's expectation list."""

    code: str = "UNKNOWN_SKU"

    def __init__(self, sku: str):
        self.sku = sku
        super().__init__(f"SKU not in expectation list: {sku}")


class CountModeMismatchError(ValidationError):
    """Quantity entry attempted on a SKU counted by identifier scan."""

    code: str = "COUNT_MODE_MISMATCH"

    def __init__(self, sku: str, count_mode: str):
        self.sku = sku
        self.count_mode = count_mode
        super().__init__(
            f"SKU {sku} is counted by {count_mode}, not by aggregate quantity"
        )


class ReasonNoteRequiredError(ValidationError):
    """The 'other' reason needs a free-text note."""

    code: str = "REASON_NOTE_REQUIRED"

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"A note is required for reason 'other' on {identifier}")


class DiscrepancyNotFoundError(ValidationError):
    """No discrepancy exists for the identifier."""

    code: str = "DISCREPANCY_NOT_FOUND"

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"No discrepancy for identifier: {identifier}")


class DiscrepancyAlreadyResolvedError(ValidationError):
    """Auto-resolved discrepancies are kept for audit and cannot be reclassified."""

    code: str = "DISCREPANCY_ALREADY_RESOLVED"

    def __init__(self, identifier: str, reason: str | None):
        self.identifier = identifier
        self.reason = reason
        super().__init__(
            f"Discrepancy {identifier} was auto-resolved ({reason}) and is read-only"
        )


# Lifecycle exceptions


class LifecycleError(CycleCountError):
    """Base exception for session lifecycle errors."""

    code: str = "LIFECYCLE_ERROR"


class IllegalTransitionError(LifecycleError):
    """Action is not permitted from the current lifecycle stage."""

    code: str = "ILLEGAL_TRANSITION"

    def __init__(self, from_state: str, action: str, detail: str | None = None):
        self.from_state = from_state
        self.action = action
        self.detail = detail
        message = f"Action '{action}' is not permitted in stage {from_state}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class UnresolvedDiscrepanciesError(LifecycleError):
    """Signature step refused while discrepancies still need a reason."""

    code: str = "UNRESOLVED_DISCREPANCIES"

    def __init__(self, blocking: tuple[str, ...]):
        self.blocking = blocking
        super().__init__(
            f"{len(blocking)} discrepancies need a reason; first: {blocking[0]}"
        )

    @property
    def first_blocking(self) -> str:
        return self.blocking[0]


class NoActiveSessionError(LifecycleError):
    """No session is loaded."""

    code: str = "NO_ACTIVE_SESSION"

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"No active count session for action '{action}'")


class SessionCompletedError(LifecycleError):
    """Completed sessions are read-only."""

    code: str = "SESSION_COMPLETED"

    def __init__(self, session_id: str, action: str):
        self.session_id = session_id
        self.action = action
        super().__init__(
            f"Session {session_id} is completed; '{action}' is not allowed"
        )


class UnregisteredGuardError(LifecycleError):
    """A transition names a guard with no registered evaluator."""

    code: str = "GUARD_UNREGISTERED"

    def __init__(self, guard_name: str):
        self.guard_name = guard_name
        super().__init__(f"No evaluator registered for guard '{guard_name}'")


# Persistence exceptions


class PersistenceError(CycleCountError):
    """Base exception for session store errors."""

    code: str = "PERSISTENCE_ERROR"


class SessionRecordError(PersistenceError):
    """Persisted session record cannot be decoded."""

    code: str = "SESSION_RECORD_INVALID"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Invalid session record: {detail}")


# Configuration exceptions


class ConfigError(CycleCountError):
    """Configuration failed validation."""

    code: str = "CONFIG_INVALID"

    def __init__(self, key: str, detail: str):
        self.key = key
        self.detail = detail
        super().__init__(f"Invalid configuration for '{key}': {detail}")
