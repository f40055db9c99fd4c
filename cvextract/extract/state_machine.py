"""
Extraction request state machine.

Each extraction request moves through

    PREFLIGHT -> PROMPT_BUILD -> CALL -> VALIDATE -> (VALIDATION_RETRY -> CALL)*
      -> COMPLETENESS_CHECK -> (RE_EXTRACT -> MERGE -> COMPLETENESS_CHECK)?
      -> DONE | FAILED

`transition(state, event, policy)` is a pure function: it never performs I/O
and never sleeps. The orchestrator performs the work for the current state,
turns the outcome into an Event, and asks for the next state. Retry ceilings
and terminal conditions therefore live here and can be tested without an LLM.

An event that is not legal in the current state is a programming error and
raises InvalidTransitionError.

Usage:
    policy = RetryPolicy(max_retries=2)
    state = MachineState()
    state = transition(state, Event(EventType.PREFLIGHT_OK), policy)
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional


class ParserState(str, Enum):
    PREFLIGHT = "preflight"
    PROMPT_BUILD = "prompt_build"
    CALL = "call"
    VALIDATE = "validate"
    VALIDATION_RETRY = "validation_retry"
    COMPLETENESS_CHECK = "completeness_check"
    RE_EXTRACT = "re_extract"
    MERGE = "merge"
    DONE = "done"
    FAILED = "failed"


class EventType(str, Enum):
    # PREFLIGHT
    PREFLIGHT_OK = "preflight_ok"
    FEATURE_DISABLED = "feature_disabled"
    NOT_CONFIGURED = "not_configured"
    # PROMPT_BUILD
    PROMPT_READY = "prompt_ready"
    # CALL
    RESPONSE_RECEIVED = "response_received"
    EMPTY_RESPONSE = "empty_response"
    INVALID_JSON = "invalid_json"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    TRANSPORT_ERROR = "transport_error"
    # VALIDATE
    VALIDATION_PASSED = "validation_passed"
    VALIDATION_FAILED = "validation_failed"
    # VALIDATION_RETRY
    RETRY_READY = "retry_ready"
    # COMPLETENESS_CHECK
    COMPLETE = "complete"
    ACCEPT_INCOMPLETE = "accept_incomplete"
    NEEDS_RE_EXTRACTION = "needs_re_extraction"
    # RE_EXTRACT
    RE_EXTRACTED = "re_extracted"
    RE_EXTRACT_FAILED = "re_extract_failed"
    # MERGE
    MERGED = "merged"


class ErrorCode(str, Enum):
    """Terminal failure codes."""
    LLM_DISABLED = "LLM_DISABLED"
    LLM_NOT_CONFIGURED = "LLM_NOT_CONFIGURED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    LLM_AUTH_FAILED = "LLM_AUTH_FAILED"
    LLM_TIMEOUT = "LLM_TIMEOUT"
    LLM_RATE_LIMITED = "LLM_RATE_LIMITED"
    LLM_ERROR = "LLM_ERROR"


class InvalidTransitionError(RuntimeError):
    """An event was fed to a state that cannot accept it."""

    def __init__(self, state: "ParserState", event: "EventType"):
        super().__init__(f"Event {event.value!r} is not valid in state {state.value!r}")
        self.state = state
        self.event = event


@dataclass(frozen=True)
class Event:
    type: EventType
    detail: Optional[str] = None


@dataclass(frozen=True)
class RetryPolicy:
    """Retry ceiling and exponential backoff bounds."""
    max_retries: int = 2
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 30000


@dataclass(frozen=True)
class MachineState:
    """
    Snapshot of one request's progress.

    attempt counts LLM calls on the main path (1 = first call);
    retries = attempt - 1. corrective marks that the next CALL must send the
    previous response plus validation errors instead of a fresh prompt.
    """
    state: ParserState = ParserState.PREFLIGHT
    attempt: int = 0
    corrective: bool = False
    re_extracted: bool = False
    error_code: Optional[ErrorCode] = None
    error_detail: Optional[str] = None
    history: tuple = field(default=())

    @property
    def retries(self) -> int:
        return max(self.attempt - 1, 0)

    @property
    def is_terminal(self) -> bool:
        return self.state in (ParserState.DONE, ParserState.FAILED)


def backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    """
    Seconds to wait before the given retry attempt (1-based).

    initial * 2**(attempt-1), capped at max_backoff_ms.
    """
    if attempt < 1:
        return 0.0
    delay_ms = min(policy.initial_backoff_ms * (2 ** (attempt - 1)), policy.max_backoff_ms)
    return delay_ms / 1000.0


# Retryable CALL outcomes and the code reported once the budget is spent
_RETRYABLE_CALL_EVENTS = {
    EventType.EMPTY_RESPONSE: ErrorCode.LLM_ERROR,
    EventType.INVALID_JSON: ErrorCode.LLM_ERROR,
    EventType.TIMEOUT: ErrorCode.LLM_TIMEOUT,
    EventType.RATE_LIMITED: ErrorCode.LLM_RATE_LIMITED,
}

_FATAL_CALL_EVENTS = {
    EventType.AUTH_FAILED: ErrorCode.LLM_AUTH_FAILED,
    EventType.TRANSPORT_ERROR: ErrorCode.LLM_ERROR,
}


def _move(current: MachineState, event: Event, new_state: ParserState, **changes) -> MachineState:
    history = current.history + ((current.state, event.type, new_state),)
    return replace(current, state=new_state, history=history, **changes)


def _fail(current: MachineState, event: Event, code: ErrorCode) -> MachineState:
    return _move(
        current,
        event,
        ParserState.FAILED,
        error_code=code,
        error_detail=event.detail,
    )


def transition(current: MachineState, event: Event, policy: RetryPolicy) -> MachineState:
    """Next state for (state, event). Pure."""
    state = current.state
    kind = event.type

    if state is ParserState.PREFLIGHT:
        if kind is EventType.PREFLIGHT_OK:
            return _move(current, event, ParserState.PROMPT_BUILD)
        if kind is EventType.FEATURE_DISABLED:
            return _fail(current, event, ErrorCode.LLM_DISABLED)
        if kind is EventType.NOT_CONFIGURED:
            return _fail(current, event, ErrorCode.LLM_NOT_CONFIGURED)

    elif state is ParserState.PROMPT_BUILD:
        if kind is EventType.PROMPT_READY:
            return _move(current, event, ParserState.CALL, attempt=1, corrective=False)

    elif state is ParserState.CALL:
        if kind is EventType.RESPONSE_RECEIVED:
            return _move(current, event, ParserState.VALIDATE)
        if kind in _RETRYABLE_CALL_EVENTS:
            if current.retries < policy.max_retries:
                # Malformed/transport retries are fresh calls
                return _move(
                    current, event, ParserState.CALL,
                    attempt=current.attempt + 1, corrective=False,
                )
            return _fail(current, event, _RETRYABLE_CALL_EVENTS[kind])
        if kind in _FATAL_CALL_EVENTS:
            return _fail(current, event, _FATAL_CALL_EVENTS[kind])

    elif state is ParserState.VALIDATE:
        if kind is EventType.VALIDATION_PASSED:
            return _move(current, event, ParserState.COMPLETENESS_CHECK)
        if kind is EventType.VALIDATION_FAILED:
            if current.retries < policy.max_retries:
                return _move(current, event, ParserState.VALIDATION_RETRY)
            return _fail(current, event, ErrorCode.VALIDATION_FAILED)

    elif state is ParserState.VALIDATION_RETRY:
        if kind is EventType.RETRY_READY:
            return _move(
                current, event, ParserState.CALL,
                attempt=current.attempt + 1, corrective=True,
            )

    elif state is ParserState.COMPLETENESS_CHECK:
        if kind in (EventType.COMPLETE, EventType.ACCEPT_INCOMPLETE):
            return _move(current, event, ParserState.DONE)
        if kind is EventType.NEEDS_RE_EXTRACTION:
            if current.re_extracted:
                return _move(current, event, ParserState.DONE)
            return _move(current, event, ParserState.RE_EXTRACT)

    elif state is ParserState.RE_EXTRACT:
        if kind is EventType.RE_EXTRACTED:
            return _move(current, event, ParserState.MERGE)
        if kind is EventType.RE_EXTRACT_FAILED:
            return _move(current, event, ParserState.DONE, re_extracted=True)

    elif state is ParserState.MERGE:
        if kind is EventType.MERGED:
            return _move(current, event, ParserState.COMPLETENESS_CHECK, re_extracted=True)

    raise InvalidTransitionError(state, kind)
