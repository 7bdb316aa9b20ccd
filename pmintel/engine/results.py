#!/usr/bin/env python3
# Ticket: 0091_pm_intelligence_engine
# Design: DESIGN.md
"""
Operation Result Types

Mutating and predictive operations return one of two result objects instead
of raising on a failed precondition:

    Ok(value)                              success = True
    Failure(kind, code, message, details)  success = False

`kind` is the coarse category callers branch on (validation, not_found,
insufficient_data); `code` is the precise precondition that failed
(wip_limit, cycle, self_dependency, ...). Messages always name the failed
precondition so an agent or CLI caller can decide its next action.

Exceptions remain the channel for infrastructure faults (SQLite errors,
use of a closed repository, bad configuration).
"""

from typing import Any


class ErrorKind:
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INSUFFICIENT_DATA = "insufficient_data"

    ALL = frozenset([VALIDATION, NOT_FOUND, INSUFFICIENT_DATA])


class ErrorCode:
    INVALID_TRANSITION = "invalid_transition"
    UNKNOWN_STATE = "unknown_state"
    WIP_LIMIT = "wip_limit"
    SELF_DEPENDENCY = "self_dependency"
    CYCLE = "cycle"
    DUPLICATE_ISSUE = "duplicate_issue"
    INVALID_VALUE = "invalid_value"
    INVALID_COMMAND = "invalid_command"
    ISSUE_NOT_FOUND = "issue_not_found"
    INSUFFICIENT_HISTORY = "insufficient_history"


class Ok:
    """Operation succeeded; `value` carries the operation's payload."""

    success = True

    def __init__(self, value: Any = None):
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        return {"success": True, "value": self.value}

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


class Failure:
    """Operation rejected; state is unchanged."""

    success = False

    def __init__(
        self,
        kind: str,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        self.kind = kind
        self.code = code
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"Failure({self.kind!r}, {self.code!r}, {self.message!r})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": {
                "kind": self.kind,
                "code": self.code,
                "message": self.message,
                "details": self.details,
            },
        }


Result = Ok | Failure


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def validation_error(code: str, message: str, **details: Any) -> Failure:
    return Failure(ErrorKind.VALIDATION, code, message, details)


def issue_not_found(number: int) -> Failure:
    return Failure(
        ErrorKind.NOT_FOUND,
        ErrorCode.ISSUE_NOT_FOUND,
        f"Issue #{number} not found in local store",
        {"issue_number": number},
    )


def insufficient_data(
    available: int,
    required: int,
    what: str = "historical samples",
    **details: Any,
) -> Failure:
    """Modeled outcome for forecasts below the minimum sample count."""
    return Failure(
        ErrorKind.INSUFFICIENT_DATA,
        ErrorCode.INSUFFICIENT_HISTORY,
        f"Insufficient data: {available} {what} available, {required} required",
        {"available": available, "required": required, **details},
    )
