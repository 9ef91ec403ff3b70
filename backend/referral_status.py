"""
Referral status table — combines the two introduced parties' sub-statuses
into one overall status plus the message each party sees.

The table is explicit: only the nine listed pairs are defined.  Anything
else (including unknown status strings) yields the ``error`` result, which
callers must surface rather than persist.

Usage:
    from referral_status import combine

    result = combine("connected", "pending")
    result.over_all_status          # "partial"
    result.introduced_message       # "awaiting response"
    result.introduced_to_message    # "new introduction"
"""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple


class Status(str, Enum):
    """Per-party sub-status."""
    PENDING = "pending"
    CONNECTED = "connected"
    DECLINE = "decline"


class OverallStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    CONNECTED = "connected"
    DECLINE = "decline"
    ERROR = "error"


# Messages shown to a party about its own side of the introduction
NEW_INTRODUCTION = "new introduction"
AWAITING_RESPONSE = "awaiting response"
NO_MATCH = "no match"
DECLINED_YOU = "declined (You)"
CONNECTED = "connected"
UNEXPECTED_STATUS = "Unexpected status"

# Once a party reaches one of these it may only re-send the same value
TERMINAL_STATUSES = frozenset({Status.CONNECTED, Status.DECLINE})


class StatusResult(NamedTuple):
    over_all_status: str
    introduced_message: str
    introduced_to_message: str

    @property
    def is_error(self) -> bool:
        return self.over_all_status == OverallStatus.ERROR.value


ERROR_RESULT = StatusResult(OverallStatus.ERROR.value, UNEXPECTED_STATUS, UNEXPECTED_STATUS)

_P, _C, _D = Status.PENDING, Status.CONNECTED, Status.DECLINE

STATUS_TABLE: dict[tuple[Status, Status], StatusResult] = {
    (_C, _C): StatusResult(OverallStatus.CONNECTED.value, CONNECTED, CONNECTED),
    (_D, _D): StatusResult(OverallStatus.DECLINE.value, DECLINED_YOU, DECLINED_YOU),
    (_C, _P): StatusResult(OverallStatus.PARTIAL.value, AWAITING_RESPONSE, NEW_INTRODUCTION),
    (_P, _C): StatusResult(OverallStatus.PARTIAL.value, NEW_INTRODUCTION, AWAITING_RESPONSE),
    (_C, _D): StatusResult(OverallStatus.PARTIAL.value, NO_MATCH, DECLINED_YOU),
    (_D, _C): StatusResult(OverallStatus.PARTIAL.value, DECLINED_YOU, NO_MATCH),
    (_D, _P): StatusResult(OverallStatus.PARTIAL.value, DECLINED_YOU, NEW_INTRODUCTION),
    (_P, _D): StatusResult(OverallStatus.PARTIAL.value, NEW_INTRODUCTION, DECLINED_YOU),
    (_P, _P): StatusResult(OverallStatus.PENDING.value, NEW_INTRODUCTION, NEW_INTRODUCTION),
}


def _coerce(value) -> Status | None:
    if isinstance(value, Status):
        return value
    try:
        return Status(value)
    except ValueError:
        return None


def combine(introduced_status, introduced_to_status) -> StatusResult:
    """Look up the (introduced, introduced_to) pair; undefined pairs give ``ERROR_RESULT``."""
    a = _coerce(introduced_status)
    b = _coerce(introduced_to_status)
    if a is None or b is None:
        return ERROR_RESULT
    return STATUS_TABLE.get((a, b), ERROR_RESULT)


def is_backward_transition(current, new) -> bool:
    """True when a party tries to leave a terminal sub-status."""
    cur = _coerce(current)
    nxt = _coerce(new)
    return cur in TERMINAL_STATUSES and nxt != cur
