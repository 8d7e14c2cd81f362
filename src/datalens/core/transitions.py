"""
Status state machines for scan runs and data subject requests.

Transition legality is enforced here and nowhere else. Callers use
``validate_dsr_transition`` before mutating a DSR; an illegal request
raises ``InvalidTransitionError`` and the caller must not write.
"""

from typing import Dict, FrozenSet

from datalens.core.types import DSRStatus, ScanStatus
from datalens.exceptions import InvalidTransitionError

DSR_TRANSITIONS: Dict[DSRStatus, FrozenSet[DSRStatus]] = {
    DSRStatus.PENDING: frozenset({
        DSRStatus.IDENTITY_VERIFICATION,
        DSRStatus.APPROVED,
        DSRStatus.REJECTED,
    }),
    DSRStatus.IDENTITY_VERIFICATION: frozenset({
        DSRStatus.APPROVED,
        DSRStatus.REJECTED,
    }),
    DSRStatus.APPROVED: frozenset({
        DSRStatus.IN_PROGRESS,
        DSRStatus.FAILED,
    }),
    DSRStatus.IN_PROGRESS: frozenset({
        DSRStatus.COMPLETED,
        DSRStatus.FAILED,
    }),
    DSRStatus.COMPLETED: frozenset({
        DSRStatus.VERIFIED,
        DSRStatus.VERIFICATION_FAILED,
    }),
    DSRStatus.FAILED: frozenset({
        DSRStatus.VERIFIED,
        DSRStatus.VERIFICATION_FAILED,
    }),
    DSRStatus.REJECTED: frozenset(),
    DSRStatus.VERIFIED: frozenset(),
    DSRStatus.VERIFICATION_FAILED: frozenset(),
}

SCAN_TRANSITIONS: Dict[ScanStatus, FrozenSet[ScanStatus]] = {
    ScanStatus.PENDING: frozenset({ScanStatus.RUNNING, ScanStatus.FAILED}),
    ScanStatus.RUNNING: frozenset({ScanStatus.COMPLETED, ScanStatus.FAILED}),
    ScanStatus.COMPLETED: frozenset(),
    ScanStatus.FAILED: frozenset(),
}


def can_transition_dsr(current: "str | DSRStatus", target: "str | DSRStatus") -> bool:
    """Return True if a DSR may move from *current* to *target*."""
    try:
        current_status = DSRStatus(current)
        target_status = DSRStatus(target)
    except ValueError:
        return False
    return target_status in DSR_TRANSITIONS[current_status]


def validate_dsr_transition(current: "str | DSRStatus", target: "str | DSRStatus") -> None:
    """Raise ``InvalidTransitionError`` unless *current* -> *target* is allowed."""
    if not can_transition_dsr(current, target):
        raise InvalidTransitionError(_value(current), _value(target))


def validate_scan_transition(current: "str | ScanStatus", target: "str | ScanStatus") -> None:
    """Raise ``InvalidTransitionError`` unless the scan run may move to *target*."""
    try:
        allowed = SCAN_TRANSITIONS[ScanStatus(current)]
        ok = ScanStatus(target) in allowed
    except ValueError:
        ok = False
    if not ok:
        raise InvalidTransitionError(_value(current), _value(target))


def is_terminal_dsr(status: "str | DSRStatus") -> bool:
    return not DSR_TRANSITIONS.get(DSRStatus(status))


def _value(status: object) -> str:
    return status.value if hasattr(status, "value") else str(status)
