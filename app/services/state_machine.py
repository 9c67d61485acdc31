from app.models import TransactionStatus as S


class InvalidTransition(Exception):
    pass


ALLOWED = {
    S.PENDING: {S.ACCEPTED, S.EXPIRED, S.FAILED, S.CANCELLED},
    S.ACCEPTED: {S.COMPLETED, S.CANCELLED},
    S.COMPLETED: set(),
    S.FAILED: set(),
    S.EXPIRED: set(),
    S.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED.items() if not targets)
NON_TERMINAL_STATUSES = frozenset(ALLOWED) - TERMINAL_STATUSES


def assert_transition(old: S, new: S) -> None:
    if new not in ALLOWED.get(old, set()):
        raise InvalidTransition(f"Illegal payout transition: {old.value} -> {new.value}")


def sources_for(new: S) -> frozenset:
    """States from which `new` may be entered; the guard for a conditional update."""
    return frozenset(old for old, targets in ALLOWED.items() if new in targets)


# Caller-facing coarse status: 1 in progress, 2 completed, 3 failed/expired/cancelled
COARSE_STATUS = {
    S.PENDING: 1,
    S.ACCEPTED: 1,
    S.COMPLETED: 2,
    S.FAILED: 3,
    S.EXPIRED: 3,
    S.CANCELLED: 3,
}


def coarse_status(status) -> int:
    try:
        return COARSE_STATUS[S(status)]
    except ValueError:
        return 3
