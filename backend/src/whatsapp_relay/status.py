from __future__ import annotations

from typing import Mapping

from .models import MessageStatus

STATUS_TRANSITIONS: Mapping[str, frozenset[str]] = {
    "pending": frozenset({"queued", "sent", "failed"}),
    "queued": frozenset({"sent", "failed"}),
    "sent": frozenset({"delivered", "failed"}),
    "delivered": frozenset({"read"}),
    "read": frozenset(),
    "failed": frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in STATUS_TRANSITIONS.items() if not targets)

PROVIDER_STATUS_MAP: Mapping[str, MessageStatus] = {
    "sent": "sent",
    "delivered": "delivered",
    "read": "read",
    "failed": "failed",
}


def _reachable_from(status: str) -> frozenset[str]:
    seen: set[str] = set()
    frontier = list(STATUS_TRANSITIONS.get(status, ()))
    while frontier:
        current = frontier.pop()
        if current in seen:
            continue
        seen.add(current)
        frontier.extend(STATUS_TRANSITIONS.get(current, ()))
    return frozenset(seen)


REACHABLE_STATUSES: Mapping[str, frozenset[str]] = {
    status: _reachable_from(status) for status in STATUS_TRANSITIONS
}


def can_transition(current: str, target: str) -> bool:
    """Whether ``target`` lies strictly downstream of ``current``.

    Skipped intermediate states are allowed (a ``read`` receipt may arrive before
    ``delivered``), while repeats and regressions are rejected.
    """
    return target in REACHABLE_STATUSES.get(current, frozenset())


def map_provider_status(value: str | None) -> MessageStatus | None:
    if value is None:
        return None
    return PROVIDER_STATUS_MAP.get(value.strip().lower())
