"""Status lifecycles and participant-pair canonicalization."""

from typing import Dict, FrozenSet, Mapping, Tuple

from errors import InvalidTransition, ValidationFailed

Transitions = Mapping[str, FrozenSet[str]]

JOB_TRANSITIONS: Transitions = {
    "open": frozenset({"paused", "closed"}),
    "paused": frozenset({"open", "closed"}),
    "closed": frozenset(),
}

APPLICATION_TRANSITIONS: Transitions = {
    "submitted": frozenset({"shortlisted", "rejected", "accepted"}),
    "shortlisted": frozenset({"rejected", "accepted"}),
    "rejected": frozenset(),
    "accepted": frozenset(),
}

MILESTONE_TRANSITIONS: Transitions = {
    "pending": frozenset({"submitted"}),
    "submitted": frozenset({"released"}),
    "released": frozenset({"delivered"}),
    "delivered": frozenset(),
}

# disputed -> disputed lets either party re-raise an open dispute.
CONTRACT_TRANSITIONS: Transitions = {
    "draft": frozenset({"active", "cancelled"}),
    "active": frozenset({"completed", "cancelled", "disputed"}),
    "disputed": frozenset({"disputed", "completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}


def can_transition(table: Transitions, current: str, target: str) -> bool:
    return target in table.get(current, frozenset())


def check_transition(kind: str, table: Transitions, current: str, target: str) -> None:
    if not can_transition(table, current, target):
        raise InvalidTransition(f"Cannot change {kind} status from {current} to {target}")


def canonical_pair(a: str, b: str) -> Tuple[str, str]:
    """Order two participant ids so (a, b) and (b, a) map to one conversation."""
    if a == b:
        raise ValidationFailed("You cannot message yourself")
    return (a, b) if a < b else (b, a)


def pair_key(a: str, b: str) -> str:
    first, second = canonical_pair(a, b)
    return f"{first}:{second}"


def counterpart(participants: Dict[str, str], user_id: str) -> str:
    a, b = participants["participant_a"], participants["participant_b"]
    return b if user_id == a else a
