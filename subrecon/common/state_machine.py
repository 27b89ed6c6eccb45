"""Recurring-billing status graph for subscriptions.

The provider is the source of truth, so transitions outside this graph are
still applied by the ledger writer; the graph exists to surface them.
"""

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "ACTIVE": {"PENDING_PAYMENT", "CANCELLED", "PAUSED", "INACTIVE"},
    "PENDING_PAYMENT": {"ACTIVE", "INACTIVE", "CANCELLED"},
    "PAUSED": {"ACTIVE", "CANCELLED", "INACTIVE"},
    "CANCELLED": {"ACTIVE", "INACTIVE"},
    "INACTIVE": {"ACTIVE", "CANCELLED"},
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a recurring-status transition is not in the expected graph.

    Staying in the same state is always allowed (e.g. repeated holds).
    """

    if current == new:
        return
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
