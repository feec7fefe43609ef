"""EMS request state machine.

pending  --accept-->        enroute
enroute  --mark_arrived-->  arrived
enroute  --cancel-->        cancelled
arrived  --complete-->      completed
arrived  --cancel-->        cancelled
pending  --cancel-->        cancelled
"""

from enum import Enum

from app.models.ems import TERMINAL_STATUSES, EMSStatus
from app.services.errors import AlreadyTerminal, InvalidTransition


class Action(str, Enum):
    ACCEPT = "accept"
    MARK_ARRIVED = "mark_arrived"
    COMPLETE = "complete"
    CANCEL = "cancel"


TRANSITIONS: dict[tuple[EMSStatus, Action], EMSStatus] = {
    (EMSStatus.PENDING, Action.ACCEPT): EMSStatus.ENROUTE,
    (EMSStatus.ENROUTE, Action.MARK_ARRIVED): EMSStatus.ARRIVED,
    (EMSStatus.ENROUTE, Action.CANCEL): EMSStatus.CANCELLED,
    (EMSStatus.ARRIVED, Action.COMPLETE): EMSStatus.COMPLETED,
    (EMSStatus.ARRIVED, Action.CANCEL): EMSStatus.CANCELLED,
    (EMSStatus.PENDING, Action.CANCEL): EMSStatus.CANCELLED,
}

# Target status requested through a plain status update -> action to apply.
# pending and enroute are absent: nothing moves back to pending, and enroute
# needs a paramedic binding, which only accept/assign provide.
STATUS_ACTIONS: dict[EMSStatus, Action] = {
    EMSStatus.ARRIVED: Action.MARK_ARRIVED,
    EMSStatus.COMPLETED: Action.COMPLETE,
    EMSStatus.CANCELLED: Action.CANCEL,
}


def next_status(current: EMSStatus, action: Action, request_id: str | None = None) -> EMSStatus:
    """Return the status ``action`` leads to from ``current`` or raise."""
    if current in TERMINAL_STATUSES:
        raise AlreadyTerminal(
            f"Request is already {current.value}; cannot {action.value}",
            request_id=request_id,
        )
    target = TRANSITIONS.get((current, action))
    if target is None:
        raise InvalidTransition(
            f"Cannot {action.value} a request that is {current.value}",
            request_id=request_id,
        )
    return target


def action_for_status(target: EMSStatus, request_id: str | None = None) -> Action:
    action = STATUS_ACTIONS.get(target)
    if action is None:
        raise InvalidTransition(
            f"Status cannot be set to {target.value} directly",
            request_id=request_id,
        )
    return action
