"""
Order status machine.

One transition table drives both the action list offered to a party and the
check performed when that party submits an action, so the two cannot drift.
"""
from dataclasses import dataclass
from enum import Enum

from settlement.models.order import OrderStatus


class OrderRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    MEDIATOR = "mediator"


class OrderAction(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    START = "start"
    COMPLETE = "complete"
    APPROVE_COMPLETION = "approve_completion"
    CANCEL = "cancel"
    DISPUTE = "dispute"
    RESUME_WORK = "resume_work"


@dataclass(frozen=True)
class Transition:
    action: str
    sources: frozenset[str]
    target: str
    actors: frozenset[str]
    requires_reason: bool = False
    blocked_by_open_dispute: bool = False
    # None: allowed whatever the approval sub-status is
    awaiting_approval: bool | None = None


_BUYER = OrderRole.BUYER.value
_SELLER = OrderRole.SELLER.value
_MEDIATOR = OrderRole.MEDIATOR.value

TRANSITIONS: dict[str, Transition] = {
    t.action: t
    for t in (
        Transition(
            action=OrderAction.ACCEPT.value,
            sources=frozenset({OrderStatus.PENDING.value}),
            target=OrderStatus.ACCEPTED.value,
            actors=frozenset({_SELLER}),
        ),
        Transition(
            action=OrderAction.DECLINE.value,
            sources=frozenset({OrderStatus.PENDING.value}),
            target=OrderStatus.DECLINED.value,
            actors=frozenset({_SELLER}),
            requires_reason=True,
        ),
        Transition(
            action=OrderAction.START.value,
            sources=frozenset({OrderStatus.ACCEPTED.value}),
            target=OrderStatus.IN_PROGRESS.value,
            actors=frozenset({_SELLER}),
        ),
        Transition(
            action=OrderAction.COMPLETE.value,
            sources=frozenset({OrderStatus.IN_PROGRESS.value}),
            target=OrderStatus.COMPLETED.value,
            actors=frozenset({_SELLER}),
            awaiting_approval=False,
        ),
        Transition(
            action=OrderAction.APPROVE_COMPLETION.value,
            sources=frozenset({OrderStatus.IN_PROGRESS.value}),
            target=OrderStatus.COMPLETED.value,
            actors=frozenset({_BUYER}),
            awaiting_approval=True,
        ),
        Transition(
            action=OrderAction.CANCEL.value,
            sources=frozenset(
                {OrderStatus.PENDING.value, OrderStatus.ACCEPTED.value, OrderStatus.IN_PROGRESS.value}
            ),
            target=OrderStatus.CANCELLED.value,
            actors=frozenset({_BUYER, _SELLER}),
            requires_reason=True,
        ),
        Transition(
            action=OrderAction.DISPUTE.value,
            sources=frozenset({OrderStatus.IN_PROGRESS.value, OrderStatus.COMPLETED.value}),
            target=OrderStatus.DISPUTED.value,
            actors=frozenset({_BUYER, _SELLER}),
            requires_reason=True,
            blocked_by_open_dispute=True,
        ),
        Transition(
            action=OrderAction.RESUME_WORK.value,
            sources=frozenset({OrderStatus.DISPUTED.value}),
            target=OrderStatus.IN_PROGRESS.value,
            actors=frozenset({_BUYER, _SELLER, _MEDIATOR}),
            blocked_by_open_dispute=True,
        ),
    )
}

TERMINAL_STATUSES = frozenset(
    {OrderStatus.COMPLETED.value, OrderStatus.DECLINED.value, OrderStatus.CANCELLED.value}
)
TERMINAL_FAILURE_STATUSES = frozenset({OrderStatus.DECLINED.value, OrderStatus.CANCELLED.value})


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_STATUSES


def is_active_status(status: str) -> bool:
    return status in {
        OrderStatus.PENDING.value,
        OrderStatus.ACCEPTED.value,
        OrderStatus.IN_PROGRESS.value,
        OrderStatus.DISPUTED.value,
    }


def _permits(
    transition: Transition,
    status: str,
    role: str,
    has_open_dispute: bool,
    awaiting_approval: bool,
) -> bool:
    if status not in transition.sources or role not in transition.actors:
        return False
    if transition.blocked_by_open_dispute and has_open_dispute:
        return False
    if transition.awaiting_approval is not None and transition.awaiting_approval != awaiting_approval:
        return False
    return True


def available_actions(
    status: str,
    role: str,
    has_open_dispute: bool = False,
    awaiting_approval: bool = False,
) -> list[str]:
    """Actions the given party may take on an order in this state."""
    return [
        transition.action
        for transition in TRANSITIONS.values()
        if _permits(transition, status, role, has_open_dispute, awaiting_approval)
    ]


def get_transition(action: str) -> Transition | None:
    return TRANSITIONS.get(action)


def requires_reason(action: str) -> bool:
    transition = TRANSITIONS.get(action)
    return bool(transition and transition.requires_reason)
