"""
Order lifecycle rules.

Every legal move is listed in ``TRANSITIONS``; who may make it is decided by
``_actor_may_request``. Nothing here touches storage, so the same rules back
the order store, the SLA supervisor and the client observers.
"""
from enum import Enum

from shared.security.actors import Actor, ActorRole

from .exceptions import IllegalTransitionError


class OrderStatus(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELED = "canceled"


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELED}),
    OrderStatus.READY: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELED: frozenset(),
}

INITIAL_STATUS = OrderStatus.PENDING

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

# Statuses from which each role may cancel
_CANCEL_FROM: dict[ActorRole, frozenset[OrderStatus]] = {
    ActorRole.STUDENT: frozenset({OrderStatus.PENDING}),
    ActorRole.RESTAURANT: frozenset({OrderStatus.PENDING, OrderStatus.PREPARING, OrderStatus.READY}),
    ActorRole.SYSTEM: frozenset({OrderStatus.PENDING}),
}

_PROGRESS_ROLES = frozenset({ActorRole.RESTAURANT, ActorRole.COURIER})


def is_terminal(status: OrderStatus) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def _actor_may_request(current: OrderStatus, requested: OrderStatus, actor: Actor) -> bool:
    if requested is OrderStatus.CANCELED:
        return current in _CANCEL_FROM.get(actor.role, frozenset())
    return actor.role in _PROGRESS_ROLES


def _parse(status):
    try:
        return OrderStatus(status)
    except ValueError:
        return None


def can_transition(current, requested, actor: Actor) -> bool:
    current, requested = OrderStatus(current), _parse(requested)
    if requested is None or requested not in TRANSITIONS[current]:
        return False
    return _actor_may_request(current, requested, actor)


def check_transition(current, requested, actor: Actor) -> OrderStatus:
    """Returns the requested status when legal, raises IllegalTransitionError otherwise."""
    current = OrderStatus(current)
    parsed = _parse(requested)
    if parsed is None:
        raise IllegalTransitionError(
            f"Unknown order status '{requested}'",
            current_status=current,
        )
    if can_transition(current, parsed, actor):
        return parsed
    if parsed not in TRANSITIONS[current]:
        raise IllegalTransitionError(
            f"Cannot move order from '{current.value}' to '{parsed.value}'",
            current_status=current,
            requested_status=parsed,
        )
    raise IllegalTransitionError(
        f"A {actor.role.value} may not move an order from '{current.value}' to '{parsed.value}'",
        current_status=current,
        requested_status=parsed,
    )


def reachable(current, target) -> bool:
    """True when ``target`` lies strictly ahead of ``current`` on some path of the graph."""
    current, target = OrderStatus(current), OrderStatus(target)
    seen: set[OrderStatus] = set()
    frontier = list(TRANSITIONS[current])
    while frontier:
        status = frontier.pop()
        if status is target:
            return True
        if status in seen:
            continue
        seen.add(status)
        frontier.extend(TRANSITIONS[status])
    return False


def cancel_reason_for(actor: Actor) -> str:
    if actor.role is ActorRole.SYSTEM:
        return "sla_timeout"
    if actor.role is ActorRole.STUDENT:
        return "customer_canceled"
    return "restaurant_rejected"
