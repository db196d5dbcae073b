"""
Order lifecycle shared by customers, shops and delivery partners.

Every transition is written as a conditional update against the order store,
so the stored row only ever moves along an edge of TRANSITIONS. The partner
assignment edge additionally requires the stored partner to be NULL, which is
what settles two partners racing for the same order.
"""
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from core.errors import AlreadyAssigned, InvalidTransition, OrderNotFound
from core.models import Action, Actor, Order, OrderStatus, StatusChanged
from database import queries as db_queries


@dataclass(frozen=True)
class TransitionRule:
    actor: Actor
    action: Action
    from_statuses: frozenset
    to_status: OrderStatus
    assigns_partner: bool = False


def _rule(actor, action, from_statuses, to_status, assigns_partner=False):
    return (actor, action), TransitionRule(actor, action, frozenset(from_statuses), to_status, assigns_partner)


TRANSITIONS: dict[tuple[Actor, Action], TransitionRule] = dict([
    _rule(Actor.CUSTOMER, Action.CANCEL, {OrderStatus.PENDING}, OrderStatus.CANCELLED),
    _rule(Actor.SHOP, Action.ACCEPT, {OrderStatus.PENDING}, OrderStatus.ACCEPTED),
    _rule(Actor.SHOP, Action.PREPARE, {OrderStatus.ACCEPTED, OrderStatus.PENDING}, OrderStatus.PREPARING),
    _rule(Actor.SHOP, Action.MARK_READY, {OrderStatus.PREPARING}, OrderStatus.READY),
    _rule(Actor.DELIVERY_PARTNER, Action.ACCEPT, {OrderStatus.PENDING, OrderStatus.READY}, OrderStatus.ACCEPTED,
          assigns_partner=True),
    _rule(Actor.DELIVERY_PARTNER, Action.PICK_UP, {OrderStatus.ACCEPTED, OrderStatus.READY}, OrderStatus.PICKED_UP),
    _rule(Actor.DELIVERY_PARTNER, Action.START_DELIVERY, {OrderStatus.PICKED_UP}, OrderStatus.ON_THE_WAY),
    _rule(Actor.DELIVERY_PARTNER, Action.DELIVER, {OrderStatus.ON_THE_WAY}, OrderStatus.DELIVERED),
])

StatusListener = Callable[[StatusChanged], Awaitable[None]]


@dataclass(frozen=True)
class TransitionResult:
    order: Order
    changed: bool


def get_rule(actor, action) -> TransitionRule:
    """Looks up the rule for (actor, action); unknown names are invalid transitions."""
    try:
        key = (Actor(actor), Action(action))
    except ValueError:
        raise InvalidTransition(f"Unknown actor or action: {actor!r}, {action!r}")
    rule = TRANSITIONS.get(key)
    if rule is None:
        raise InvalidTransition(f"Actor '{key[0].value}' cannot '{key[1].value}' an order")
    return rule


class OrderStateMachine:
    # A lost conditional update is re-evaluated against the fresh row this many times
    MAX_CAS_ATTEMPTS = 3

    def __init__(self):
        self._listeners: list[StatusListener] = []

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def apply(self, order_id: str, actor, actor_id: str, action) -> TransitionResult:
        """
        Applies (actor, action) to the order.

        Returns the resulting order and whether anything changed; a retry of an
        already applied transition returns the current order with changed=False.
        Raises OrderNotFound, InvalidTransition or AlreadyAssigned; nothing is
        written when it raises.
        """
        rule = get_rule(actor, action)

        for attempt in range(1, self.MAX_CAS_ATTEMPTS + 1):
            order = await db_queries.read_order(order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)

            self._check_identity(order, rule, actor_id)
            if self._already_applied(order, rule, actor_id):
                logger.info(f"Order {order_id}: '{rule.action.value}' by {actor_id} already applied, status {order.status.value}.")
                return TransitionResult(order=order, changed=False)
            self._check_allowed(order, rule, actor_id)

            patch = {'status': rule.to_status}
            if rule.assigns_partner:
                patch['delivery_partner_id'] = actor_id
            expected_partner_id = actor_id if rule.actor is Actor.DELIVERY_PARTNER and not rule.assigns_partner else None

            updated = await db_queries.conditional_update_order(
                order_id,
                expected_status=order.status,
                expected_partner_null=rule.assigns_partner,
                patch=patch,
                expected_partner_id=expected_partner_id,
                actor=rule.actor.value,
                actor_id=actor_id,
            )
            if updated:
                new_order = await db_queries.read_order(order_id)
                logger.bind(actor_id=actor_id).info(
                    f"Order {order_id}: {order.status.value} -> {new_order.status.value} ({rule.actor.value} '{rule.action.value}')."
                )
                await self._emit(StatusChanged(
                    order=new_order, old_status=order.status, new_status=new_order.status,
                    actor=rule.actor, actor_id=actor_id,
                ))
                return TransitionResult(order=new_order, changed=True)

            logger.info(f"Order {order_id} changed under '{rule.action.value}' by {actor_id} (attempt {attempt}), re-reading.")

        raise InvalidTransition(f"Order {order_id} is changing concurrently, try again", order_id=order_id)

    @staticmethod
    def _check_identity(order: Order, rule: TransitionRule, actor_id: str) -> None:
        if rule.actor is Actor.CUSTOMER and order.customer_id != actor_id:
            raise InvalidTransition(f"Order {order.id} does not belong to customer {actor_id}", order_id=order.id)
        if rule.actor is Actor.SHOP and order.shop_id != actor_id:
            raise InvalidTransition(f"Order {order.id} does not belong to shop {actor_id}", order_id=order.id)

    @staticmethod
    def _already_applied(order: Order, rule: TransitionRule, actor_id: str) -> bool:
        if rule.assigns_partner:
            return order.delivery_partner_id == actor_id
        if rule.actor is Actor.DELIVERY_PARTNER and order.delivery_partner_id != actor_id:
            return False
        return order.status == rule.to_status

    @staticmethod
    def _check_allowed(order: Order, rule: TransitionRule, actor_id: str) -> None:
        if order.is_terminal:
            raise InvalidTransition(f"Order {order.id} is already {order.status.value}", order_id=order.id)
        if rule.assigns_partner and order.delivery_partner_id is not None:
            raise AlreadyAssigned(f"Order {order.id} is already assigned to another partner", order_id=order.id)
        if rule.actor is Actor.DELIVERY_PARTNER and not rule.assigns_partner and order.delivery_partner_id != actor_id:
            raise InvalidTransition(f"Partner {actor_id} is not assigned to order {order.id}", order_id=order.id)
        if order.status not in rule.from_statuses:
            raise InvalidTransition(
                f"Cannot '{rule.action.value}' order {order.id} from status '{order.status.value}'", order_id=order.id
            )

    async def _emit(self, event: StatusChanged) -> None:
        for listener in self._listeners:
            try:
                await listener(event)
            except Exception as e:
                logger.error(f"StatusChanged listener failed for order {event.order.id}: {e}")
