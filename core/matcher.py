from dataclasses import dataclass
from typing import Any, Callable, Iterable

from loguru import logger

from config.config import DELIVERY_RADIUS_KM, SHOP_SEARCH_RADIUS_KM
from core.errors import NoCandidatesFound
from core.geo import distance_km, is_within_radius
from core.models import Order
from database import queries as db_queries


@dataclass(frozen=True)
class Candidate:
    """A pool member within the radius, with its distance to the origin."""
    item: Any
    distance_km: float

    @property
    def id(self) -> str:
        return self.item.id


def _position(item) -> tuple[float | None, float | None]:
    return item.lat, item.lng


def find_candidates(origin_lat: float, origin_lng: float, radius_km: float, pool: Iterable[Any],
                    position: Callable[[Any], tuple[float | None, float | None]] = _position) -> list[Candidate]:
    """
    Returns the members of pool within radius_km of the origin, nearest first.

    Pool members need an `id`; `position` extracts their (lat, lng), by default
    from `lat` and `lng` attributes. Members without a known position are
    skipped. Equal distances are ordered by id.
    """
    if radius_km < 0:
        raise ValueError(f"radius_km must not be negative, got {radius_km}")

    candidates = []
    for item in pool:
        lat, lng = position(item)
        if lat is None or lng is None:
            continue
        if is_within_radius(origin_lat, origin_lng, lat, lng, radius_km):
            candidates.append(Candidate(item=item, distance_km=distance_km(origin_lat, origin_lng, lat, lng)))

    candidates.sort(key=lambda c: (c.distance_km, str(c.item.id)))
    return candidates


class GeospatialMatcher:
    """Ranks shops for browsing and partners for dispatch. Never assigns anything itself."""

    def __init__(self, shop_radius_km: float = SHOP_SEARCH_RADIUS_KM, delivery_radius_km: float = DELIVERY_RADIUS_KM):
        self.shop_radius_km = shop_radius_km
        self.delivery_radius_km = delivery_radius_km

    async def nearby_shops(self, lat: float, lng: float, radius_km: float | None = None) -> list[Candidate]:
        radius = self.shop_radius_km if radius_km is None else radius_km
        shops = await db_queries.list_shops()
        return find_candidates(lat, lng, radius, shops)

    async def dispatch_candidates(self, order: Order, radius_km: float | None = None) -> list[Candidate]:
        """
        Online partners with no active order, within the delivery radius of the pickup point.

        Raises NoCandidatesFound when nobody qualifies.
        """
        radius = self.delivery_radius_km if radius_km is None else radius_km
        if not order.pickup.has_coordinates:
            raise NoCandidatesFound(f"Order {order.id} has no pickup coordinates", order_id=order.id)

        online = await db_queries.list_online_partners()
        busy = await db_queries.get_busy_partner_ids()
        pool = [partner for partner in online if partner.id not in busy]

        candidates = find_candidates(order.pickup.lat, order.pickup.lng, radius, pool)
        if not candidates:
            raise NoCandidatesFound(
                f"No delivery partners within {radius} km of order {order.id}", order_id=order.id
            )
        logger.info(f"Order {order.id}: {len(candidates)} partner candidate(s) within {radius} km.")
        return candidates

    def orders_near(self, lat: float, lng: float, orders: Iterable[Order], radius_km: float | None = None) -> list[Candidate]:
        """Orders whose pickup point lies within the delivery radius of (lat, lng), nearest first."""
        radius = self.delivery_radius_km if radius_km is None else radius_km
        return find_candidates(lat, lng, radius, orders, position=lambda order: (order.pickup.lat, order.pickup.lng))
