import aiosqlite
import json
from config.config import DB_PATH, TIMEZONE
from datetime import datetime
from dateutil import parser
from loguru import logger

from core.models import (
    Location, LocationSample, Notification, NotificationType, Order, OrderItem,
    OrderStatus, PartnerSnapshot, ShopSnapshot,
)

# --- Вспомогательные функции ---

def _get_db():
    """Returns an async connection to the order store."""
    return aiosqlite.connect(DB_PATH)

def _now() -> datetime:
    return datetime.now(TIMEZONE)

def _parse_ts(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return parser.isoparse(value) if 'T' in str(value) else parser.parse(value)

def _to_db(value):
    if isinstance(value, OrderStatus):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value

def _row_to_order(row: aiosqlite.Row) -> Order:
    items = tuple(OrderItem(**item) for item in json.loads(row['items']))
    return Order(
        id=row['id'],
        customer_id=row['customer_id'],
        shop_id=row['shop_id'],
        delivery_partner_id=row['delivery_partner_id'],
        items=items,
        total_amount=row['total_amount'],
        status=OrderStatus(row['status']),
        pickup=Location(row['pickup_address'], row['pickup_lat'], row['pickup_lng']),
        delivery=Location(row['delivery_address'], row['delivery_lat'], row['delivery_lng']),
        created_at=_parse_ts(row['created_at']),
        updated_at=_parse_ts(row['updated_at']),
        estimated_delivery_time=_parse_ts(row['estimated_delivery_time']),
    )

def _row_to_sample(row: aiosqlite.Row) -> LocationSample:
    return LocationSample(
        order_id=row['order_id'],
        partner_id=row['delivery_partner_id'],
        timestamp=_parse_ts(row['timestamp']),
        lat=row['current_lat'],
        lng=row['current_lng'],
        status=OrderStatus(row['status']),
    )

def _row_to_notification(row: aiosqlite.Row) -> Notification:
    return Notification(
        id=row['id'],
        recipient_id=row['user_id'],
        type=NotificationType(row['type']),
        title=row['title'],
        message=row['message'],
        payload=json.loads(row['data']) if row['data'] else {},
        created_at=_parse_ts(row['created_at']),
        read=bool(row['read']),
    )

# --- Профили: клиенты, магазины, курьеры ---

async def upsert_profile(user_id: str, role: str, full_name: str | None = None, phone: str | None = None,
                         telegram_chat_id: int | None = None, is_online: bool = False,
                         latitude: float | None = None, longitude: float | None = None,
                         shop_name: str | None = None, shop_category: str | None = None,
                         shop_address: str | None = None, shop_lat: float | None = None,
                         shop_lng: float | None = None):
    """Adds a profile or refreshes an existing one. Profiles are owned outside the core."""
    async with _get_db() as db:
        await db.execute(
            """
            INSERT INTO user_profiles (
                id, role, full_name, phone, telegram_chat_id, is_online, latitude, longitude,
                shop_name, shop_category, shop_address, shop_lat, shop_lng
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                role = excluded.role,
                full_name = excluded.full_name,
                phone = excluded.phone,
                telegram_chat_id = excluded.telegram_chat_id,
                is_online = excluded.is_online,
                latitude = excluded.latitude,
                longitude = excluded.longitude,
                shop_name = excluded.shop_name,
                shop_category = excluded.shop_category,
                shop_address = excluded.shop_address,
                shop_lat = excluded.shop_lat,
                shop_lng = excluded.shop_lng
            """,
            (user_id, role, full_name, phone, telegram_chat_id, 1 if is_online else 0, latitude, longitude,
             shop_name, shop_category, shop_address, shop_lat, shop_lng)
        )
        await db.commit()

async def get_profile(user_id: str) -> aiosqlite.Row | None:
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM user_profiles WHERE id = ?", (user_id,))
        return await cursor.fetchone()

async def get_profile_by_telegram_id(chat_id: int) -> aiosqlite.Row | None:
    """Resolves the marketplace profile linked to a Telegram chat."""
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM user_profiles WHERE telegram_chat_id = ?", (chat_id,))
        return await cursor.fetchone()

async def get_telegram_chat_id(user_id: str) -> int | None:
    async with _get_db() as db:
        cursor = await db.execute("SELECT telegram_chat_id FROM user_profiles WHERE id = ?", (user_id,))
        result = await cursor.fetchone()
        return result[0] if result else None

async def set_partner_online(partner_id: str, is_online: bool):
    async with _get_db() as db:
        await db.execute(
            "UPDATE user_profiles SET is_online = ? WHERE id = ? AND role = 'delivery_partner'",
            (1 if is_online else 0, partner_id)
        )
        await db.commit()

async def update_partner_location(partner_id: str, lat: float, lng: float):
    """Refreshes the partner's last known position."""
    async with _get_db() as db:
        await db.execute(
            "UPDATE user_profiles SET latitude = ?, longitude = ?, last_location_update = ? WHERE id = ?",
            (lat, lng, _now().isoformat(), partner_id)
        )
        await db.commit()

async def list_online_partners() -> list[PartnerSnapshot]:
    """Partner directory: online delivery partners with their last known position."""
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT id, full_name, is_online, latitude, longitude FROM user_profiles "
            "WHERE role = 'delivery_partner' AND is_online = 1"
        )
        rows = await cursor.fetchall()
        return [
            PartnerSnapshot(id=row['id'], is_online=True, lat=row['latitude'], lng=row['longitude'], full_name=row['full_name'])
            for row in rows
        ]

async def list_shops() -> list[ShopSnapshot]:
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT id, shop_name, shop_category, shop_lat, shop_lng FROM user_profiles WHERE role = 'shop_owner'"
        )
        rows = await cursor.fetchall()
        return [
            ShopSnapshot(id=row['id'], name=row['shop_name'], category=row['shop_category'], lat=row['shop_lat'], lng=row['shop_lng'])
            for row in rows
        ]

async def get_busy_partner_ids() -> set[str]:
    """Partners currently holding a non-terminal order."""
    async with _get_db() as db:
        cursor = await db.execute(
            "SELECT DISTINCT delivery_partner_id FROM orders "
            "WHERE delivery_partner_id IS NOT NULL AND status NOT IN ('delivered', 'cancelled')"
        )
        return {row[0] for row in await cursor.fetchall()}

# --- Заказы ---

async def create_order(order: Order) -> str:
    """Inserts a new order together with its initial history row."""
    async with _get_db() as db:
        await db.execute(
            """
            INSERT INTO orders (
                id, customer_id, shop_id, delivery_partner_id, items, total_amount, status,
                pickup_address, pickup_lat, pickup_lng, delivery_address, delivery_lat, delivery_lng,
                created_at, updated_at, estimated_delivery_time
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                order.id, order.customer_id, order.shop_id, order.delivery_partner_id,
                json.dumps([item.to_dict() for item in order.items]), order.total_amount, order.status.value,
                order.pickup.address, order.pickup.lat, order.pickup.lng,
                order.delivery.address, order.delivery.lat, order.delivery.lng,
                order.created_at.isoformat(), order.updated_at.isoformat(),
                _to_db(order.estimated_delivery_time),
            )
        )
        await db.execute(
            "INSERT INTO order_status_history (order_id, old_status, new_status, actor, actor_id, changed_at) VALUES (?, NULL, ?, 'customer', ?, ?)",
            (order.id, order.status.value, order.customer_id, order.created_at.isoformat())
        )
        await db.commit()
        return order.id

async def read_order(order_id: str) -> Order | None:
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM orders WHERE id = ?", (order_id,))
        row = await cursor.fetchone()
        return _row_to_order(row) if row else None

_PATCHABLE_COLUMNS = frozenset({'status', 'delivery_partner_id', 'estimated_delivery_time'})

async def conditional_update_order(order_id: str, expected_status: OrderStatus, expected_partner_null: bool,
                                   patch: dict, expected_partner_id: str | None = None,
                                   actor: str | None = None, actor_id: str | None = None) -> bool:
    """
    Compare-and-swap on the order row.

    The update is applied only if, at write time, the stored status equals
    expected_status, the stored partner is NULL (when expected_partner_null)
    and equals expected_partner_id (when given). A status change is recorded
    in order_status_history inside the same transaction.
    Returns True when exactly one row was updated.
    """
    unknown = set(patch) - _PATCHABLE_COLUMNS
    if unknown:
        raise ValueError(f"Columns not patchable: {sorted(unknown)}")

    now = _now().isoformat()
    assignments = [f"{column} = ?" for column in patch] + ["updated_at = ?"]
    params = [_to_db(value) for value in patch.values()] + [now, order_id, _to_db(expected_status)]
    query = f"UPDATE orders SET {', '.join(assignments)} WHERE id = ? AND status = ?"
    if expected_partner_null:
        query += " AND delivery_partner_id IS NULL"
    if expected_partner_id is not None:
        query += " AND delivery_partner_id = ?"
        params.append(expected_partner_id)

    async with _get_db() as db:
        cursor = await db.execute(query, params)
        updated = cursor.rowcount == 1
        if updated and 'status' in patch:
            await db.execute(
                "INSERT INTO order_status_history (order_id, old_status, new_status, actor, actor_id, changed_at) VALUES (?, ?, ?, ?, ?, ?)",
                (order_id, _to_db(expected_status), _to_db(patch['status']), actor, actor_id, now)
            )
        await db.commit()
    if not updated:
        logger.debug(f"Conditional update of order {order_id} did not match (expected status {_to_db(expected_status)}).")
    return updated

async def list_orders(status: OrderStatus | None = None, unassigned: bool = False,
                      partner_id: str | None = None) -> list[Order]:
    query = "SELECT * FROM orders WHERE 1 = 1"
    params = []
    if status is not None:
        query += " AND status = ?"
        params.append(_to_db(status))
    if unassigned:
        query += " AND delivery_partner_id IS NULL"
    if partner_id is not None:
        query += " AND delivery_partner_id = ?"
        params.append(partner_id)
    query += " ORDER BY created_at ASC"
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(query, params)
        return [_row_to_order(row) for row in await cursor.fetchall()]

async def get_active_order_for_partner(partner_id: str) -> Order | None:
    """The partner's most recently updated non-terminal order."""
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM orders WHERE delivery_partner_id = ? AND status NOT IN ('delivered', 'cancelled') "
            "ORDER BY updated_at DESC LIMIT 1",
            (partner_id,)
        )
        row = await cursor.fetchone()
        return _row_to_order(row) if row else None

async def get_status_history(order_id: str) -> list[aiosqlite.Row]:
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT old_status, new_status, actor, actor_id, changed_at FROM order_status_history WHERE order_id = ? ORDER BY id ASC",
            (order_id,)
        )
        return await cursor.fetchall()

# --- Трекинг ---

async def add_tracking_sample(sample: LocationSample) -> bool:
    """
    Appends a sample to the track while the order is active and held by the sample's partner.
    Returns False for an exact duplicate or when the order no longer qualifies.
    """
    async with _get_db() as db:
        cursor = await db.execute(
            """
            INSERT OR IGNORE INTO delivery_tracking (order_id, delivery_partner_id, current_lat, current_lng, status, timestamp)
            SELECT ?, ?, ?, ?, ?, ?
            WHERE EXISTS (
                SELECT 1 FROM orders
                WHERE id = ? AND delivery_partner_id = ? AND status NOT IN ('delivered', 'cancelled')
            )
            """,
            (sample.order_id, sample.partner_id, sample.lat, sample.lng, sample.status.value, sample.timestamp.isoformat(),
             sample.order_id, sample.partner_id)
        )
        await db.commit()
        return cursor.rowcount == 1

async def get_track(order_id: str) -> list[LocationSample]:
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT * FROM delivery_tracking WHERE order_id = ? ORDER BY timestamp ASC, id ASC",
            (order_id,)
        )
        return [_row_to_sample(row) for row in await cursor.fetchall()]

async def get_last_sample(order_id: str, partner_id: str | None = None) -> LocationSample | None:
    query = "SELECT * FROM delivery_tracking WHERE order_id = ?"
    params = [order_id]
    if partner_id is not None:
        query += " AND delivery_partner_id = ?"
        params.append(partner_id)
    query += " ORDER BY timestamp DESC, id DESC LIMIT 1"
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(query, params)
        row = await cursor.fetchone()
        return _row_to_sample(row) if row else None

# --- Уведомления ---

async def create_notification(notification: Notification) -> int:
    created_at = notification.created_at or _now()
    async with _get_db() as db:
        cursor = await db.execute(
            "INSERT INTO notifications (user_id, type, title, message, data, read, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                notification.recipient_id, notification.type.value, notification.title, notification.message,
                json.dumps(notification.payload), 1 if notification.read else 0, created_at.isoformat(),
            )
        )
        await db.commit()
        return cursor.lastrowid

async def get_notifications(user_id: str, unread_only: bool = False) -> list[Notification]:
    query = "SELECT * FROM notifications WHERE user_id = ?"
    if unread_only:
        query += " AND read = 0"
    query += " ORDER BY id ASC"
    async with _get_db() as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(query, (user_id,))
        return [_row_to_notification(row) for row in await cursor.fetchall()]

async def mark_notification_read(notification_id: int):
    async with _get_db() as db:
        await db.execute("UPDATE notifications SET read = 1 WHERE id = ?", (notification_id,))
        await db.commit()
