import aiosqlite
import asyncio
from config.config import DB_PATH
from loguru import logger

async def _execute_script(cursor, script):
    """Executes a multi-statement SQL script."""
    try:
        await cursor.executescript(script)
    except aiosqlite.Error as e:
        logger.error(f"Error executing script: {e}")
        raise

async def _check_and_add_column(cursor, table_name, column_name, column_type):
    """Checks if a column exists in a table and adds it if it doesn't."""
    await cursor.execute(f"PRAGMA table_info({table_name});")
    columns = [info[1] for info in await cursor.fetchall()]
    if column_name not in columns:
        logger.info(f"Column '{column_name}' not found in table '{table_name}'. Adding it...")
        try:
            await cursor.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type};")
            logger.info(f"Column '{column_name}' added successfully.")
        except aiosqlite.Error as e:
            logger.error(f"Failed to add column '{column_name}': {e}")
    else:
        logger.trace(f"Column '{column_name}' already exists in '{table_name}'.")


async def init_db(db_path=None):
    """
    Initializes the database: creates tables if they don't exist
    and runs necessary schema migrations.
    """
    db_path = db_path or DB_PATH
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.cursor()

            # --- Table Creation Script ---
            create_tables_script = """
                CREATE TABLE IF NOT EXISTS user_profiles (
                    id TEXT PRIMARY KEY,
                    role TEXT NOT NULL,
                    full_name TEXT,
                    phone TEXT,
                    is_online INTEGER DEFAULT 0,
                    latitude REAL,
                    longitude REAL,
                    last_location_update TIMESTAMP,
                    shop_name TEXT,
                    shop_category TEXT,
                    shop_address TEXT,
                    shop_lat REAL,
                    shop_lng REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS orders (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    shop_id TEXT NOT NULL,
                    delivery_partner_id TEXT,
                    items TEXT NOT NULL,
                    total_amount REAL NOT NULL,
                    status TEXT NOT NULL,
                    pickup_address TEXT,
                    pickup_lat REAL,
                    pickup_lng REAL,
                    delivery_address TEXT,
                    delivery_lat REAL,
                    delivery_lng REAL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    estimated_delivery_time TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS order_status_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    order_id TEXT NOT NULL,
                    old_status TEXT,
                    new_status TEXT NOT NULL,
                    actor TEXT,
                    actor_id TEXT,
                    changed_at TIMESTAMP NOT NULL,
                    FOREIGN KEY(order_id) REFERENCES orders(id)
                );

                CREATE TABLE IF NOT EXISTS delivery_tracking (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    order_id TEXT NOT NULL,
                    delivery_partner_id TEXT NOT NULL,
                    current_lat REAL NOT NULL,
                    current_lng REAL NOT NULL,
                    status TEXT NOT NULL,
                    timestamp TIMESTAMP NOT NULL,
                    UNIQUE(order_id, delivery_partner_id, timestamp),
                    FOREIGN KEY(order_id) REFERENCES orders(id)
                );

                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    data TEXT,
                    read INTEGER DEFAULT 0,
                    created_at TIMESTAMP NOT NULL
                );
            """
            await _execute_script(cursor, create_tables_script)

            # --- Schema Migrations ---
            logger.info("Checking for necessary database migrations...")
            await _check_and_add_column(cursor, 'user_profiles', 'telegram_chat_id', 'INTEGER')
            await _check_and_add_column(cursor, 'user_profiles', 'vehicle_type', 'TEXT')

            await db.commit()
            logger.info("Database initialization and migration check complete.")

            # --- Index Creation ---
            index_script = """
                CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
                CREATE INDEX IF NOT EXISTS idx_orders_partner_id ON orders(delivery_partner_id);
                CREATE INDEX IF NOT EXISTS idx_orders_customer_id ON orders(customer_id);
                CREATE INDEX IF NOT EXISTS idx_orders_shop_id ON orders(shop_id);
                CREATE INDEX IF NOT EXISTS idx_profiles_role_online ON user_profiles(role, is_online);
                CREATE INDEX IF NOT EXISTS idx_profiles_telegram ON user_profiles(telegram_chat_id);
                CREATE INDEX IF NOT EXISTS idx_tracking_order ON delivery_tracking(order_id, timestamp);
                CREATE INDEX IF NOT EXISTS idx_history_order ON order_status_history(order_id);
                CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, read);
            """
            await _execute_script(cursor, index_script)
            await db.commit()
            logger.info("Indexes created/verified.")

    except aiosqlite.Error as e:
        logger.critical(f"Critical database initialization error: {e}")
        raise

if __name__ == '__main__':
    asyncio.run(init_db())
