import os
from dotenv import load_dotenv
from zoneinfo import ZoneInfo
from pathlib import Path

load_dotenv()

# --- Base Directory ---
BASE_DIR = Path(__file__).resolve().parent.parent


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


# --- Database ---
DB_PATH = Path(os.getenv('DB_PATH', BASE_DIR / 'database' / 'dispatch.db'))

# Timestamps of orders, samples and notifications are stored in this zone
TIMEZONE = ZoneInfo(os.getenv('TIMEZONE', 'UTC'))

# --- Matching ---
# Radius for shop browsing around the customer
SHOP_SEARCH_RADIUS_KM = _env_float('SHOP_SEARCH_RADIUS_KM', 10)
# Radius for delivery partners around the pickup point
DELIVERY_RADIUS_KM = _env_float('DELIVERY_RADIUS_KM', 5)
# Broadcast the delivery opportunity as soon as the shop marks an order ready
DISPATCH_ON_READY = _env_bool('DISPATCH_ON_READY', True)

# --- Notifications ---
# A partner is not offered the same order twice within this window
OPPORTUNITY_COOLDOWN_SECONDS = _env_float('OPPORTUNITY_COOLDOWN_SECONDS', 300)
# Share of the order total shown to partners as the estimated earning
PARTNER_EARNING_RATE = _env_float('PARTNER_EARNING_RATE', 0.1)

# --- Scheduler ---
REDISPATCH_INTERVAL_SECONDS = int(_env_float('REDISPATCH_INTERVAL_SECONDS', 60))

# --- HTTP API ---
API_HOST = os.getenv('API_HOST', '0.0.0.0')
API_PORT = int(_env_float('API_PORT', 8000))

# --- Telegram (optional partner surface and push channel) ---
TELEGRAM_TOKEN = os.getenv('TELEGRAM_TOKEN') or None

# --- Geocoding ---
GEOCODER_USER_AGENT = os.getenv('GEOCODER_USER_AGENT', 'localhub_dispatch/1.0')

# Chats that receive unhandled-error reports from the Telegram surface
ADMIN_CHAT_IDS = [int(chat_id.strip()) for chat_id in os.getenv('ADMIN_CHAT_IDS', '').split(',') if chat_id.strip()]
