from geopy.geocoders import Nominatim
import asyncio
from loguru import logger
import time

from config.config import GEOCODER_USER_AGENT


class RateLimitedGeocoder:
    """
    Async wrapper around geopy.Nominatim that keeps to the public instance
    limit of one request per second without blocking the event loop.
    """
    def __init__(self, user_agent: str, timeout: int = 10):
        self._geolocator = Nominatim(user_agent=user_agent, timeout=timeout)
        self._lock = asyncio.Lock()
        self._last_request_time = 0
        self._delay = 1.1  # slightly above one second

    async def _execute_request(self, func, *args, **kwargs):
        async with self._lock:
            time_since_last_request = time.monotonic() - self._last_request_time
            if time_since_last_request < self._delay:
                await asyncio.sleep(self._delay - time_since_last_request)

            try:
                # geopy is blocking, run it in a worker thread
                return await asyncio.to_thread(func, *args, **kwargs)
            except Exception as e:
                logger.error(f"Geocoding request failed for query '{args[0]}': {e}")
                return None
            finally:
                self._last_request_time = time.monotonic()

    async def geocode(self, query: str, **kwargs):
        """Address -> geopy Location, or None when nothing was found."""
        return await self._execute_request(self._geolocator.geocode, query, **kwargs)


geocoder = RateLimitedGeocoder(user_agent=GEOCODER_USER_AGENT, timeout=10)


async def geocode_address(address: str) -> tuple[float, float] | None:
    """Returns (lat, lng) for a free-form address, or None."""
    if not address or not address.strip():
        return None
    location = await geocoder.geocode(address)
    if location is None:
        logger.info(f"Address '{address}' could not be geocoded.")
        return None
    return location.latitude, location.longitude
