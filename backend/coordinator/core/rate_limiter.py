from slowapi import Limiter
from slowapi.util import get_remote_address
from coordinator.config import settings

# Central rate limiter used across the app (memory:// or redis:// storage)
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.rate_limit_storage_uri,
    default_limits=[settings.rate_limit_default],
)
