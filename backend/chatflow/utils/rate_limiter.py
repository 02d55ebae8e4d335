# /chatflow/utils/rate_limiter.py

from slowapi import Limiter
from chatflow.utils.request_utils import get_remote_address
from chatflow.config.settings import settings

# Shared limiter instance; imported by main and by the routes that declare limits.

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    enabled=settings.environment != "test",
)
