# /convoflow/utils/rate_limiter.py

from slowapi import Limiter
from convoflow.utils.request_utils import get_remote_address
from convoflow.config.settings import settings

# Shared limiter instance; imported by main.py and the webhook routes.

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"]
)
