# /convoflow/services/flow_service.py

import logging
from typing import Optional

import httpx
import redis.asyncio as redis
from redis.exceptions import RedisError

from convoflow.config.settings import settings
from convoflow.flows.actions import ActionExecutor
from convoflow.flows.engine import FlowEngine
from convoflow.models.conversation import ChannelConfig
from convoflow.services.db_service import db_service
from convoflow.services.whatsapp_service import WhatsAppService
from convoflow.utils.locks import ConversationLockManager

# Wires FlowEngine instances to the process-wide clients. This is the only place
# where the engine's collaborators are taken from module-level singletons.

logger = logging.getLogger(__name__)


def _create_redis_client() -> Optional[redis.Redis]:
    if not settings.redis_enabled:
        return None
    try:
        return redis.Redis.from_url(settings.redis_url)
    except (ValueError, RedisError) as e:
        logger.critical(f"Failed to configure Redis at {settings.redis_url}: {e}")
        return None


redis_client = _create_redis_client()

lock_manager = ConversationLockManager(
    redis_client=redis_client,
    timeout=settings.flow_lock_timeout_seconds,
    wait_seconds=settings.flow_lock_wait_seconds,
)

# Shared by action api_call requests and the WhatsApp gateways.
http_client = httpx.AsyncClient(timeout=settings.action_http_timeout_seconds)


def build_gateway(channel: Optional[ChannelConfig] = None) -> Optional[WhatsAppService]:
    """Gateway for a tenant channel, falling back to the globally configured number."""
    if channel is not None and channel.is_active:
        return WhatsAppService(channel.access_token, channel.phone_number_id, http_client=http_client)
    if settings.whatsapp_access_token and settings.whatsapp_phone_id:
        return WhatsAppService(settings.whatsapp_access_token, settings.whatsapp_phone_id, http_client=http_client)
    return None


def build_engine(tenant_id: str, channel: Optional[ChannelConfig] = None) -> FlowEngine:
    leads = db_service.leads(tenant_id)
    return FlowEngine(
        tenant_id,
        flows=db_service.flows(tenant_id),
        conversations=db_service.conversations(tenant_id),
        messages=db_service.messages(tenant_id),
        leads=leads,
        gateway=build_gateway(channel),
        locks=lock_manager,
        actions=ActionExecutor(tenant_id, leads, http_client),
    )


async def close_clients() -> None:
    await http_client.aclose()
    if redis_client is not None:
        await redis_client.aclose()
