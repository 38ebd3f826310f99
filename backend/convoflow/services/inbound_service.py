# /convoflow/services/inbound_service.py

from typing import Any, Callable, Dict, Optional, Tuple

import structlog

from convoflow.flows.engine import FlowEngine
from convoflow.flows.triggers import find_and_execute_triggered_flows
from convoflow.models.conversation import ChannelConfig, ChannelType, MessageSender, MessageType, TriggerType
from convoflow.services.db_service import DatabaseService, db_service
from convoflow.services.flow_service import build_engine, build_gateway
from convoflow.utils.metrics import inbound_messages_counter

# Turns WhatsApp webhook deliveries into conversation updates and flow runs.

log = structlog.get_logger(__name__)

EngineFactory = Callable[[str, Optional[ChannelConfig]], FlowEngine]

_MEDIA_TYPES = {
    "image": MessageType.IMAGE,
    "audio": MessageType.AUDIO,
    "voice": MessageType.AUDIO,
    "video": MessageType.VIDEO,
    "document": MessageType.FILE,
    "sticker": MessageType.IMAGE,
}


def extract_message_content(message: Dict[str, Any]) -> Tuple[str, Optional[str], MessageType]:
    """
    Returns (text, selected_option, message_type) for an inbound WhatsApp message.

    For interactive replies the text is the reply id and selected_option the
    title the user tapped.
    """
    message_type = message.get("type")

    if message_type == "text":
        return (message.get("text") or {}).get("body", ""), None, MessageType.TEXT

    if message_type == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return reply.get("id", ""), reply.get("title"), MessageType.INTERACTIVE

    if message_type == "button":
        button = message.get("button") or {}
        return button.get("payload") or button.get("text", ""), button.get("text"), MessageType.INTERACTIVE

    if message_type in _MEDIA_TYPES:
        media = message.get(message_type) or {}
        return media.get("caption", ""), None, _MEDIA_TYPES[message_type]

    if message_type == "location":
        return "", None, MessageType.LOCATION

    if message_type == "contacts":
        return "", None, MessageType.CONTACT

    return "", None, MessageType.TEXT


class InboundMessageService:
    def __init__(self, db: DatabaseService, engine_factory: EngineFactory = build_engine):
        self.db = db
        self.engine_factory = engine_factory

    async def process_webhook_payload(self, data: Dict[str, Any]) -> None:
        for entry in data.get("entry", []):
            for change in entry.get("changes", []):
                if change.get("field") != "messages":
                    log.debug("Ignoring non-message change", field=change.get("field"))
                    continue
                await self.process_change_value(change.get("value") or {})

    async def process_change_value(self, value: Dict[str, Any]) -> None:
        phone_number_id = (value.get("metadata") or {}).get("phone_number_id")

        for status_update in value.get("statuses", []):
            await self.handle_status_update(status_update)

        messages = value.get("messages", [])
        if not messages:
            return

        channel = await self.db.get_channel_by_phone_number_id(phone_number_id) if phone_number_id else None
        if channel is None:
            log.warning("No active channel for phone number id; ignoring messages.", phone_number_id=phone_number_id)
            return

        contacts = {contact.get("wa_id"): contact for contact in value.get("contacts", [])}
        for message in messages:
            contact = contacts.get(message.get("from")) or {}
            profile_name = (contact.get("profile") or {}).get("name")
            try:
                await self.handle_message(channel, message, profile_name)
            except Exception:
                log.exception("Failed to process inbound message.", wamid=message.get("id"), tenant_id=channel.tenant_id)

    async def handle_status_update(self, status_update: Dict[str, Any]) -> None:
        wamid = status_update.get("id")
        status = status_update.get("status")
        if not wamid or status not in ("sent", "delivered", "read", "failed"):
            return
        updated = await self.db.update_message_status(wamid, status)
        log.debug("Message status update applied.", wamid=wamid, status=status, updated=updated)

    async def handle_message(self, channel: ChannelConfig, message: Dict[str, Any], profile_name: Optional[str] = None) -> None:
        tenant_id = channel.tenant_id
        sender = message.get("from")
        wamid = message.get("id")
        if not sender:
            log.warning("Inbound message without sender.", wamid=wamid)
            return

        text, selected_option, message_type = extract_message_content(message)
        inbound_messages_counter.labels(message_type=message_type.value).inc()

        conversation, created = await self.db.find_or_create_conversation(
            tenant_id, ChannelType.WHATSAPP, sender, profile_name
        )
        bound_log = log.bind(tenant_id=tenant_id, conversation_id=conversation.id, wamid=wamid)

        await self.db.messages(tenant_id).record(
            conversation.id,
            text or f"[{message.get('type', 'unknown')}]",
            message_type,
            MessageSender.USER,
            metadata={"whatsappType": message.get("type"), "selectedOption": selected_option},
            channel_message_id=wamid,
        )
        await self.db.mark_inbound_activity(tenant_id, conversation.id)

        gateway = build_gateway(channel)
        if gateway is not None and wamid:
            await gateway.mark_as_read(wamid)

        def factory(factory_tenant_id: str) -> FlowEngine:
            return self.engine_factory(factory_tenant_id, channel)

        if created:
            bound_log.info("New conversation started.")
            started_flow = await find_and_execute_triggered_flows(
                tenant_id, conversation.id, text, TriggerType.CONVERSATION_STARTED, factory
            )
            if started_flow:
                return

        state = conversation.flow_state
        if state and state.waiting_for_input and state.current_flow_id:
            bound_log.info("Resuming paused flow.", flow_id=state.current_flow_id)
            engine = factory(tenant_id)
            await engine.execute_flow(conversation.id, state.current_flow_id, text, selected_option=selected_option)
            return

        flow_id = await find_and_execute_triggered_flows(
            tenant_id, conversation.id, text, TriggerType.KEYWORD_DETECTED, factory
        )
        if flow_id is None:
            await find_and_execute_triggered_flows(
                tenant_id, conversation.id, text, TriggerType.MESSAGE_RECEIVED, factory
            )


# Globally accessible instance
inbound_service = InboundMessageService(db_service)
