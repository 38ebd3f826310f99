# /convoflow/services/db_service.py

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo import ReturnDocument

from convoflow.config.settings import settings
from convoflow.flows.errors import StatePersistenceError
from convoflow.flows.interfaces import (
    ConversationStore,
    FlowRepository,
    LeadRepository,
    MessageStore,
)
from convoflow.models.conversation import (
    ChannelConfig,
    ChannelType,
    ChatbotFlow,
    Conversation,
    FlowStatus,
    Lead,
    MessageRecord,
    MessageSender,
    MessageType,
    TriggerType,
)
from convoflow.models.state import ConversationState
from convoflow.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

# Collections
CONVERSATIONS = "conversations"
MESSAGES = "messages"
LEADS = "leads"
FLOWS = "chatbot_flows"
CHANNELS = "channels"


def new_id() -> str:
    return str(ObjectId())


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# ==================== Tenant-scoped stores ====================

class MongoConversationStore(ConversationStore):
    def __init__(self, db: AsyncIOMotorDatabase, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        document = await self.db[CONVERSATIONS].find_one({"_id": conversation_id, "tenant_id": self.tenant_id})
        if not document:
            return None
        try:
            return Conversation.model_validate(document)
        except ValidationError as e:
            logger.error(f"Stored conversation {conversation_id} is malformed: {e}")
            return None

    async def save_flow_state(self, conversation_id: str, state: ConversationState) -> None:
        result = await self.db[CONVERSATIONS].update_one(
            {"_id": conversation_id, "tenant_id": self.tenant_id},
            {"$set": {"flow_state": state.to_document()}},
        )
        if result.matched_count == 0:
            database_operations_counter.labels(operation="save_flow_state", status="failed").inc()
            raise StatePersistenceError(f"Conversation {conversation_id} not found for tenant {self.tenant_id}")
        database_operations_counter.labels(operation="save_flow_state", status="success").inc()

    async def touch(self, conversation_id: str, at: datetime) -> None:
        await self.db[CONVERSATIONS].update_one(
            {"_id": conversation_id, "tenant_id": self.tenant_id},
            {"$set": {"last_message_at": at}},
        )


class MongoMessageStore(MessageStore):
    def __init__(self, db: AsyncIOMotorDatabase, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id

    async def record(
        self,
        conversation_id: str,
        content: str,
        message_type: MessageType,
        sender: MessageSender,
        metadata: Optional[Dict[str, Any]] = None,
        channel_message_id: Optional[str] = None,
    ) -> None:
        message = MessageRecord(
            conversation_id=conversation_id,
            tenant_id=self.tenant_id,
            content=content,
            message_type=message_type,
            sender=sender,
            channel_message_id=channel_message_id,
            channel_status="sent" if channel_message_id else None,
            metadata=metadata or {},
        )
        document = message.model_dump(mode="python")
        document["_id"] = new_id()
        await self.db[MESSAGES].insert_one(document)
        database_operations_counter.labels(operation="record_message", status="success").inc()


class MongoFlowRepository(FlowRepository):
    def __init__(self, db: AsyncIOMotorDatabase, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id

    def _to_flow(self, document: Dict[str, Any]) -> Optional[ChatbotFlow]:
        try:
            return ChatbotFlow.model_validate(document)
        except ValidationError as e:
            logger.error(f"Stored flow {document.get('_id')} is malformed: {e}")
            return None

    async def get_published(self, flow_id: str) -> Optional[ChatbotFlow]:
        document = await self.db[FLOWS].find_one(
            {"_id": flow_id, "tenant_id": self.tenant_id, "status": FlowStatus.PUBLISHED.value, "deleted_at": None}
        )
        return self._to_flow(document) if document else None

    async def list_published(self, trigger_type: TriggerType) -> List[ChatbotFlow]:
        cursor = self.db[FLOWS].find(
            {
                "tenant_id": self.tenant_id,
                "status": FlowStatus.PUBLISHED.value,
                "trigger_type": trigger_type.value,
                "deleted_at": None,
            }
        )
        flows = []
        async for document in cursor:
            flow = self._to_flow(document)
            if flow:
                flows.append(flow)
        return flows


class MongoLeadRepository(LeadRepository):
    def __init__(self, db: AsyncIOMotorDatabase, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id

    async def create(self, attributes: Dict[str, Any]) -> str:
        lead = Lead(**{**attributes, "tenant_id": self.tenant_id})
        document = lead.model_dump(mode="python")
        document["_id"] = new_id()
        await self.db[LEADS].insert_one(document)
        database_operations_counter.labels(operation="create_lead", status="success").inc()
        return document["_id"]


# ==================== Database service ====================

class DatabaseService:
    """
    Owns the MongoDB client. Hands out tenant-scoped stores to the flow engine
    and serves the lookups the webhook and the flow API need.
    """

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            (CONVERSATIONS, [("tenant_id", 1), ("channel", 1), ("channel_address", 1)], {}),
            (CONVERSATIONS, [("tenant_id", 1), ("last_message_at", -1)], {}),
            (MESSAGES, [("conversation_id", 1), ("created_at", 1)], {}),
            (MESSAGES, [("channel_message_id", 1)], {"sparse": True}),
            (FLOWS, [("tenant_id", 1), ("status", 1), ("trigger_type", 1)], {}),
            (FLOWS, [("tenant_id", 1), ("updated_at", -1)], {}),
            (CHANNELS, [("phone_number_id", 1)], {"unique": True}),
            (LEADS, [("tenant_id", 1), ("created_at", -1)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    def close(self) -> None:
        self.client.close()

    # ==================== Store factories ====================

    def conversations(self, tenant_id: str) -> MongoConversationStore:
        return MongoConversationStore(self.db, tenant_id)

    def messages(self, tenant_id: str) -> MongoMessageStore:
        return MongoMessageStore(self.db, tenant_id)

    def flows(self, tenant_id: str) -> MongoFlowRepository:
        return MongoFlowRepository(self.db, tenant_id)

    def leads(self, tenant_id: str) -> MongoLeadRepository:
        return MongoLeadRepository(self.db, tenant_id)

    # ==================== Channels ====================

    async def get_channel_by_phone_number_id(self, phone_number_id: str) -> Optional[ChannelConfig]:
        """Active WhatsApp channel registered for a business phone number id."""
        document = await self.db[CHANNELS].find_one(
            {"phone_number_id": phone_number_id, "channel_type": ChannelType.WHATSAPP.value, "is_active": True}
        )
        return ChannelConfig.model_validate(document) if document else None

    async def get_active_channel(self, tenant_id: str) -> Optional[ChannelConfig]:
        document = await self.db[CHANNELS].find_one(
            {"tenant_id": tenant_id, "channel_type": ChannelType.WHATSAPP.value, "is_active": True}
        )
        return ChannelConfig.model_validate(document) if document else None

    async def verify_token_exists(self, token: str) -> bool:
        if not token:
            return False
        document = await self.db[CHANNELS].find_one({"verify_token": token, "is_active": True}, {"_id": 1})
        return document is not None

    # ==================== Conversations ====================

    async def find_or_create_conversation(
        self,
        tenant_id: str,
        channel: ChannelType,
        channel_address: str,
        profile_name: Optional[str] = None,
    ) -> Tuple[Conversation, bool]:
        """
        Returns the open conversation with a channel address, creating it when
        none exists. The flag is True for a newly created conversation.
        """
        query = {"tenant_id": tenant_id, "channel": channel.value, "channel_address": channel_address}
        document = await self.db[CONVERSATIONS].find_one(query)
        if document:
            return Conversation.model_validate(document), False

        conversation = Conversation(
            id=new_id(),
            tenant_id=tenant_id,
            channel=channel,
            channel_address=channel_address,
            profile_name=profile_name,
            title=profile_name or channel_address,
            last_message_at=_now_utc(),
        )
        await self.db[CONVERSATIONS].insert_one(conversation.model_dump(by_alias=True, mode="python"))
        database_operations_counter.labels(operation="create_conversation", status="success").inc()
        logger.info(f"Created conversation {conversation.id} for tenant {tenant_id}")
        return conversation, True

    async def mark_inbound_activity(self, tenant_id: str, conversation_id: str) -> None:
        await self.db[CONVERSATIONS].update_one(
            {"_id": conversation_id, "tenant_id": tenant_id},
            {"$set": {"last_message_at": _now_utc()}, "$inc": {"unread_count": 1}},
        )

    async def reset_flow_state(self, tenant_id: str, conversation_id: str) -> bool:
        """
        Forgets the position in the current flow; collected variables stay.

        The whole flow_state document is rewritten, so conversations that never
        ran a flow (flow_state is null) are reset too.
        """
        query = {"_id": conversation_id, "tenant_id": tenant_id}
        document = await self.db[CONVERSATIONS].find_one(query, {"flow_state": 1})
        if not document:
            return False

        try:
            state = ConversationState.from_document(document.get("flow_state"))
        except ValidationError as e:
            logger.warning(f"Discarding malformed flow state of conversation {conversation_id}: {e}")
            state = ConversationState()
        state.restart()
        state.version += 1
        state.last_updated = _now_utc()

        result = await self.db[CONVERSATIONS].update_one(query, {"$set": {"flow_state": state.to_document()}})
        database_operations_counter.labels(operation="reset_flow_state", status="success").inc()
        return result.matched_count > 0

    # ==================== Messages ====================

    async def update_message_status(self, channel_message_id: str, status: str) -> bool:
        result = await self.db[MESSAGES].update_one(
            {"channel_message_id": channel_message_id},
            {"$set": {"channel_status": status, "status_updated_at": _now_utc()}},
        )
        return result.modified_count > 0

    # ==================== Flows ====================

    # Soft-deleted flows keep their document but are invisible to every lookup.

    async def list_flows(self, tenant_id: str) -> List[ChatbotFlow]:
        cursor = self.db[FLOWS].find({"tenant_id": tenant_id, "deleted_at": None}).sort("updated_at", -1)
        return [ChatbotFlow.model_validate(document) async for document in cursor]

    async def get_flow(self, tenant_id: str, flow_id: str) -> Optional[ChatbotFlow]:
        document = await self.db[FLOWS].find_one({"_id": flow_id, "tenant_id": tenant_id, "deleted_at": None})
        return ChatbotFlow.model_validate(document) if document else None

    async def create_flow(self, tenant_id: str, fields: Dict[str, Any]) -> ChatbotFlow:
        """New flows always start as version 1 drafts."""
        now = _now_utc()
        flow = ChatbotFlow(
            **fields,
            id=new_id(),
            tenant_id=tenant_id,
            status=FlowStatus.DRAFT,
            version=1,
            created_at=now,
            updated_at=now,
        )
        await self.db[FLOWS].insert_one(flow.model_dump(by_alias=True, mode="python"))
        database_operations_counter.labels(operation="create_flow", status="success").inc()
        logger.info(f"Created flow {flow.id} for tenant {tenant_id}")
        return flow

    async def update_flow(self, tenant_id: str, flow_id: str, fields: Dict[str, Any]) -> Optional[ChatbotFlow]:
        document = await self.db[FLOWS].find_one_and_update(
            {"_id": flow_id, "tenant_id": tenant_id, "deleted_at": None},
            {"$set": {**fields, "updated_at": _now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        return ChatbotFlow.model_validate(document) if document else None

    async def delete_flow(self, tenant_id: str, flow_id: str) -> bool:
        now = _now_utc()
        result = await self.db[FLOWS].update_one(
            {"_id": flow_id, "tenant_id": tenant_id, "deleted_at": None},
            {"$set": {"deleted_at": now, "updated_at": now, "status": FlowStatus.ARCHIVED.value}},
        )
        return result.matched_count > 0

    async def publish_flow(self, tenant_id: str, flow_id: str) -> bool:
        now = _now_utc()
        result = await self.db[FLOWS].update_one(
            {"_id": flow_id, "tenant_id": tenant_id, "deleted_at": None},
            {"$set": {
                "status": FlowStatus.PUBLISHED.value,
                "last_published_at": now,
                "updated_at": now,
            }, "$inc": {"version": 1}},
        )
        return result.matched_count > 0


# Globally accessible instance
db_service = DatabaseService(settings.mongo_uri)
