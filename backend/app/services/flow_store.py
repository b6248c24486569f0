# /app/services/flow_store.py

import abc
import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument

from app.models.flow import FlowDefinition
from app.models.session import (
    Conversation,
    FlowHistoryEntry,
    SessionDiagnostics,
    UserFlowState,
    new_id,
    utcnow,
)
from app.utils.metrics import database_operations_counter

# This service owns every read and write the flow engine makes: flow documents,
# conversations, the per-user session row, per-(user, flow) field data with its
# diagnostics side-channel, and the append-only stage history.

logger = logging.getLogger(__name__)


class FlowStore(abc.ABC):
    """Persistence contract used by the router and the engine."""

    # ==================== Flows ====================

    @abc.abstractmethod
    async def list_flows(self) -> List[FlowDefinition]: ...

    @abc.abstractmethod
    async def get_flow(self, slug: str) -> Optional[FlowDefinition]: ...

    @abc.abstractmethod
    async def upsert_flow(self, flow: FlowDefinition) -> None: ...

    # ==================== Conversations & users ====================

    @abc.abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    @abc.abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation: ...

    @abc.abstractmethod
    async def assign_user(self, conversation_id: str, user_id: str) -> None: ...

    async def create_user(self) -> str:
        return new_id()

    # ==================== Session ====================

    @abc.abstractmethod
    async def get_user_flow(self, user_id: str) -> Optional[UserFlowState]: ...

    @abc.abstractmethod
    async def save_user_flow(self, user_id: str, flow_slug: str, stage: str) -> UserFlowState:
        """Create the user's session row or move it to ``flow_slug``/``stage``."""

    @abc.abstractmethod
    async def delete_user_flow(self, user_id: str) -> None: ...

    # ==================== User data ====================

    @abc.abstractmethod
    async def get_flow_user_data(self, user_id: str, flow_slug: str) -> Dict[str, Any]:
        """Only the data written under ``flow_slug``."""

    @abc.abstractmethod
    async def get_other_flows_user_data(self, user_id: str, flow_slug: str) -> List[Dict[str, Any]]:
        """Data from the user's other flows, oldest first."""

    @abc.abstractmethod
    async def set_user_data(self, user_id: str, flow_slug: str, data: Dict[str, Any]) -> None:
        """Merge ``data`` into the stored map. A None value marks the key as cleared."""

    async def get_user_data(self, user_id: str, flow_slug: str) -> Dict[str, Any]:
        """
        The user's data as seen from ``flow_slug``: data collected in other flows
        is the base (cleared values ignored), the current flow's values win.
        """
        merged: Dict[str, Any] = {}
        for other in await self.get_other_flows_user_data(user_id, flow_slug):
            merged.update({key: value for key, value in other.items() if value is not None})
        merged.update(await self.get_flow_user_data(user_id, flow_slug))
        return merged

    @abc.abstractmethod
    async def get_diagnostics(self, user_id: str, flow_slug: str) -> SessionDiagnostics: ...

    @abc.abstractmethod
    async def save_diagnostics(self, user_id: str, flow_slug: str, diagnostics: SessionDiagnostics) -> None: ...

    # ==================== History ====================

    @abc.abstractmethod
    async def append_history(self, entry: FlowHistoryEntry) -> None: ...

    @abc.abstractmethod
    async def list_history(self, user_id: str) -> List[FlowHistoryEntry]: ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryFlowStore(FlowStore):
    """Process-local store for development and tests."""

    def __init__(self):
        self.flows: Dict[str, FlowDefinition] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.user_flows: Dict[str, UserFlowState] = {}
        self.user_data: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.diagnostics: Dict[Tuple[str, str], SessionDiagnostics] = {}
        self.history: List[FlowHistoryEntry] = []

    async def list_flows(self) -> List[FlowDefinition]:
        return [flow.model_copy(deep=True) for flow in self.flows.values()]

    async def get_flow(self, slug: str) -> Optional[FlowDefinition]:
        flow = self.flows.get(slug)
        return flow.model_copy(deep=True) if flow else None

    async def upsert_flow(self, flow: FlowDefinition) -> None:
        self.flows[flow.slug] = flow.model_copy(deep=True)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self.conversations.get(conversation_id)
        return conversation.model_copy() if conversation else None

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        self.conversations[conversation.id] = conversation.model_copy()
        return conversation

    async def assign_user(self, conversation_id: str, user_id: str) -> None:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            conversation = Conversation(id=conversation_id)
            self.conversations[conversation_id] = conversation
        conversation.user_id = user_id

    async def get_user_flow(self, user_id: str) -> Optional[UserFlowState]:
        state = self.user_flows.get(user_id)
        return state.model_copy() if state else None

    async def save_user_flow(self, user_id: str, flow_slug: str, stage: str) -> UserFlowState:
        state = self.user_flows.get(user_id)
        if state is None:
            state = UserFlowState(user_id=user_id, flow_slug=flow_slug, stage=stage)
            self.user_flows[user_id] = state
        else:
            state.flow_slug = flow_slug
            state.stage = stage
            state.updated_at = utcnow()
        return state.model_copy()

    async def delete_user_flow(self, user_id: str) -> None:
        self.user_flows.pop(user_id, None)

    async def get_flow_user_data(self, user_id: str, flow_slug: str) -> Dict[str, Any]:
        return copy.deepcopy(self.user_data.get((user_id, flow_slug), {}))

    async def get_other_flows_user_data(self, user_id: str, flow_slug: str) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(data)
            for (owner, slug), data in self.user_data.items()
            if owner == user_id and slug != flow_slug
        ]

    async def set_user_data(self, user_id: str, flow_slug: str, data: Dict[str, Any]) -> None:
        self.user_data.setdefault((user_id, flow_slug), {}).update(copy.deepcopy(data))

    async def get_diagnostics(self, user_id: str, flow_slug: str) -> SessionDiagnostics:
        diagnostics = self.diagnostics.get((user_id, flow_slug))
        return diagnostics.model_copy(deep=True) if diagnostics else SessionDiagnostics()

    async def save_diagnostics(self, user_id: str, flow_slug: str, diagnostics: SessionDiagnostics) -> None:
        self.diagnostics[(user_id, flow_slug)] = diagnostics.model_copy(deep=True)

    async def append_history(self, entry: FlowHistoryEntry) -> None:
        self.history.append(entry.model_copy())

    async def list_history(self, user_id: str) -> List[FlowHistoryEntry]:
        return [entry for entry in self.history if entry.user_id == user_id]


class MongoFlowStore(FlowStore):
    """
    MongoDB-backed store. Collections: flows, conversations, user_flows,
    user_data (one document per user and flow, holding ``data`` and
    ``diagnostics``) and flow_history.
    """

    def __init__(self, mongo_uri: str, max_pool_size: int = 10, min_pool_size: int = 1, tls: bool = False):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=max_pool_size,
                minPoolSize=min_pool_size,
                tls=tls,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000,
            )
            self.db = self.client.get_default_database()
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    async def create_indexes(self):
        await self.db.flows.create_index([("slug", ASCENDING)], unique=True)
        await self.db.user_flows.create_index([("user_id", ASCENDING)], unique=True)
        await self.db.user_data.create_index([("user_id", ASCENDING), ("flow_slug", ASCENDING)], unique=True)
        await self.db.flow_history.create_index([("user_id", ASCENDING), ("timestamp", ASCENDING)])
        logger.info("MongoDB indexes ensured.")

    def _track(self, operation: str, status: str = "success"):
        database_operations_counter.labels(operation=operation, status=status).inc()

    async def list_flows(self) -> List[FlowDefinition]:
        docs = await self.db.flows.find({}, {"_id": 0}).to_list(length=None)
        self._track("list_flows")
        return [FlowDefinition.model_validate(doc) for doc in docs]

    async def get_flow(self, slug: str) -> Optional[FlowDefinition]:
        doc = await self.db.flows.find_one({"slug": slug}, {"_id": 0})
        self._track("get_flow")
        return FlowDefinition.model_validate(doc) if doc else None

    async def upsert_flow(self, flow: FlowDefinition) -> None:
        await self.db.flows.replace_one({"slug": flow.slug}, flow.to_document(), upsert=True)
        self._track("upsert_flow")

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        doc = await self.db.conversations.find_one({"_id": conversation_id})
        self._track("get_conversation")
        if not doc:
            return None
        doc["id"] = doc.pop("_id")
        return Conversation.model_validate(doc)

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        doc = conversation.model_dump(exclude={"id"})
        doc["_id"] = conversation.id
        await self.db.conversations.insert_one(doc)
        self._track("create_conversation")
        return conversation

    async def assign_user(self, conversation_id: str, user_id: str) -> None:
        await self.db.conversations.update_one(
            {"_id": conversation_id},
            {"$set": {"user_id": user_id}, "$setOnInsert": {"channel": "web", "created_at": utcnow()}},
            upsert=True,
        )
        self._track("assign_user")

    async def get_user_flow(self, user_id: str) -> Optional[UserFlowState]:
        doc = await self.db.user_flows.find_one({"user_id": user_id}, {"_id": 0})
        self._track("get_user_flow")
        return UserFlowState.model_validate(doc) if doc else None

    async def save_user_flow(self, user_id: str, flow_slug: str, stage: str) -> UserFlowState:
        now = utcnow()
        doc = await self.db.user_flows.find_one_and_update(
            {"user_id": user_id},
            {
                "$set": {"flow_slug": flow_slug, "stage": stage, "updated_at": now},
                "$setOnInsert": {"id": new_id(), "user_id": user_id, "created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            projection={"_id": 0},
        )
        self._track("save_user_flow")
        return UserFlowState.model_validate(doc)

    async def delete_user_flow(self, user_id: str) -> None:
        await self.db.user_flows.delete_many({"user_id": user_id})
        self._track("delete_user_flow")

    async def get_flow_user_data(self, user_id: str, flow_slug: str) -> Dict[str, Any]:
        doc = await self.db.user_data.find_one({"user_id": user_id, "flow_slug": flow_slug}, {"data": 1})
        self._track("get_user_data")
        return dict((doc or {}).get("data") or {})

    async def get_other_flows_user_data(self, user_id: str, flow_slug: str) -> List[Dict[str, Any]]:
        cursor = self.db.user_data.find(
            {"user_id": user_id, "flow_slug": {"$ne": flow_slug}}, {"data": 1}
        ).sort("updated_at", ASCENDING)
        docs = await cursor.to_list(length=None)
        self._track("get_user_data")
        return [dict(doc.get("data") or {}) for doc in docs]

    async def set_user_data(self, user_id: str, flow_slug: str, data: Dict[str, Any]) -> None:
        if not data:
            return
        update = {f"data.{key}": value for key, value in data.items()}
        update["updated_at"] = utcnow()
        await self.db.user_data.update_one(
            {"user_id": user_id, "flow_slug": flow_slug}, {"$set": update}, upsert=True
        )
        self._track("set_user_data")

    async def get_diagnostics(self, user_id: str, flow_slug: str) -> SessionDiagnostics:
        doc = await self.db.user_data.find_one({"user_id": user_id, "flow_slug": flow_slug}, {"diagnostics": 1})
        self._track("get_diagnostics")
        raw = (doc or {}).get("diagnostics")
        return SessionDiagnostics.model_validate(raw) if raw else SessionDiagnostics()

    async def save_diagnostics(self, user_id: str, flow_slug: str, diagnostics: SessionDiagnostics) -> None:
        await self.db.user_data.update_one(
            {"user_id": user_id, "flow_slug": flow_slug},
            {"$set": {"diagnostics": diagnostics.model_dump(), "updated_at": utcnow()}},
            upsert=True,
        )
        self._track("save_diagnostics")

    async def append_history(self, entry: FlowHistoryEntry) -> None:
        await self.db.flow_history.insert_one(entry.model_dump())
        self._track("append_history")

    async def list_history(self, user_id: str) -> List[FlowHistoryEntry]:
        docs = await self.db.flow_history.find({"user_id": user_id}, {"_id": 0}).sort("timestamp", ASCENDING).to_list(length=None)
        self._track("list_history")
        return [FlowHistoryEntry.model_validate(doc) for doc in docs]

    async def ping(self) -> bool:
        try:
            await self.db.command("ping")
            return True
        except Exception as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return False

    async def close(self) -> None:
        self.client.close()
