import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from .models import Conversation, Message


class ConversationStore(Protocol):
    async def upsert(self, conversation: Conversation) -> None: ...

    async def insert(self, conversation_id: str, message: Message) -> None: ...

    async def select(self, conversation_id: str) -> Optional[Conversation]: ...


class InMemoryStore:
    """
    Process-local store. Messages are an append-only log per conversation,
    so a regenerated answer is stored next to the one it replaced.
    """

    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, conversation: Conversation) -> None:
        async with self._lock:
            # Messages live in their own table
            stored = conversation.model_copy(deep=True, update={"messages": []})
            stored.updated_at = datetime.now(timezone.utc)
            self._conversations[conversation.id] = stored

    async def insert(self, conversation_id: str, message: Message) -> None:
        async with self._lock:
            self._messages.setdefault(conversation_id, []).append(message.model_copy(deep=True))

    async def select(self, conversation_id: str) -> Optional[Conversation]:
        async with self._lock:
            conv = self._conversations.get(conversation_id)
            msgs = self._messages.get(conversation_id, [])
            if conv is None and not msgs:
                return None
            if conv is None:
                conv = Conversation(id=conversation_id)
            ordered = sorted(msgs, key=lambda m: m.created_at)
            return conv.model_copy(deep=True, update={"messages": [m.model_copy(deep=True) for m in ordered]})
