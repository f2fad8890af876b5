"""Chat collaborator: existence/ownership and prior message history.

In-memory repository keeps at most ``MAX_MESSAGES`` turns per chat; the
compare path only ever reads the most recent ``history_limit`` of them.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, List, Protocol

from core import metrics
from core.llm.types import ChatTurn

from .models import utcnow

MAX_MESSAGES = 200
TITLE_MAX_CHARS = 80


@dataclass(slots=True)
class Chat:
    id: str
    user_id: str
    title: str
    visibility: str = "private"
    created_at: datetime = field(default_factory=utcnow)


def title_from_prompt(prompt: str, limit: int = TITLE_MAX_CHARS) -> str:
    first = next((ln.strip() for ln in prompt.splitlines() if ln.strip()), "")
    if not first:
        return "New chat"
    if len(first) <= limit:
        return first
    return first[: limit - 1].rstrip() + "…"


class ChatRepository(Protocol):
    async def get_chat(self, chat_id: str) -> Chat | None: ...

    async def save_chat(self, chat: Chat) -> None: ...

    async def get_messages(self, chat_id: str) -> List[ChatTurn]: ...


class InMemoryChatRepository:
    def __init__(self) -> None:
        self._chats: Dict[str, Chat] = {}
        self._messages: Dict[str, Deque[ChatTurn]] = {}

    async def get_chat(self, chat_id: str) -> Chat | None:
        return self._chats.get(chat_id)

    async def save_chat(self, chat: Chat) -> None:
        self._chats[chat.id] = chat

    async def get_messages(self, chat_id: str) -> List[ChatTurn]:
        return list(self._messages.get(chat_id, ()))

    def add_message(self, chat_id: str, role: str, content: str) -> None:
        q = self._messages.get(chat_id)
        if q is None:
            q = deque(maxlen=MAX_MESSAGES)
            self._messages[chat_id] = q
        q.append(ChatTurn(role=role, content=content))
        metrics.inc("chat_messages_total", {"role": role})


__all__ = [
    "Chat",
    "ChatRepository",
    "InMemoryChatRepository",
    "title_from_prompt",
]
