from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from memory.json_store import JsonFileStore
from models.schemas import ConversationMessage, MessageRole
from settings import SETTINGS


class ConversationLog(JsonFileStore):
    def __init__(self, path: str | None = None, max_messages_per_conversation: int = 200) -> None:
        super().__init__(SETTINGS.conversation_store_path if path is None else path)
        self.max_messages_per_conversation = max_messages_per_conversation
        self._messages: Dict[str, List[ConversationMessage]] = {}
        self._load()

    def _load(self) -> None:
        payload = self._read_payload()
        for conversation_id, rows in dict(payload.get("conversations", {})).items():
            if not isinstance(rows, list):
                continue
            messages: List[ConversationMessage] = []
            for raw in rows:
                try:
                    messages.append(ConversationMessage.model_validate(raw))
                except ValueError:
                    continue
            self._messages[str(conversation_id)] = messages

    def _persist(self) -> None:
        self._write_payload(
            {"conversations": {cid: [m.model_dump(mode="json") for m in rows] for cid, rows in self._messages.items()}}
        )

    async def append(self, message: ConversationMessage) -> ConversationMessage:
        with self._lock:
            rows = [*self._messages.get(message.conversation_id, []), message]
            self._commit((self._messages, message.conversation_id, rows[-self.max_messages_per_conversation :]))
            return message

    async def recent(self, conversation_id: str, limit: int = 10) -> List[ConversationMessage]:
        with self._lock:
            rows = list(self._messages.get(conversation_id, []))
        rows.sort(key=lambda m: m.created_at)
        return rows[-limit:] if limit else rows

    async def last_message_at(
        self,
        conversation_id: str,
        role: MessageRole | None = None,
        sender_id: str | None = None,
    ) -> Optional[datetime]:
        with self._lock:
            stamps = [
                m.created_at
                for m in self._messages.get(conversation_id, [])
                if (role is None or m.role == role) and (sender_id is None or m.sender_id == sender_id)
            ]
        return max(stamps) if stamps else None
