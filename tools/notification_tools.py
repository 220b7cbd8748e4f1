from __future__ import annotations

from typing import Any, Dict, List

from models.schemas import utcnow


class NotificationTools:
    """Outbound notices to users and conversations.

    Delivery itself belongs to the host application; this records what would be
    delivered so the rest of the service (and tests) can observe it.
    """

    def __init__(self) -> None:
        self.sent: List[dict] = []

    async def send_push(self, user_id: str, title: str, body: str, kind: str = "") -> Dict[str, object]:
        payload = {"channel": "push", "user_id": user_id, "title": title, "body": body, "kind": kind, "status": "SENT", "ts": utcnow().isoformat()}
        self.sent.append(payload)
        return payload

    async def post_conversation_message(
        self,
        conversation_id: str,
        message: str,
        kind: str,
        metadata: Dict[str, Any] | None = None,
    ) -> Dict[str, object]:
        payload = {
            "channel": "conversation",
            "conversation_id": conversation_id,
            "message": message,
            "kind": kind,
            "metadata": metadata or {},
            "status": "SENT",
            "ts": utcnow().isoformat(),
        }
        self.sent.append(payload)
        return payload

    async def notify_user(
        self,
        user_id: str,
        conversation_id: str,
        kind: str,
        message: str,
        metadata: Dict[str, Any] | None = None,
    ) -> List[dict]:
        outputs = [await self.post_conversation_message(conversation_id, message, kind, metadata)]
        outputs.append(await self.send_push(user_id, "Professional help", message, kind=kind))
        return outputs

    def sent_of_kind(self, kind: str, channel: str = "conversation") -> List[dict]:
        return [p for p in self.sent if p.get("kind") == kind and p.get("channel") == channel]
