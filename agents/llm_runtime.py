from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

import httpx

from models.schemas import ConversationMessage
from settings import SETTINGS

logger = logging.getLogger(__name__)

DEFAULT_ALTERNATIVE_SUGGESTION = (
    "I notice you might benefit from speaking with a different professional. "
    "Would you like me to find another professional who might be a better match?"
)


@dataclass
class LLMResult:
    text: str
    provider: str
    model: str
    raw: Dict[str, Any]


class LLMRuntime:
    """Text generation for hand-off summaries and suggestions, with a deterministic local fallback."""

    def __init__(self, provider: str | None = None, model: str | None = None) -> None:
        self.provider = (provider or SETTINGS.default_llm_provider or "heuristic").lower()
        self.model = model or SETTINGS.default_model or "heuristic-local"

    def available(self) -> bool:
        if self.provider == "anthropic":
            return bool(SETTINGS.anthropic_api_key)
        if self.provider == "openai":
            return bool(SETTINGS.openai_api_key)
        return False

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        context: Dict[str, Any] | None = None,
        max_tokens: int = 300,
    ) -> LLMResult:
        context = context or {}
        if self.available():
            try:
                if self.provider == "openai":
                    return await self._generate_openai(system_prompt, user_prompt, max_tokens)
                if self.provider == "anthropic":
                    return await self._generate_anthropic(system_prompt, user_prompt, max_tokens)
            except (httpx.HTTPError, ValueError) as exc:  # pragma: no cover - network/provider variability
                logger.warning("llm_generate_failed", extra={"provider": self.provider, "error": repr(exc)})
                context = {**context, "_remote_error": str(exc)}

        return LLMResult(
            text=self._heuristic_text(user_prompt, context),
            provider="heuristic",
            model="heuristic-local",
            raw={"fallback": True, "remote_error": context.get("_remote_error")},
        )

    async def summarize_conversation(self, messages: Iterable[ConversationMessage]) -> str:
        turns = [m for m in messages if m.content.strip()]
        if not turns:
            return ""
        transcript = "\n".join(f"{m.role.value}: {m.content.strip()}" for m in turns)[:4000]
        result = await self.generate(
            system_prompt=(
                "Summarize this conversation for a human professional who is about to join it. "
                "Three sentences at most. State the user's situation and what they need; no advice."
            ),
            user_prompt=transcript,
            context={"task": "session_summary", "turns": [m.content for m in turns if m.role.value == "user"]},
        )
        return result.text.strip()

    async def suggest_alternative(self, conversation_text: str) -> str:
        result = await self.generate(
            system_prompt=(
                "You are an assistant that helps detect if a user might benefit from speaking with a different "
                "professional. Respond with a brief, empathetic suggestion."
            ),
            user_prompt=(
                "Based on this conversation, should we suggest connecting with a different professional? "
                f"Conversation: {conversation_text[:500]}"
            ),
            context={"task": "non_agreement_suggestion"},
            max_tokens=100,
        )
        return result.text.strip()

    async def _generate_openai(self, system_prompt: str, user_prompt: str, max_tokens: int) -> LLMResult:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": 0.7,
            "max_tokens": max_tokens,
        }
        async with httpx.AsyncClient(timeout=SETTINGS.llm_timeout_seconds) as client:
            resp = await client.post(
                f"{SETTINGS.openai_base_url.rstrip('/')}/chat/completions",
                headers={"Authorization": f"Bearer {SETTINGS.openai_api_key}"},
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()
        return LLMResult(text=self._extract_chat_completion_text(data), provider="openai", model=self.model, raw=data)

    async def _generate_anthropic(self, system_prompt: str, user_prompt: str, max_tokens: int) -> LLMResult:
        async with httpx.AsyncClient(timeout=SETTINGS.llm_timeout_seconds) as client:
            resp = await client.post(
                f"{SETTINGS.anthropic_base_url.rstrip('/')}/messages",
                headers={
                    "x-api-key": SETTINGS.anthropic_api_key,
                    "anthropic-version": "2023-06-01",
                    "content-type": "application/json",
                },
                json={
                    "model": self.model,
                    "max_tokens": max_tokens,
                    "temperature": 0.7,
                    "system": system_prompt,
                    "messages": [{"role": "user", "content": user_prompt}],
                },
            )
            resp.raise_for_status()
            data = resp.json()
        text_parts: List[str] = []
        for block in data.get("content", []):
            if isinstance(block, dict) and block.get("type") == "text":
                text_parts.append(str(block.get("text", "")))
        return LLMResult(text="\n".join(t for t in text_parts if t).strip(), provider="anthropic", model=self.model, raw=data)

    def _extract_chat_completion_text(self, data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") if isinstance(choices[0], dict) else {}
        content = message.get("content", "") if isinstance(message, dict) else ""
        if isinstance(content, str):
            return content.strip()
        return json.dumps(content, ensure_ascii=True)

    def _heuristic_text(self, text: str, context: Dict[str, Any]) -> str:
        task = context.get("task")
        if task == "non_agreement_suggestion":
            return DEFAULT_ALTERNATIVE_SUGGESTION
        if task == "session_summary":
            user_turns = [str(t).strip() for t in context.get("turns") or [] if str(t).strip()]
            if not user_turns:
                return "The user asked to speak with a professional."
            latest = user_turns[-1][:240]
            return f"The user has sent {len(user_turns)} message(s) and asked for professional help. Most recent: \"{latest}\""
        return text.strip()[:240]
