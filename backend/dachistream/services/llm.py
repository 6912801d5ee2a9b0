"""Reply generation through OpenRouter's chat-completions endpoint."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from ..storage.base import ChatMessage, StreamSettings

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"


class ReplyGenerator:
    """Turn a selected chat message plus its context into one short reply."""

    def __init__(
        self,
        api_key: str,
        system_prompt: str,
        http_referer: str = "http://localhost",
        url: str = OPENROUTER_URL,
        timeout_secs: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.system_prompt = system_prompt
        self.http_referer = http_referer
        self.url = url
        self.timeout_secs = timeout_secs
        self._transport = transport

    def build_messages(self, message: ChatMessage, context: str, settings: StreamSettings) -> List[Dict[str, str]]:
        style = (
            f"Personality: {settings.ai_personality}. Energy: {settings.dachipool_energy}. "
            f"Keep the reply under {settings.dachipool_max_chars} characters."
        )
        user_parts = [context] if context else []
        user_parts.append(f"VIEWER MESSAGE ({message.username}): {message.message}")
        return [
            {"role": "system", "content": f"{self.system_prompt}{style}"},
            {"role": "user", "content": "\n\n".join(user_parts)},
        ]

    async def generate(self, message: ChatMessage, context: str, settings: StreamSettings) -> Optional[str]:
        """Return the reply text, or None when the model produced nothing."""
        payload: Dict[str, Any] = {
            "model": settings.dachipool_ai_model,
            "temperature": settings.dachipool_ai_temp / 10,
            "messages": self.build_messages(message, context, settings),
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "HTTP-Referer": self.http_referer}

        async with httpx.AsyncClient(timeout=self.timeout_secs, transport=self._transport) as client:
            r = await client.post(self.url, json=payload, headers=headers)
            r.raise_for_status()
            data = r.json()

        choices = data.get("choices") or []
        if not choices:
            logger.warning("Reply generator returned no choices")
            return None
        text = str((choices[0].get("message") or {}).get("content") or "").strip()
        if not text:
            return None
        return text[: settings.dachipool_max_chars]
