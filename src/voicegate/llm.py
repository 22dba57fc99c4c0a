"""
Response generation through an OpenAI-compatible chat API.

Groq (default) and OpenAI share one code path: Groq is reached through the
OpenAI SDK with its own base URL. Each call keeps a short rolling history so
follow-up questions make sense; the history is dropped when the call ends.
"""

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Deque, Dict, List, Optional

import httpx
import structlog
from openai import AsyncOpenAI

from src.voicegate.config import get_config

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"

FALLBACK_REPLY = "I'm sorry, I'm having trouble right now. Could you please repeat that?"

# Replies are spoken, so keep them short
MAX_REPLY_TOKENS = 256


@dataclass
class LLMResponse:
    """A finished reply and how long it took."""
    text: str
    first_token_ms: float = 0.0
    total_ms: float = 0.0
    tokens_generated: int = 0


class ConversationHistory:
    """
    Last `max_turns` exchanges of one call, oldest first.

    One exchange is a caller message plus the assistant's reply.
    """

    def __init__(self, max_turns: int = 10):
        self.max_turns = max_turns
        self._messages: Deque[Dict[str, str]] = deque(maxlen=max_turns * 2)

    def add_user_message(self, content: str) -> None:
        self._messages.append({"role": "user", "content": content})

    def add_assistant_message(self, content: str) -> None:
        self._messages.append({"role": "assistant", "content": content})

    def get_messages(self) -> List[Dict[str, str]]:
        return [dict(m) for m in self._messages]

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)


def get_system_prompt(assistant_name: str) -> str:
    """Persona line for a phone assistant."""
    return (
        f"You are the {assistant_name} assistant answering a phone call. "
        "Reply in one to three short spoken sentences without lists or markup. "
        "If you did not understand the caller, ask them to clarify. "
        "Callers can press 1 on their keypad to make a booking."
    )


async def validate_groq_model(api_key: str, model_name: str) -> bool:
    """
    Check that `model_name` is served by Groq before accepting calls.

    Raises:
        SystemExit: when Groq is unreachable, rejects the key, or does not list the model
    """
    logger.info("Checking Groq model", model=model_name)

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(
                f"{GROQ_BASE_URL}/models",
                headers={"Authorization": f"Bearer {api_key}"},
            )
    except httpx.RequestError as e:
        logger.error("Groq API unreachable", error=str(e))
        raise SystemExit(f"Could not reach the Groq API ({e}). Check the network and GROQ_API_KEY.")

    if response.status_code != 200:
        logger.error("Groq model listing failed", status_code=response.status_code, body=response.text[:200])
        raise SystemExit(
            f"Groq returned HTTP {response.status_code} when listing models. Check GROQ_API_KEY."
        )

    served = sorted(m.get("id") for m in response.json().get("data", []) if m.get("id"))
    if model_name not in served:
        logger.error("Groq model not served", requested_model=model_name, served=served[:10])
        raise SystemExit(
            f"GROQ_MODEL '{model_name}' is not available. Some served models: {', '.join(served[:10])}"
        )

    logger.info("Groq model available", model=model_name)
    return True


class ResponseGenerator:
    """
    Chat completion client shared by all calls.

    Each call sid gets its own `ConversationHistory`; `forget()` drops it when
    the call ends.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self.provider = (self.config.llm_provider or "groq").strip().lower()
        if self.provider == "openai":
            self.model = self.config.openai_model
            self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)
        else:
            self.model = self.config.groq_model
            self._client = client or AsyncOpenAI(api_key=self.config.groq_api_key, base_url=GROQ_BASE_URL)

        self._histories: Dict[str, ConversationHistory] = {}

    def history(self, call_sid: str) -> ConversationHistory:
        history = self._histories.get(call_sid)
        if history is None:
            history = self._histories[call_sid] = ConversationHistory(max_turns=self.config.max_history_turns)
        return history

    def forget(self, call_sid: str) -> None:
        self._histories.pop(call_sid, None)

    async def validate_model(self) -> bool:
        if self.provider != "groq":
            return True
        return await validate_groq_model(self.config.groq_api_key, self.model)

    async def generate_streaming(
        self,
        call_sid: str,
        user_message: str,
        assistant_name: str = "AI",
    ) -> AsyncGenerator[str, None]:
        """
        Stream a reply to `user_message`.

        On API failure a short spoken apology is yielded instead.
        """
        history = self.history(call_sid)
        messages = [{"role": "system", "content": get_system_prompt(assistant_name)}]
        messages += history.get_messages()
        messages.append({"role": "user", "content": user_message})
        history.add_user_message(user_message)

        parts: List[str] = []
        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
                max_tokens=MAX_REPLY_TOKENS,
                temperature=0.7,
            )
            async for chunk in stream:
                delta = chunk.choices[0].delta.content if chunk.choices else None
                if delta:
                    parts.append(delta)
                    yield delta
        except Exception as e:
            logger.error("LLM generation failed", call_sid=call_sid, provider=self.provider, error=str(e))
            history.add_assistant_message(FALLBACK_REPLY)
            yield FALLBACK_REPLY
            return

        history.add_assistant_message("".join(parts))

    async def generate(self, call_sid: str, user_message: str, assistant_name: str = "AI") -> LLMResponse:
        """Collect a whole reply."""
        started = time.perf_counter()
        first_token_ms = 0.0
        parts: List[str] = []

        async for piece in self.generate_streaming(call_sid, user_message, assistant_name=assistant_name):
            if not parts:
                first_token_ms = (time.perf_counter() - started) * 1000
            parts.append(piece)

        total_ms = (time.perf_counter() - started) * 1000
        text = "".join(parts).strip()
        logger.info(
            "LLM reply generated",
            call_sid=call_sid,
            first_token_ms=round(first_token_ms, 1),
            total_ms=round(total_ms, 1),
            chars=len(text),
        )
        return LLMResponse(
            text=text,
            first_token_ms=first_token_ms,
            total_ms=total_ms,
            tokens_generated=len(parts),
        )
