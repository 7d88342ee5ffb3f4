import logging
from typing import Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from app.core.config import Settings
from app.ai_feature.errors import GenerationUnavailable

logger = logging.getLogger(__name__)

Message = Dict[str, str]


class GenerationBackend:
    """Text-in/text-out language model. Treated as untrusted and possibly down."""

    async def complete(
        self,
        messages: List[Message],
        *,
        temperature: float,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> str:
        raise NotImplementedError


class OpenAIBackend(GenerationBackend):
    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        timeout: float = 20.0,
    ):
        self.model = model
        # Deadlines are enforced by the callers, one retry at most here
        self.client = AsyncOpenAI(
            api_key=api_key, base_url=base_url, timeout=timeout, max_retries=1
        )

    async def complete(
        self,
        messages: List[Message],
        *,
        temperature: float,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> str:
        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            logger.warning(f"OpenAI request failed: {e}")
            raise GenerationUnavailable(str(e)) from e

        if not response.choices:
            raise GenerationUnavailable("Backend returned no choices")
        content = response.choices[0].message.content
        if not content or not content.strip():
            raise GenerationUnavailable("Backend returned an empty completion")
        return content


class DisabledBackend(GenerationBackend):
    """Used when no API key is configured; every call fails open upstream."""

    async def complete(self, messages, *, temperature, max_tokens=None, json_mode=False):
        raise GenerationUnavailable("No generation backend configured")


def build_backend(settings: Settings) -> GenerationBackend:
    if not settings.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY is not set, the assistant will answer in degraded mode")
        return DisabledBackend()
    return OpenAIBackend(
        api_key=settings.OPENAI_API_KEY,
        model=settings.OPENAI_MODEL,
        base_url=settings.OPENAI_BASE_URL,
        timeout=settings.GENERATION_TIMEOUT_SECONDS,
    )
