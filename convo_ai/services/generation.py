"""
Generation client.

Consults the rate limiter, calls the external chat model, and degrades to a
deterministic fallback when the call fails.
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import SecretStr

from convo_ai.errors import GenerationFailure, RateLimitExceeded
from convo_ai.services import fallback
from convo_ai.services.prompt_builder import (
    DEFAULT_MAX_HISTORY,
    PromptMessage,
    analyze_conversation,
    build_follow_up_prompt,
    build_initial_prompt,
)
from convo_ai.services.rate_limiter import RateLimiter
from convo_ai.utils.logger import get_logger

logger = get_logger("generation")

SUCCESS_CONFIDENCE = 0.9
FALLBACK_CONFIDENCE = 0.5
FALLBACK_TOKENS_USED = 0


@dataclass
class GenerationOptions:
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "GenerationOptions":
        data = data or {}
        return cls(
            model=data.get("model"),
            temperature=data.get("temperature"),
            max_tokens=data.get("max_tokens", data.get("maxTokens")),
        )


@dataclass
class GenerationContext:
    """What the model needs besides the new user prompt"""
    previous_messages: Sequence[Any] = field(default_factory=list)
    assessment: Optional[dict] = None
    assessment_pattern: Optional[str] = None
    options: GenerationOptions = field(default_factory=GenerationOptions)

    @property
    def is_initial(self) -> bool:
        return len(self.previous_messages) == 0


@dataclass
class GenerationResult:
    content: str
    metadata: Dict[str, Any]
    is_fallback: bool = False


@dataclass
class EndpointReply:
    text: str
    tokens_used: int = 0
    model: Optional[str] = None


class GenerationEndpoint(ABC):
    """Single external model: one-shot completion and multi-turn chat"""

    @abstractmethod
    def complete(self, prompt: str, options: GenerationOptions) -> EndpointReply:
        """Answer a single prompt"""

    @abstractmethod
    def chat(self, history: List[PromptMessage], options: GenerationOptions) -> EndpointReply:
        """Answer the last turn of a chat history"""


class LangChainChatEndpoint(GenerationEndpoint):
    """Generation endpoint backed by an OpenAI chat model"""

    def __init__(
        self,
        api_key: str,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 2048,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout

    def _llm(self, options: GenerationOptions) -> ChatOpenAI:
        if not self.api_key:
            raise GenerationFailure("OPENAI_API_KEY is not configured")
        return ChatOpenAI(
            model=options.model or self.model,
            api_key=SecretStr(self.api_key),
            temperature=self.temperature if options.temperature is None else options.temperature,
            max_tokens=options.max_tokens or self.max_tokens,
            timeout=self.timeout,
            max_retries=0,  # retries belong to the job queue
        )

    @staticmethod
    def _to_langchain(message: PromptMessage):
        if message.role == "system":
            return SystemMessage(content=message.content)
        if message.role == "assistant":
            return AIMessage(content=message.content)
        return HumanMessage(content=message.content)

    def _invoke(self, messages: list, options: GenerationOptions) -> EndpointReply:
        llm = self._llm(options)
        response = llm.invoke(messages)

        content = response.content
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part)
                for part in content
            )
        usage = response.usage_metadata or {}
        return EndpointReply(
            text=content,
            tokens_used=usage.get("total_tokens", 0),
            model=llm.model_name,
        )

    def complete(self, prompt: str, options: GenerationOptions) -> EndpointReply:
        return self._invoke([HumanMessage(content=prompt)], options)

    def chat(self, history: List[PromptMessage], options: GenerationOptions) -> EndpointReply:
        return self._invoke([self._to_langchain(m) for m in history], options)


class GenerationClient:
    """Rate-limited access to the generation endpoint with fallback replies"""

    def __init__(
        self,
        endpoint: GenerationEndpoint,
        rate_limiter: RateLimiter,
        default_model: str = "gpt-4.1-mini",
        max_history: int = DEFAULT_MAX_HISTORY,
    ):
        self.endpoint = endpoint
        self.rate_limiter = rate_limiter
        self.default_model = default_model
        self.max_history = max_history

    def generate(
        self,
        prompt: str,
        context: Optional[GenerationContext] = None,
        allow_fallback: bool = True,
    ) -> GenerationResult:
        """
        Generate a reply to the user's prompt.

        Args:
            prompt: The new user message
            context: Prior messages, assessment snapshot and model options
            allow_fallback: When False, raise GenerationFailure instead of
                returning a canned reply

        Returns:
            GenerationResult with content and metadata

        Raises:
            RateLimitExceeded: the daily quota is used up; no call was made
            GenerationFailure: the call failed and allow_fallback is False
        """
        context = context or GenerationContext()

        if not self.rate_limiter.can_make_call():
            raise RateLimitExceeded(
                self.rate_limiter.limit_exceeded_message(),
                reset_at=self.rate_limiter.next_reset_at(),
            )

        is_initial = context.is_initial
        logger.info(f"Generating {'initial' if is_initial else 'follow-up'} response")
        started = time.monotonic()

        try:
            if is_initial:
                system_prompt = build_initial_prompt(context.assessment)
                reply = self.endpoint.complete(f"{system_prompt}\n\n{prompt}", context.options)
            else:
                history = build_follow_up_prompt(
                    context.assessment_pattern, list(context.previous_messages), self.max_history
                )
                history.append(PromptMessage(role="user", content=prompt))
                reply = self.endpoint.chat(history, context.options)

            if reply is None or not (reply.text or "").strip():
                raise GenerationFailure("Generation endpoint returned an empty response")
        except Exception as e:
            logger.warning(f"Generation failed, using fallback response: {e}")
            if not allow_fallback:
                if isinstance(e, GenerationFailure):
                    raise
                raise GenerationFailure(str(e)) from e
            return self._fallback(prompt, context)

        self.rate_limiter.increment_call_count()

        metadata = self._base_metadata(context)
        metadata.update({
            "model": reply.model or context.options.model or self.default_model,
            "tokens_used": reply.tokens_used,
            "response_time": round((time.monotonic() - started) * 1000),
            "confidence": SUCCESS_CONFIDENCE,
            "is_fallback": False,
        })
        return GenerationResult(content=reply.text, metadata=metadata)

    def _base_metadata(self, context: GenerationContext) -> dict:
        metadata = {
            "is_initial": context.is_initial,
            "is_follow_up": not context.is_initial,
            "assessment_pattern": context.assessment_pattern,
            "conversation_length": len(context.previous_messages),
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }
        if not context.is_initial:
            patterns = analyze_conversation(context.previous_messages)
            metadata["conversation_patterns"] = {
                "summary": patterns.summary,
                "topics": patterns.topics,
                "sentiment": patterns.sentiment,
                "message_count": patterns.message_count,
            }
        return metadata

    def _fallback(self, prompt: str, context: GenerationContext) -> GenerationResult:
        if context.is_initial:
            content = fallback.initial_fallback(context.assessment)
        else:
            content = fallback.follow_up_fallback(prompt, context.assessment_pattern)

        metadata = self._base_metadata(context)
        metadata.update({
            "model": "fallback",
            "tokens_used": FALLBACK_TOKENS_USED,
            "response_time": 0,
            "confidence": FALLBACK_CONFIDENCE,
            "is_fallback": True,
            "fallback_kind": None if context.is_initial else fallback.classify(prompt).value,
        })
        return GenerationResult(content=content, metadata=metadata, is_fallback=True)


def create_generation_client(settings, rate_limiter: RateLimiter) -> GenerationClient:
    endpoint = LangChainChatEndpoint(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        temperature=settings.generation_temperature,
        max_tokens=settings.generation_max_tokens,
        timeout=settings.generation_timeout,
    )
    return GenerationClient(
        endpoint,
        rate_limiter,
        default_model=settings.openai_model,
        max_history=settings.max_history,
    )
