"""
Unit tests for the generation client
"""
import pytest

from convo_ai.errors import GenerationFailure, RateLimitExceeded
from convo_ai.services.generation import (
    GenerationClient,
    GenerationContext,
    GenerationEndpoint,
    GenerationOptions,
)
from convo_ai.services.prompt_builder import PromptMessage


def _follow_up_context(pattern="irregular"):
    return GenerationContext(
        previous_messages=[
            PromptMessage("user", "My cycle is 35 days"),
            PromptMessage("assistant", "That is on the longer side."),
        ],
        assessment_pattern=pattern,
    )


@pytest.mark.unit
class TestGenerationClient:
    """Test generation with quota and fallback"""

    def test_initial_turn_uses_single_completion(self, generation_client, endpoint):
        """Test first turn goes through complete"""
        result = generation_client.generate("Hi there", GenerationContext(assessment={"pattern": "regular"}))

        assert result.content == "Here is a thoughtful answer."
        assert result.is_fallback is False
        kind, prompt, _ = endpoint.calls[0]
        assert kind == "complete"
        assert "Pattern: regular" in prompt
        assert prompt.endswith("Hi there")

    def test_follow_up_uses_chat_with_history(self, generation_client, endpoint):
        """Test follow-up goes through chat with history"""
        generation_client.generate("And what about pain?", _follow_up_context())

        kind, history, _ = endpoint.calls[0]
        assert kind == "chat"
        assert history[0].role == "system"
        assert [m.content for m in history[1:]] == [
            "My cycle is 35 days",
            "That is on the longer side.",
            "And what about pain?",
        ]

    def test_success_metadata(self, generation_client):
        """Test success metadata"""
        result = generation_client.generate("Hi", GenerationContext())

        assert result.metadata["model"] == "fake-model"
        assert result.metadata["tokens_used"] == 42
        assert result.metadata["confidence"] == 0.9
        assert result.metadata["is_initial"] is True
        assert result.metadata["response_time"] >= 0

    def test_success_increments_quota(self, generation_client, rate_limiter):
        """Test success spends one call"""
        generation_client.generate("Hi", GenerationContext())
        assert rate_limiter.get_usage_stats()["callsToday"] == 1

    def test_options_are_passed_through(self, generation_client, endpoint):
        """Test options reach the endpoint"""
        options = GenerationOptions.from_dict({"model": "other", "temperature": 0.1, "maxTokens": 100})
        generation_client.generate("Hi", GenerationContext(options=options))

        _, _, passed = endpoint.calls[0]
        assert passed.model == "other"
        assert passed.max_tokens == 100

    def test_failure_returns_fallback(self, rate_limiter, make_endpoint):
        """Test failure returns a fallback reply"""
        client = GenerationClient(make_endpoint(fail_times=-1), rate_limiter)

        result = client.generate("I'm worried about this", _follow_up_context())

        assert result.is_fallback is True
        assert result.metadata["model"] == "fallback"
        assert result.metadata["confidence"] == 0.5
        assert result.metadata["tokens_used"] == 0
        assert result.metadata["fallback_kind"] == "concern"
        assert "irregular assessment" in result.content

    def test_failure_does_not_spend_quota(self, rate_limiter, make_endpoint):
        """Test failure does not spend quota"""
        client = GenerationClient(make_endpoint(fail_times=-1), rate_limiter)
        client.generate("Hi", GenerationContext())

        assert rate_limiter.get_usage_stats()["callsToday"] == 0

    def test_empty_reply_is_a_failure(self, rate_limiter, make_endpoint):
        """Test empty reply counts as a failure"""
        client = GenerationClient(make_endpoint(reply="   "), rate_limiter)
        result = client.generate("Hi", GenerationContext())

        assert result.is_fallback is True
        assert result.content.startswith("Hello!")

    def test_failure_raises_when_fallback_disabled(self, rate_limiter, make_endpoint):
        """Test failure raises when fallback is off"""
        client = GenerationClient(make_endpoint(fail_times=-1), rate_limiter)

        with pytest.raises(GenerationFailure):
            client.generate("Hi", GenerationContext(), allow_fallback=False)

    def test_exhausted_quota_makes_no_call(self, generation_client, endpoint, rate_limiter):
        """Test exhausted quota makes no endpoint call"""
        for _ in range(10):
            rate_limiter.increment_call_count()

        with pytest.raises(RateLimitExceeded) as exc_info:
            generation_client.generate("Hi", GenerationContext())

        assert endpoint.calls == []
        assert exc_info.value.reset_at is not None


@pytest.mark.unit
class TestGenerationEndpoint:
    """Test the endpoint interface"""

    def test_interface_cannot_be_instantiated(self):
        """Test the bare endpoint interface is abstract"""
        with pytest.raises(TypeError):
            GenerationEndpoint()

    def test_partial_endpoint_cannot_be_instantiated(self):
        """Test an endpoint must provide both complete and chat"""

        class CompleteOnly(GenerationEndpoint):
            def complete(self, prompt, options):
                return None

        with pytest.raises(TypeError):
            CompleteOnly()
