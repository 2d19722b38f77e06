"""Tests for ClaudeClassifier.

The Anthropic client is a MagicMock; responses are built from simple
namespaces shaped like SDK content blocks.
"""

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import anthropic
import httpx
import pytest

from conftest import make_record
from mailfilter.classifier.claude_classifier import ClaudeClassifier, fallback_result
from mailfilter.classifier.prompts import build_user_message
from mailfilter.config_schema import ClassifierConfig
from mailfilter.core.rate_limiter import TokenBucket
from mailfilter.engine.models import Category

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _tool_response(data: dict[str, Any], name: str = "classify_email") -> SimpleNamespace:
    block = SimpleNamespace(type="tool_use", name=name, input=data)
    return SimpleNamespace(content=[block])


def _text_response(text: str) -> SimpleNamespace:
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


def _request() -> httpx.Request:
    return httpx.Request("POST", "https://api.anthropic.com/v1/messages")


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def settings() -> ClassifierConfig:
    return ClassifierConfig(always_important_domains=["example.edu"])


@pytest.fixture
def classifier(client: MagicMock, settings: ClassifierConfig) -> ClaudeClassifier:
    return ClaudeClassifier(client, settings, bucket=TokenBucket(rate=1000.0, capacity=100))


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestClassify:
    """Successful tool-use responses."""

    async def test_returns_tool_result(self, classifier: ClaudeClassifier, client: MagicMock):
        client.messages.create.return_value = _tool_response(
            {"category": "JUNK", "confidence": 0.93, "reason": "Promotional blast"}
        )

        result = await classifier.classify(make_record("a"))

        assert result.category == Category.JUNK
        assert result.confidence == pytest.approx(0.93)
        assert result.reason == "Promotional blast"

    async def test_forces_tool_choice(self, classifier: ClaudeClassifier, client: MagicMock):
        client.messages.create.return_value = _tool_response(
            {"category": "IMPORTANT", "confidence": 0.9, "reason": "Direct request"}
        )

        await classifier.classify(make_record("a"))

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": "classify_email"}
        assert kwargs["model"] == "claude-haiku-4-5-20251001"
        assert "SUBJECT: Subject a" in kwargs["messages"][0]["content"]

    @pytest.mark.parametrize("confidence", [1.5, -0.1, "high", None, True])
    async def test_invalid_confidence_defaults(
        self, confidence: Any, classifier: ClaudeClassifier, client: MagicMock
    ):
        client.messages.create.return_value = _tool_response(
            {"category": "REVIEW", "confidence": confidence, "reason": "r"}
        )

        result = await classifier.classify(make_record("a"))

        assert result.category == Category.REVIEW
        assert result.confidence == 0.5

    async def test_missing_reason(self, classifier: ClaudeClassifier, client: MagicMock):
        client.messages.create.return_value = _tool_response(
            {"category": "IMPORTANT", "confidence": 0.7}
        )
        result = await classifier.classify(make_record("a"))
        assert result.reason == "No reason provided"


class TestFallback:
    """Every failure resolves to REVIEW with confidence 0."""

    def _assert_fallback(self, result) -> None:
        assert result.category == Category.REVIEW
        assert result.confidence == 0.0
        assert result.reason.startswith("Classification error:")

    async def test_unknown_category(self, classifier: ClaudeClassifier, client: MagicMock):
        client.messages.create.return_value = _tool_response(
            {"category": "SPAM", "confidence": 0.9, "reason": "r"}
        )
        self._assert_fallback(await classifier.classify(make_record("a")))

    async def test_no_tool_call(self, classifier: ClaudeClassifier, client: MagicMock):
        client.messages.create.return_value = _text_response("I think it is junk")
        self._assert_fallback(await classifier.classify(make_record("a")))

    async def test_connection_error(self, classifier: ClaudeClassifier, client: MagicMock):
        client.messages.create.side_effect = anthropic.APIConnectionError(request=_request())
        self._assert_fallback(await classifier.classify(make_record("a")))

    async def test_rate_limit_error(self, classifier: ClaudeClassifier, client: MagicMock):
        client.messages.create.side_effect = anthropic.RateLimitError(
            "slow down", response=httpx.Response(429, request=_request()), body=None
        )
        result = await classifier.classify(make_record("a"))
        self._assert_fallback(result)
        assert "rate limited" in result.reason

    async def test_status_error(self, classifier: ClaudeClassifier, client: MagicMock):
        client.messages.create.side_effect = anthropic.InternalServerError(
            "overloaded", response=httpx.Response(529, request=_request()), body=None
        )
        result = await classifier.classify(make_record("a"))
        self._assert_fallback(result)
        assert "529" in result.reason

    async def test_unexpected_error(self, classifier: ClaudeClassifier, client: MagicMock):
        client.messages.create.side_effect = KeyError("content")
        self._assert_fallback(await classifier.classify(make_record("a")))

    def test_fallback_result(self):
        result = fallback_result("boom")
        assert result.reason == "Classification error: boom"


class TestDomainRule:
    """Configured sender domains skip the model."""

    @pytest.mark.parametrize(
        "sender",
        ["Dean <dean@example.edu>", "it@cs.example.edu", "BOSS@EXAMPLE.EDU"],
    )
    async def test_always_important(
        self, sender: str, classifier: ClaudeClassifier, client: MagicMock
    ):
        result = await classifier.classify(make_record("a", sender=sender))

        assert result.category == Category.IMPORTANT
        assert result.confidence == 1.0
        client.messages.create.assert_not_called()

    async def test_lookalike_domain_not_matched(
        self, classifier: ClaudeClassifier, client: MagicMock
    ):
        client.messages.create.return_value = _tool_response(
            {"category": "JUNK", "confidence": 0.9, "reason": "phishing"}
        )
        result = await classifier.classify(make_record("a", sender="x@notexample.edu"))
        assert result.category == Category.JUNK

    def test_domains_normalized(self):
        settings = ClassifierConfig(always_important_domains=[" @Example.COM ", ""])
        assert settings.always_important_domains == ["example.com"]


class TestPrompt:
    def test_body_preview_truncated(self):
        record = make_record("a")
        message = build_user_message(record, body_preview_chars=4)
        assert "BODY PREVIEW:\nBody" in message
        assert "Body of a" not in message

    def test_body_omitted_when_disabled(self):
        assert "BODY PREVIEW" not in build_user_message(make_record("a"), body_preview_chars=0)

    def test_is_ready(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        assert not ClaudeClassifier(None).is_ready()
        assert ClaudeClassifier(MagicMock()).is_ready()
