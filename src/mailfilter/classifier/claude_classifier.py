"""Claude classifier using forced tool use for structured output.

classify() never raises. Any failure (API error, missing tool call,
unknown category) resolves to REVIEW with confidence 0 and a reason that
starts with "Classification error:", so a classifier outage demotes mail
instead of losing it.

Transient API errors (429, 5xx, network) are retried by the Anthropic SDK
(max_retries=3). Requests are also paced by the ``claude_api`` token bucket.

Usage:
    classifier = ClaudeClassifier(anthropic.Anthropic(max_retries=3), config.classifier)
    result = await classifier.classify(record)
"""

import asyncio
import os
import time
from email.utils import parseaddr
from typing import Any

import anthropic

from mailfilter.classifier.prompts import CLASSIFY_EMAIL_TOOL, SYSTEM_PROMPT, build_user_message
from mailfilter.config_schema import ClassifierConfig
from mailfilter.core.errors import ClassificationError, RateLimitExceeded
from mailfilter.core.logging import get_logger
from mailfilter.core.rate_limiter import TokenBucket, get_bucket
from mailfilter.engine.models import Category, ClassificationResult, MessageRecord

logger = get_logger(__name__)

CLAUDE_RATE = 2.0
CLAUDE_CAPACITY = 2
DEFAULT_CONFIDENCE = 0.5


def fallback_result(detail: str) -> ClassificationResult:
    return ClassificationResult(
        category=Category.REVIEW,
        confidence=0.0,
        reason=f"Classification error: {detail}",
    )


class ClaudeClassifier:
    """Classifies a MessageRecord with Claude.

    Attributes:
        settings: Model, token and prompt settings
    """

    def __init__(
        self,
        client: anthropic.Anthropic | None,
        settings: ClassifierConfig | None = None,
        bucket: TokenBucket | None = None,
    ):
        self._client = client
        self.settings = settings or ClassifierConfig()
        self._bucket = bucket or get_bucket(
            "claude_api", rate=CLAUDE_RATE, capacity=CLAUDE_CAPACITY
        )

    def is_ready(self) -> bool:
        return self._client is not None or bool(os.environ.get("ANTHROPIC_API_KEY"))

    def _client_or_create(self) -> anthropic.Anthropic:
        if self._client is None:
            # Raises anthropic errors if no API key is configured
            self._client = anthropic.Anthropic(max_retries=3)
        return self._client

    def _always_important(self, sender: str) -> str | None:
        address = parseaddr(sender)[1].lower()
        if "@" not in address:
            return None
        domain = address.rsplit("@", 1)[1]
        for allowed in self.settings.always_important_domains:
            if domain == allowed or domain.endswith("." + allowed):
                return allowed
        return None

    async def classify(self, message: MessageRecord) -> ClassificationResult:
        domain = self._always_important(message.sender)
        if domain:
            logger.debug("classified_by_domain_rule", domain=domain)
            return ClassificationResult(
                category=Category.IMPORTANT,
                confidence=1.0,
                reason=f"Sender domain {domain} is always important",
            )

        start_time = time.monotonic()
        try:
            await self._bucket.consume()
            response = await asyncio.to_thread(
                self._client_or_create().messages.create,
                model=self.settings.model,
                max_tokens=self.settings.max_tokens,
                temperature=0.1,
                system=SYSTEM_PROMPT,
                messages=[
                    {
                        "role": "user",
                        "content": build_user_message(message, self.settings.body_preview_chars),
                    }
                ],
                tools=[CLASSIFY_EMAIL_TOOL],
                tool_choice={"type": "tool", "name": "classify_email"},
            )
            result = _build_result(_extract_tool_call(response))
        except ClassificationError as e:
            logger.warning("classification_invalid_response", error=str(e))
            return fallback_result(str(e))
        except anthropic.RateLimitError as e:
            logger.error("classification_rate_limited", error=str(e))
            return fallback_result(f"rate limited: {e}")
        except anthropic.APIConnectionError as e:
            logger.error("classification_connection_error", error=str(e))
            return fallback_result(f"connection error: {e}")
        except anthropic.APIStatusError as e:
            logger.error("classification_api_error", status_code=e.status_code, error=str(e))
            return fallback_result(f"API status {e.status_code}: {e.message}")
        except (anthropic.AnthropicError, RateLimitExceeded) as e:
            logger.error("classification_failed", error=str(e), error_type=type(e).__name__)
            return fallback_result(str(e))
        except Exception as e:
            logger.exception("classification_unexpected_error", error_type=type(e).__name__)
            return fallback_result(str(e))

        logger.debug(
            "classification_complete",
            category=result.category.value,
            confidence=result.confidence,
            duration_ms=int((time.monotonic() - start_time) * 1000),
        )
        return result


def _extract_tool_call(response: anthropic.types.Message) -> dict[str, Any]:
    for block in response.content:
        if block.type == "tool_use" and block.name == "classify_email":
            return block.input
    raise ClassificationError("No classify_email tool call in response")


def _build_result(data: dict[str, Any]) -> ClassificationResult:
    """Validate tool input. Unknown categories fail; a bad confidence becomes 0.5."""
    raw_category = data.get("category")
    try:
        category = Category(raw_category)
    except ValueError:
        raise ClassificationError(f"Invalid classification: {raw_category}") from None

    confidence = data.get("confidence")
    if (
        isinstance(confidence, bool)
        or not isinstance(confidence, int | float)
        or not 0.0 <= confidence <= 1.0
    ):
        confidence = DEFAULT_CONFIDENCE

    reason = data.get("reason") or "No reason provided"
    return ClassificationResult(category=category, confidence=float(confidence), reason=str(reason))
