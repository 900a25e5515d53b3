from __future__ import annotations

import logging
from typing import Any, Protocol

from anthropic import AsyncAnthropic
from pydantic import BaseModel, Field, ValidationError

from engagement.core.errors import TransientDependencyError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a medical response classifier for a headache tracking system.

The patient was asked "How's your head today?" and given a 1-5 scale:

1 = Didn't notice my head today (headache-free)
2 = Noticed it but didn't change what I did (present, no disability)
3 = Had to push through some things (reduced function)
4 = Had to skip or modify something (activity modification)
5 = Couldn't function (total disability)

Classify the patient's response. Key rules:
- If the patient mentions ANY head symptoms, never assign Level 1
- Default ambiguous "fine/okay" responses to Level 2, not Level 1
- Focus on FUNCTIONAL impact, not pain severity
- "Pushed through" = Level 3. "Cancelled/skipped" = Level 4
- "In bed" or "couldn't do anything" = Level 5
- If the patient embeds a number (e.g., "my head was a 3 today"), extract that number
- Acute medication use with continued activity = at least Level 3
- If a headache resolved partway through the day, consider impact on the full day

Always use the classify_response tool to return your classification."""

CLASSIFY_TOOL: dict[str, Any] = {
    "name": "classify_response",
    "description": "Classify a patient headache response onto the 1-5 functional impact scale",
    "input_schema": {
        "type": "object",
        "properties": {
            "level": {
                "type": "integer",
                "minimum": 1,
                "maximum": 5,
                "description": "Functional impact level (1-5)",
            },
            "confidence": {
                "type": "number",
                "minimum": 0.0,
                "maximum": 1.0,
                "description": "Classification confidence (0.0-1.0)",
            },
            "reasoning": {
                "type": "string",
                "description": "One sentence explaining the classification",
            },
        },
        "required": ["level", "confidence", "reasoning"],
    },
}


class ClassifierError(TransientDependencyError):
    """Raised when the text classifier is unavailable or returns unusable output."""


class ClassifierVerdict(BaseModel):
    level: int = Field(ge=1, le=5)
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str = "No reasoning provided"


class TextClassifier(Protocol):
    async def classify(self, text: str) -> ClassifierVerdict: ...


class UnavailableTextClassifier:
    """Stand-in used when no classifier credentials are configured."""

    async def classify(self, text: str) -> ClassifierVerdict:
        raise ClassifierError("text classifier is not configured")


class AnthropicTextClassifier:
    def __init__(
        self,
        api_key: str,
        *,
        model: str,
        max_tokens: int = 200,
        timeout_seconds: float = 5.0,
        client: AsyncAnthropic | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self._client = client or AsyncAnthropic(api_key=api_key, timeout=timeout_seconds, max_retries=0)

    async def classify(self, text: str) -> ClassifierVerdict:
        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=SYSTEM_PROMPT,
                tools=[CLASSIFY_TOOL],
                tool_choice={"type": "tool", "name": CLASSIFY_TOOL["name"]},
                messages=[{"role": "user", "content": text}],
            )
        except Exception as exc:
            raise ClassifierError(f"classifier request failed: {exc}") from exc

        tool_input = None
        for block in response.content:
            if getattr(block, "type", None) == "tool_use" and getattr(block, "name", None) == CLASSIFY_TOOL["name"]:
                tool_input = block.input
                break
        if not isinstance(tool_input, dict):
            raise ClassifierError("model did not return a classify_response tool call")

        try:
            return ClassifierVerdict(
                level=tool_input.get("level"),
                confidence=tool_input.get("confidence"),
                rationale=tool_input.get("reasoning") or "No reasoning provided",
            )
        except ValidationError as exc:
            raise ClassifierError(f"classifier returned invalid output: {tool_input}") from exc


def build_text_classifier(
    api_key: str | None,
    *,
    model: str,
    max_tokens: int,
    timeout_seconds: float,
) -> TextClassifier:
    if not api_key:
        logger.warning("classifier api key not set; responses use the pattern fallback only")
        return UnavailableTextClassifier()
    return AnthropicTextClassifier(
        api_key,
        model=model,
        max_tokens=max_tokens,
        timeout_seconds=timeout_seconds,
    )
