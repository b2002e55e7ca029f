"""Anthropic API engine with tool use."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from memkeeper.engines.base import AgentResponse, ToolCall
from memkeeper.errors import EngineError, TransientEngineError

logger = logging.getLogger(__name__)


@dataclass
class AnthropicAPIEngine:
    """Direct Anthropic Messages API via the `anthropic` SDK.

    SDK-level retries are disabled: transient failures surface as
    TransientEngineError and are retried by the refinement job as a whole.
    """

    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 4096
    timeout: int = 120

    def __post_init__(self) -> None:
        try:
            import anthropic
        except ImportError:
            raise ImportError("anthropic package required. Install with: pip install anthropic")
        self._anthropic = anthropic
        self._client = anthropic.Anthropic(timeout=float(self.timeout), max_retries=0)

    @property
    def name(self) -> str:
        return "anthropic_api"

    async def send(self, message: str, *, system_prompt: str | None = None) -> AgentResponse:
        return await self.converse([{"role": "user", "content": message}], system_prompt=system_prompt)

    async def converse(
        self,
        messages: list[dict],
        *,
        system_prompt: str | None = None,
        tools: list[dict] | None = None,
    ) -> AgentResponse:
        kwargs: dict = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": messages,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if tools:
            kwargs["tools"] = tools

        response = await self._create(**kwargs)

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        content: list[dict] = []
        for block in response.content or []:
            if block.type == "text":
                text_parts.append(block.text)
                content.append({"type": "text", "text": block.text})
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, input=dict(block.input or {})))
                content.append(
                    {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
                )

        cost = None
        if response.usage:
            # Approximate cost (Sonnet pricing)
            cost = (response.usage.input_tokens * 3 + response.usage.output_tokens * 15) / 1e6

        return AgentResponse(
            text="".join(text_parts),
            cost_usd=cost,
            model=response.model,
            stop_reason=response.stop_reason,
            tool_calls=tool_calls,
            content=content,
        )

    async def _create(self, **kwargs):
        anthropic = self._anthropic
        try:
            return await asyncio.to_thread(self._client.messages.create, **kwargs)
        except anthropic.APIConnectionError as e:
            logger.warning("Anthropic API connection error: %s", e)
            raise TransientEngineError(f"Anthropic API connection error: {e}") from e
        except anthropic.APIStatusError as e:
            if e.status_code == 429 or e.status_code >= 500:
                logger.warning("Anthropic API transient error (%d): %s", e.status_code, e)
                raise TransientEngineError(f"Anthropic API error {e.status_code}: {e}") from e
            logger.error("Anthropic API error (%d): %s", e.status_code, e)
            raise EngineError(f"Anthropic API error {e.status_code}: {e}") from e

    async def health_check(self) -> bool:
        try:
            response = await asyncio.to_thread(
                self._client.messages.create,
                model=self.model,
                max_tokens=10,
                messages=[{"role": "user", "content": "ping"}],
            )
            return bool(response.content)
        except Exception:
            return False


def build_engine(name: str, model: str, max_tokens: int, timeout: int) -> AnthropicAPIEngine:
    if name == "anthropic_api":
        return AnthropicAPIEngine(model=model, max_tokens=max_tokens, timeout=timeout)
    raise ValueError(f"Unknown engine: {name}")
