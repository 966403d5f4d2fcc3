"""
LLM Gateway - thin async wrapper over OpenAI chat completions

Shared by the ExtractionGateway and the Detective Bureau agents. Every call
is bounded by a timeout and returns the message text, or None when the
service is unavailable. Callers treat None as "skip this unit of work".
"""
import asyncio
import json
import logging
import os
import re
from typing import Any, List, Optional

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

_JSON_BLOCK = re.compile(r'\{[\s\S]*\}')


def extract_json_block(text: Optional[str]) -> Optional[Any]:
    """
    Pull the outermost {...} block out of free-form model output and parse it.

    Models wrap JSON in prose or ```json fences; the greedy match spans from
    the first '{' to the last '}'.

    Returns:
        Parsed object, or None if there is no block or it does not parse
    """
    if not text:
        return None
    match = _JSON_BLOCK.search(text)
    if not match:
        return None
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError:
        return None


class LLMGateway:
    """Bounded chat completions"""

    def __init__(
        self,
        openai_client: AsyncOpenAI = None,
        model: str = "gpt-4o",
        timeout: float = 30.0,
    ):
        self.openai_client = openai_client or AsyncOpenAI(api_key=os.getenv("OPENAI_API_KEY"))
        self.model = model
        self.timeout = timeout
        self.calls = 0
        self.failures = 0

    async def complete(
        self,
        messages: List[dict],
        max_tokens: int = 500,
        temperature: float = 0.3,
        timeout: Optional[float] = None,
        label: str = "llm",
    ) -> Optional[str]:
        """
        Run one chat completion.

        Args:
            messages: OpenAI chat messages
            max_tokens: Response token cap
            temperature: Sampling temperature
            timeout: Override the gateway default timeout (seconds)
            label: Tag used in log lines

        Returns:
            Message content (stripped) or None on timeout / API error
        """
        self.calls += 1
        try:
            response = await asyncio.wait_for(
                self.openai_client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    max_tokens=max_tokens,
                    temperature=temperature,
                ),
                timeout=timeout or self.timeout,
            )
        except asyncio.TimeoutError:
            self.failures += 1
            logger.warning(f"[{label}] completion timed out after {timeout or self.timeout}s")
            return None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.warning(f"[{label}] completion failed: {e}")
            return None

        content = response.choices[0].message.content if response.choices else None
        return content.strip() if content else None

    async def complete_json(self, messages: List[dict], **kwargs) -> Optional[Any]:
        """complete() followed by extract_json_block()"""
        text = await self.complete(messages, **kwargs)
        return extract_json_block(text)
