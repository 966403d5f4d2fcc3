"""
Speech-to-text for scanner audio
"""
import asyncio
import logging
import os
from typing import Optional

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


class SpeechToText:
    """
    Wraps OpenAI audio transcription.

    The city's vocabulary hint goes in as the prompt so radio codes and
    local street names are spelled consistently. That prompt is also why
    PROMPT_LEAKAGE filtering exists downstream.
    """

    def __init__(
        self,
        openai_client: AsyncOpenAI = None,
        model: str = "whisper-1",
        timeout: float = 60.0,
    ):
        self.openai_client = openai_client or AsyncOpenAI(api_key=os.getenv("OPENAI_API_KEY"))
        self.model = model
        self.timeout = timeout
        self.failures = 0

    async def transcribe(
        self,
        audio: bytes,
        vocabulary_hint: str = "",
        filename: str = "chunk.mp3",
    ) -> Optional[str]:
        """Returns transcript text, or None on timeout / API error."""
        if not audio:
            return None
        params = {'file': (filename, audio), 'model': self.model, 'language': 'en'}
        if vocabulary_hint:
            params['prompt'] = vocabulary_hint
        try:
            result = await asyncio.wait_for(
                self.openai_client.audio.transcriptions.create(**params),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            self.failures += 1
            logger.warning(f"[STT] transcription timed out after {self.timeout}s")
            return None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.warning(f"[STT] transcription failed: {e}")
            return None

        text = getattr(result, 'text', None)
        return text.strip() if text else None
