"""Spelling and grammar correction for signed/transcribed text.

The relay exposes correction through a thin ``TextCorrector`` interface; the
bundled implementation calls the Gemini Generative Language REST API.
"""

import logging
import math
import re
from typing import Any, Protocol

import aiohttp

from src.signaling.config import TextCorrectionConfig

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = (
    "You are a spelling and grammar correction assistant. Your role is to correct "
    "spelling mistakes and grammatical errors in text. Return only the corrected text, "
    "nothing else. Do not add explanations, filler words, or commentary. "
    "Output only the corrected text."
)

DEFAULT_RETRY_AFTER_S = 15

_RETRY_PATTERN = re.compile(r"retry in ([\d.]+)s", re.IGNORECASE)


class TextCorrectionError(Exception):
    """Upstream correction request failed."""


class TextCorrectionQuotaError(TextCorrectionError):
    """Upstream rejected the request for quota/rate-limit reasons.

    Attributes:
        retry_after_s: Seconds the caller should wait before retrying
    """

    def __init__(self, message: str, retry_after_s: int = DEFAULT_RETRY_AFTER_S) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s


class TextCorrector(Protocol):
    """Corrects spelling and grammar in a short text."""

    async def correct(self, text: str) -> str:
        """Return the corrected text."""
        ...

    async def close(self) -> None:
        """Release any held resources."""
        ...


def parse_retry_after(message: str, default: int = DEFAULT_RETRY_AFTER_S) -> int:
    """Extract the retry delay from an upstream message ("... retry in 12.3s").

    Returns:
        Whole seconds (rounded up), or ``default`` when absent
    """
    match = _RETRY_PATTERN.search(message)
    if not match:
        return default
    try:
        return math.ceil(float(match.group(1)))
    except ValueError:
        return default


def build_prompt(text: str) -> str:
    """User prompt sent alongside the system instruction."""
    return f'Correct the spelling and grammar in this text: "{text}". Return only the corrected text.'


class GeminiTextCorrector:
    """TextCorrector backed by the Gemini ``generateContent`` REST endpoint.

    The aiohttp session is created lazily on first use and closed by
    :meth:`close`.
    """

    def __init__(self, config: TextCorrectionConfig) -> None:
        if not config.api_key:
            raise ValueError("Gemini API key is required for text correction")
        self.config = config
        self._session: aiohttp.ClientSession | None = None

    @property
    def endpoint(self) -> str:
        """Full generateContent URL for the configured model."""
        base = self.config.base_url.rstrip("/")
        return f"{base}/models/{self.config.model}:generateContent"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_s)
            )
        return self._session

    async def close(self) -> None:
        """Close aiohttp session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def correct(self, text: str) -> str:
        """Correct ``text`` via Gemini.

        Raises:
            TextCorrectionQuotaError: Upstream answered 429
            TextCorrectionError: Any other upstream or network failure
        """
        session = await self._ensure_session()
        body = {
            "systemInstruction": {"parts": [{"text": SYSTEM_INSTRUCTION}]},
            "contents": [{"role": "user", "parts": [{"text": build_prompt(text)}]}],
        }

        try:
            async with session.post(
                self.endpoint,
                json=body,
                headers={"x-goog-api-key": self.config.api_key or ""},
            ) as response:
                payload = await response.json(content_type=None)
                status = response.status
        except (aiohttp.ClientError, TimeoutError) as e:
            raise TextCorrectionError(f"Gemini request failed: {e}") from e
        except ValueError as e:
            raise TextCorrectionError(f"Invalid Gemini response: {e}") from e

        if status == 429:
            message = _error_message(payload) or "Quota exceeded"
            raise TextCorrectionQuotaError(
                f"[429 Too Many Requests] {message}", retry_after_s=parse_retry_after(message)
            )

        if status >= 400:
            message = _error_message(payload) or f"HTTP {status}"
            raise TextCorrectionError(f"[{status}] {message}")

        corrected = _extract_text(payload)
        if corrected is None:
            raise TextCorrectionError("Gemini response contained no text")

        logger.debug("Text corrected", extra={"model": self.config.model})
        return corrected.strip()


def _error_message(payload: Any) -> str | None:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return None


def _extract_text(payload: Any) -> str | None:
    """Concatenate the text parts of the first candidate."""
    if not isinstance(payload, dict):
        return None
    candidates = payload.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    texts = [part["text"] for part in parts if isinstance(part, dict) and "text" in part]
    return "".join(texts) if texts else None
