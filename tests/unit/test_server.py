"""Unit tests for relay server composition helpers."""

import logging

import pytest

from src.signaling.config import TextCorrectionConfig
from src.signaling.server import build_text_corrector
from src.signaling.text_correction import GeminiTextCorrector


def test_corrector_missing_key(caplog: pytest.LogCaptureFixture) -> None:
    """Test that a missing key disables correction and says so."""
    with caplog.at_level(logging.INFO, logger="src.signaling.server"):
        assert build_text_corrector(TextCorrectionConfig(enabled=True)) is None

    assert "GEMINI_API_KEY not set" in caplog.text


def test_corrector_disabled_with_key(caplog: pytest.LogCaptureFixture) -> None:
    """Test that a configured key with enabled=false is reported as disabled, not missing."""
    with caplog.at_level(logging.INFO, logger="src.signaling.server"):
        assert build_text_corrector(TextCorrectionConfig(enabled=False, api_key="k")) is None

    assert "disabled in configuration" in caplog.text
    assert "GEMINI_API_KEY not set" not in caplog.text


@pytest.mark.asyncio
async def test_corrector_enabled() -> None:
    """Test that key plus enabled builds the Gemini corrector."""
    corrector = build_text_corrector(TextCorrectionConfig(enabled=True, api_key="k"))

    assert isinstance(corrector, GeminiTextCorrector)
    await corrector.close()
