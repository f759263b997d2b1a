# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Tuple

from .events import SUPPORTED_LANGUAGES, TranslationError, TranslationResult

logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {"ko": "Korean", "en": "English"}

# Chat models occasionally answer the prompt instead of translating it.
CONVERSATIONAL_MARKERS: Tuple[str, ...] = (
    "I'm here to help",
    "Please provide",
    "Just let me know",
    "I'll take care",
    "How can I help",
    "How may I",
    "What would you like",
)


def language_name(tag: str) -> str:
    return LANGUAGE_NAMES.get(str(tag or ""), str(tag or ""))


def is_conversational_response(text: str) -> bool:
    src = str(text or "")
    return any(marker in src for marker in CONVERSATIONAL_MARKERS)


class TranslationGateway:
    """
    Async boundary around a blocking translator backend.

    The backend is any object exposing
    ``translate(text, source_language=..., target_language=...) -> str``; it runs in a
    worker thread so the event loop never waits on network I/O.
    """

    def __init__(self, translator: Any) -> None:
        if translator is None:
            raise ValueError("translator backend is required")
        self.translator = translator

    async def translate(self, text: str, source_language: str, target_language: str) -> TranslationResult:
        src = str(text or "").strip()
        if not src:
            raise TranslationError("no meaningful content to translate")
        if source_language not in SUPPORTED_LANGUAGES or target_language not in SUPPORTED_LANGUAGES:
            raise TranslationError(f"unsupported language pair {source_language}->{target_language}")
        if source_language == target_language:
            raise TranslationError("source and target language must differ")

        t0 = time.monotonic()
        try:
            out = await asyncio.to_thread(
                self.translator.translate,
                src,
                source_language=language_name(source_language),
                target_language=language_name(target_language),
            )
        except Exception as e:
            logger.warning("translation backend failed src_chars=%d err=%s", len(src), e)
            raise TranslationError("Translation failed") from e

        translated = str(out or "").strip()
        latency = time.monotonic() - t0
        if latency >= 1.0:
            logger.info(
                "translation latency sec=%.2f src_chars=%d out_chars=%d",
                latency,
                len(src),
                len(translated),
            )
        if not translated:
            raise TranslationError("translation service returned empty output")
        if is_conversational_response(translated):
            logger.warning("filtered conversational response chars=%d", len(translated))
            raise TranslationError("translation service returned an invalid response")

        return TranslationResult(
            original_text=src,
            translated_text=translated,
            source_language=source_language,
            target_language=target_language,
        )
