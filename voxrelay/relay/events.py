# coding=utf-8
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict

LANG_KOREAN = "ko"
LANG_ENGLISH = "en"
SUPPORTED_LANGUAGES = (LANG_KOREAN, LANG_ENGLISH)


class RelayError(Exception):
    """
    Base for failures that are reported back to a single connection.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = str(reason or "")


class AuthenticationFailure(RelayError):
    pass


class UnauthorizedAction(RelayError):
    pass


class MalformedMessage(RelayError, ValueError):
    pass


class TranslationError(RelayError):
    pass


@dataclass(frozen=True)
class TranslationResult:
    original_text: str
    translated_text: str
    source_language: str
    target_language: str


@dataclass(frozen=True)
class TranslationEvent:
    session_id: str
    original_text: str
    translated_text: str
    source_language: str
    target_language: str
    timestamp: int
    final: bool

    @classmethod
    def from_result(cls, result: TranslationResult, *, session_id: str, timestamp: int, final: bool) -> "TranslationEvent":
        return cls(
            session_id=str(session_id),
            original_text=result.original_text,
            translated_text=result.translated_text,
            source_language=result.source_language,
            target_language=result.target_language,
            timestamp=int(timestamp),
            final=bool(final),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def translation_message(event: TranslationEvent) -> Dict[str, Any]:
    return {"type": "translation", "event": event.to_dict()}


def subscriber_count_message(count: int) -> Dict[str, Any]:
    return {"type": "subscriber_count", "count": int(count)}


def error_message(reason: str) -> Dict[str, Any]:
    return {"type": "error", "reason": str(reason or "")}
