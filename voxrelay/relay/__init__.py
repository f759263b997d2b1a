# coding=utf-8

from .coordinator import RelayCoordinator, parse_json_message
from .debounce import InterimDebouncer, PendingInterim
from .dispatch import BroadcastDispatcher
from .events import (
    AuthenticationFailure,
    MalformedMessage,
    RelayError,
    TranslationError,
    TranslationEvent,
    TranslationResult,
    UnauthorizedAction,
)
from .gateway import TranslationGateway
from .registry import Connection, ConnectionRegistry, PublisherArbiter
from .session import Session, SessionAccumulator, merge_fragment
from .text_normalize import TextNormalizer, detect_language, target_language_for

__all__ = [
    "AuthenticationFailure",
    "BroadcastDispatcher",
    "Connection",
    "ConnectionRegistry",
    "InterimDebouncer",
    "MalformedMessage",
    "PendingInterim",
    "PublisherArbiter",
    "RelayCoordinator",
    "RelayError",
    "Session",
    "SessionAccumulator",
    "TextNormalizer",
    "TranslationError",
    "TranslationEvent",
    "TranslationGateway",
    "TranslationResult",
    "UnauthorizedAction",
    "detect_language",
    "merge_fragment",
    "parse_json_message",
    "target_language_for",
]
