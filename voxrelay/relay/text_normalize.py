# coding=utf-8
from __future__ import annotations

import re
from typing import Dict, List, Mapping, Optional, Tuple

from .events import LANG_ENGLISH, LANG_KOREAN

HANGUL_PATTERN = re.compile(r"[\u1100-\u11ff\u3130-\u318f\uac00-\ud7a3]")
WHITESPACE_PATTERN = re.compile(r"\s+")
ELLIPSIS_PATTERN = re.compile(r"\.{3,}|…")
CLOSING_FILLER_PATTERN = re.compile(
    r"[\s,.!?]*(?:\b(?:"
    r"thank you(?: (?:so|very) much)?(?: for (?:watching|your attention))?"
    r"|thanks(?: for watching)?"
    r"|for watching"
    r"|for your attention"
    r"|good ?bye"
    r"|bye"
    r"|시청해 ?주셔서 감사합니다"
    r"|구독과 좋아요(?: 부탁드립니다)?"
    r")\b[\s,.!?]*)+$",
    re.IGNORECASE,
)

# Speech recognizers consistently mishear these ecosystem terms.
DEFAULT_CORRECTIONS: Dict[str, str] = {
    "studies": "Status",
    "statistical": "Status",
    "IFTTT": "IFT",
    "IFD": "IFT",
    "web 3": "Web3",
    "D apps": "dApps",
    "D app": "dApp",
    "ethereum 2": "Ethereum 2.0",
    "bit coin": "Bitcoin",
    "chain link": "Chainlink",
}


def collapse_whitespace(text: str) -> str:
    return WHITESPACE_PATTERN.sub(" ", str(text or "")).strip()


def compact(text: str) -> str:
    return WHITESPACE_PATTERN.sub("", str(text or ""))


def strip_closing_fillers(text: str) -> str:
    src = collapse_whitespace(text)
    if not src:
        return ""
    return CLOSING_FILLER_PATTERN.sub("", src).strip()


def has_hangul(text: str) -> bool:
    return bool(HANGUL_PATTERN.search(str(text or "")))


def detect_language(text: str) -> str:
    """
    Binary ko/en detector: any Hangul character means Korean.
    """
    return LANG_KOREAN if has_hangul(text) else LANG_ENGLISH


def target_language_for(source_language: str) -> str:
    return LANG_ENGLISH if source_language == LANG_KOREAN else LANG_KOREAN


def compile_corrections(table: Mapping[str, str]) -> List[Tuple[re.Pattern, str]]:
    # Longer phrases first so "D apps" wins over "D app".
    rules: List[Tuple[re.Pattern, str]] = []
    for phrase in sorted(table, key=lambda x: (-len(str(x)), str(x))):
        src = collapse_whitespace(phrase)
        if not src:
            raise ValueError("correction phrase is empty")
        # A phrase already followed by a version suffix is left alone.
        pattern = re.compile(rf"\b{re.escape(src)}\b(?!\.\d)", re.IGNORECASE)
        rules.append((pattern, str(table[phrase])))
    return rules


class TextNormalizer:
    """
    Cleans accumulated speech text before it is handed to the translation gateway:
    misrecognition corrections, ellipsis cleanup, closing filler removal and
    whitespace collapsing.
    """

    def __init__(
        self,
        corrections: Optional[Mapping[str, str]] = None,
        include_defaults: bool = True,
    ) -> None:
        table: Dict[str, str] = dict(DEFAULT_CORRECTIONS) if include_defaults else {}
        if corrections:
            table.update({str(k): str(v) for k, v in corrections.items()})
        self.corrections = table
        self._rules = compile_corrections(table)

    def normalize(self, text: str) -> str:
        out = collapse_whitespace(text)
        if not out:
            return ""
        for pattern, replacement in self._rules:
            out = pattern.sub(replacement, out)
        out = ELLIPSIS_PATTERN.sub(".", out)
        return strip_closing_fillers(out)

    def prepare(self, text: str) -> Tuple[str, str, str]:
        normalized = self.normalize(text)
        source = detect_language(normalized)
        return normalized, source, target_language_for(source)
