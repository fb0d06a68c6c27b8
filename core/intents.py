"""
Intent & keyword matching — declarative free-text classification.

Free text typed in a menu state is classified against an ordered list of
(intent, keywords) rules. Matching is case-insensitive and tolerant of
punctuation; the first rule (in declared order) with a matching keyword wins.

Usage:
    matcher = IntentMatcher([
        IntentRule(intent="balance", keywords=["balance", "check"]),
        IntentRule(intent="agent", keywords=["agent", "live chat"], whole_word=True),
    ])
    matcher.classify("Check my balance!")      # → "balance"

KeywordMatcher is the word-boundary variant used for live-chat exit detection.
"""
from __future__ import annotations

import re
from typing import Any, Iterable, Optional

from pydantic import BaseModel

_PUNCTUATION = re.compile(r"[^\w\s]+")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, replace punctuation with spaces, collapse whitespace."""
    if not text:
        return ""
    lowered = _PUNCTUATION.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", lowered).strip()


class IntentRule(BaseModel):
    intent: str
    keywords: list[str]
    whole_word: bool = False

    def matches(self, normalized: str) -> bool:
        for kw in self.keywords:
            needle = normalize_text(kw)
            if not needle:
                continue
            if self.whole_word:
                if re.search(rf"\b{re.escape(needle)}\b", normalized):
                    return True
            elif needle in normalized:
                return True
        return False


class IntentMatcher:
    """Ordered rule list; first matching rule wins."""

    def __init__(self, rules: Optional[Iterable[IntentRule]] = None):
        self._rules: list[IntentRule] = list(rules or [])

    @classmethod
    def from_config(cls, config: list[dict[str, Any]]) -> "IntentMatcher":
        return cls(IntentRule(**raw) for raw in config)

    def add_rule(self, rule: IntentRule) -> None:
        self._rules.append(rule)

    @property
    def rules(self) -> list[IntentRule]:
        return list(self._rules)

    @property
    def intents(self) -> list[str]:
        return [r.intent for r in self._rules]

    def classify(self, text: str) -> Optional[str]:
        normalized = normalize_text(text)
        if not normalized:
            return None
        for rule in self._rules:
            if rule.matches(normalized):
                return rule.intent
        return None


class KeywordMatcher:
    """
    Case-insensitive, word-boundary keyword set.
    Multi-word keywords tolerate any whitespace between words.
    """

    def __init__(self, keywords: Iterable[str]):
        self.keywords = [k.strip().lower() for k in keywords if k and k.strip()]
        if self.keywords:
            # Longest first so "end session" is preferred over "end"
            parts = sorted(
                (r"\s+".join(re.escape(w) for w in k.split()) for k in self.keywords),
                key=len, reverse=True,
            )
            self._pattern: Optional[re.Pattern[str]] = re.compile(
                rf"\b(?:{'|'.join(parts)})\b", re.IGNORECASE,
            )
        else:
            self._pattern = None

    def search(self, text: str) -> Optional[str]:
        """Return the matched keyword (lowercased), or None."""
        if not text or self._pattern is None:
            return None
        m = self._pattern.search(text)
        return _WHITESPACE.sub(" ", m.group(0).lower()) if m else None

    def matches(self, text: str) -> bool:
        return self.search(text) is not None

    def __bool__(self) -> bool:
        return bool(self.keywords)
