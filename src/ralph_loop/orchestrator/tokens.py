"""Pluggable token estimation for text the agent produces.

The agent's own ``result`` event is the authoritative count; estimators only
fill the gap between results.
"""

from __future__ import annotations

from enum import Enum
from typing import Protocol


class TokenEstimationMethod(str, Enum):
    """Supported cheap estimation strategies."""

    BYTE_RATIO = "byte_ratio"
    CHAR_RATIO = "char_ratio"


class TokenEstimator(Protocol):
    def count(self, text: str) -> int:
        """Return an estimated token count for ``text``."""


class ByteRatioEstimator:
    """Roughly four UTF-8 bytes per token."""

    def count(self, text: str) -> int:
        return len(text.encode("utf-8")) // 4


class CharRatioEstimator:
    """Roughly four characters per token."""

    def count(self, text: str) -> int:
        return len(text) // 4


def build_estimator(method: TokenEstimationMethod) -> TokenEstimator:
    if method == TokenEstimationMethod.CHAR_RATIO:
        return CharRatioEstimator()
    return ByteRatioEstimator()
