"""Approximate token accounting for streamed and transcript text."""

from __future__ import annotations

import math
from typing import Iterable

_DEFAULT_BYTES_PER_TOKEN = 4


class ApproxTokenCounter:
    """Deterministic counter that estimates tokens via encoded byte length."""

    def __init__(self, *, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str | None) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))

    def count_many(self, texts: Iterable[str | None]) -> int:
        return sum(self.count(text) for text in texts)


__all__ = ["ApproxTokenCounter"]
