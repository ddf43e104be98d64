# Data models for the query path.

from __future__ import annotations

from dataclasses import dataclass
from typing import List


@dataclass
class Match:
    """One answer returned for a query, nearest first."""
    question: str
    answer: str
    key: int
    row_id: int
    distance: float


@dataclass
class SearchResult:
    query: str
    group_id: str
    matches: List[Match]
