"""
Result containers shared by services and selectors.

``BulkResult`` replaces bare success counts: every input id gets exactly one
``BulkItemResult`` saying whether it succeeded, was skipped (nothing to do,
e.g. the entity is gone or already decided) or failed (and why).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from math import ceil
from typing import Any, Generic, TypeVar
from uuid import UUID

T = TypeVar("T")


class BulkOutcome(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class BulkItemResult:
    """Outcome for one item of a bulk operation."""

    item_id: UUID
    outcome: BulkOutcome
    reason: str | None = None
    code: str | None = None
    payload: Any = None


@dataclass(frozen=True)
class BulkResult:
    """Per-item outcomes of a bulk operation, in input order."""

    items: tuple[BulkItemResult, ...] = ()

    @property
    def succeeded(self) -> tuple[BulkItemResult, ...]:
        return tuple(i for i in self.items if i.outcome == BulkOutcome.SUCCESS)

    @property
    def skipped(self) -> tuple[BulkItemResult, ...]:
        return tuple(i for i in self.items if i.outcome == BulkOutcome.SKIPPED)

    @property
    def failed(self) -> tuple[BulkItemResult, ...]:
        return tuple(i for i in self.items if i.outcome == BulkOutcome.FAILED)

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    def outcome_for(self, item_id: UUID) -> BulkItemResult | None:
        for item in self.items:
            if item.item_id == item_id:
                return item
        return None


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a paginated listing (1-based page numbers)."""

    items: tuple[T, ...]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return ceil(self.total / self.limit)

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


@dataclass(frozen=True)
class PageRequest:
    page: int = 1
    limit: int = 20

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValueError(f"page must be >= 1, got {self.page}")
        if not 1 <= self.limit <= 100:
            raise ValueError(f"limit must be between 1 and 100, got {self.limit}")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


__all__ = [
    "BulkOutcome",
    "BulkItemResult",
    "BulkResult",
    "Page",
    "PageRequest",
]

