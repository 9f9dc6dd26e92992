"""
Pagination

Paged view over an in-memory ordered collection, e.g. the filtered
booking list. Every mutation clamps the current page into
``[1, total_pages]``, and derived values are recomputed on each read so
they can never disagree with the source.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class PageWindow:
    """Derived paging state for one read."""

    source_length: int
    page_size: int
    current_page: int
    total_pages: int

    @property
    def start_index(self) -> int:
        """0-based index of the first item on the page (inclusive)."""
        return (self.current_page - 1) * self.page_size

    @property
    def end_index(self) -> int:
        """0-based index after the last item on the page (exclusive)."""
        return min(self.start_index + self.page_size, self.source_length)

    @property
    def has_next(self) -> bool:
        return self.current_page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.current_page > 1


def total_pages_for(source_length: int, page_size: int) -> int:
    return max(1, math.ceil(source_length / page_size))


def _check_page_size(page_size: int) -> None:
    if page_size < 1:
        raise ValueError(f"page_size must be at least 1, got {page_size}")


class PaginationView(Generic[T]):
    """
    Current page over a sequence.

    Usage:
        view = PaginationView(bookings, page_size=20)
        view.next_page()
        rows = view.page_items
    """

    def __init__(self, items: Sequence[T], page_size: int = 10, initial_page: int = 1) -> None:
        _check_page_size(page_size)
        self._items = items
        self._page_size = page_size
        self._page = self._clamp(initial_page)

    def _clamp(self, page: int) -> int:
        return min(max(1, page), total_pages_for(len(self._items), self._page_size))

    # Derived state

    @property
    def window(self) -> PageWindow:
        # The source may have shrunk behind our back
        self._page = self._clamp(self._page)
        return PageWindow(
            source_length=len(self._items),
            page_size=self._page_size,
            current_page=self._page,
            total_pages=total_pages_for(len(self._items), self._page_size),
        )

    @property
    def current_page(self) -> int:
        return self.window.current_page

    @property
    def total_pages(self) -> int:
        return self.window.total_pages

    @property
    def page_size(self) -> int:
        return self._page_size

    @property
    def total_items(self) -> int:
        return len(self._items)

    @property
    def start_index(self) -> int:
        return self.window.start_index

    @property
    def end_index(self) -> int:
        return self.window.end_index

    @property
    def has_next(self) -> bool:
        return self.window.has_next

    @property
    def has_prev(self) -> bool:
        return self.window.has_prev

    @property
    def page_items(self) -> list[T]:
        window = self.window
        return list(self._items[window.start_index : window.end_index])

    def page_numbers(self, max_visible: int | None = None) -> list[int]:
        """
        Page numbers for a pager widget.

        With ``max_visible`` the list is a sliding run of that many pages
        kept around the current page.
        """
        window = self.window
        if max_visible is None or max_visible >= window.total_pages:
            return list(range(1, window.total_pages + 1))
        if max_visible < 1:
            return []

        start = window.current_page - max_visible // 2
        start = max(1, min(start, window.total_pages - max_visible + 1))
        return list(range(start, start + max_visible))

    # Navigation

    def next_page(self) -> int:
        return self.go_to_page(self._page + 1)

    def prev_page(self) -> int:
        return self.go_to_page(self._page - 1)

    def go_to_page(self, page: int) -> int:
        self._page = self._clamp(page)
        return self._page

    def go_to_first(self) -> int:
        return self.go_to_page(1)

    def go_to_last(self) -> int:
        return self.go_to_page(self.total_pages)

    def reset(self) -> int:
        return self.go_to_first()

    # Source changes

    def set_source(self, items: Sequence[T], reset: bool = False) -> int:
        """
        Replace the underlying items.

        Args:
            items: New source
            reset: Go back to page 1, e.g. when a filter changed what the
                pages mean
        """
        self._items = items
        return self.go_to_page(1 if reset else self._page)

    def set_page_size(self, page_size: int) -> int:
        _check_page_size(page_size)
        self._page_size = page_size
        return self.go_to_page(self._page)

    def __repr__(self) -> str:
        w = self.window
        return f"PaginationView(page={w.current_page}/{w.total_pages}, items={w.source_length})"
