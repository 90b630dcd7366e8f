# viewer.py
"""
Flip-book pagination for a generated comic.

Spread 0 is the cover: a blank left page and page 1 on the right. Every
later spread k shows page 2k on the left and page 2k+1 on the right.
"""
import threading
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel

from comic_engine import ComicDocument, ComicPage

NEXT_KEY = "ArrowRight"
PREV_KEY = "ArrowLeft"


def total_spreads(page_count: int) -> int:
    if page_count < 1:
        return 0
    # ceil((n - 1) / 2) + 1
    return page_count // 2 + 1


def spread_page_numbers(spread: int, page_count: int) -> Tuple[Optional[int], Optional[int]]:
    """(left, right) page numbers of a spread; None marks an empty side."""
    if spread < 0 or spread >= total_spreads(page_count):
        raise IndexError(f"Spread {spread} out of range for {page_count} pages")
    if spread == 0:
        return None, 1
    left = 2 * spread
    right = left + 1
    return left, (right if right <= page_count else None)


def page_label(spread: int, page_count: int) -> str:
    left, right = spread_page_numbers(spread, page_count)
    if left is None:
        return f"Page {right} / {page_count}"
    if right is None:
        return f"Page {left} / {page_count}"
    return f"Pages {left}-{right} / {page_count}"


class Spread(BaseModel):
    index: int
    total: int
    left: Optional[ComicPage] = None
    right: Optional[ComicPage] = None
    label: str
    has_prev: bool
    has_next: bool

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


def render_spread(document: ComicDocument, spread: int) -> Spread:
    """Pure view of one spread; the document is never modified."""
    n = len(document)
    left, right = spread_page_numbers(spread, n)
    return Spread(
        index=spread,
        total=total_spreads(n),
        left=document.page(left) if left else None,
        right=document.page(right) if right else None,
        label=page_label(spread, n),
        has_prev=spread > 0,
        has_next=spread < total_spreads(n) - 1,
    )


class ComicViewer:
    """Spread cursor for one document. Safe to drive from several request threads."""

    def __init__(self, document: ComicDocument):
        self.document = document
        self.current_spread = 0
        self._lock = threading.Lock()

    @property
    def total_spreads(self) -> int:
        return total_spreads(len(self.document))

    def next(self) -> bool:
        with self._lock:
            if self.current_spread < self.total_spreads - 1:
                self.current_spread += 1
                return True
            return False

    def prev(self) -> bool:
        with self._lock:
            if self.current_spread > 0:
                self.current_spread -= 1
                return True
            return False

    def handle_key(self, key: str) -> bool:
        """Keyboard binding; returns False for keys the viewer ignores."""
        if key == NEXT_KEY:
            self.next()
            return True
        if key == PREV_KEY:
            self.prev()
            return True
        return False

    def page_label(self) -> str:
        return page_label(self.current_spread, len(self.document))

    def current_view(self) -> Spread:
        return render_spread(self.document, self.current_spread)
