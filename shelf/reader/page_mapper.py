"""Translation between page numbers, fractional locations and percentages.

Both document formats go through these functions, so a page number means the
same thing to the UI whether the book is a PDF or a reflowable EPUB.
"""

import math


def clamp_page(page: int, total: int) -> tuple[int, int]:
    """Normalize (page, total): total is at least 1 and page lies in [1, total]."""
    total = max(1, total)
    return min(max(1, page), total), total


def page_to_percentage(page: int, total: int) -> int:
    """Percentage read when `page` of `total` is displayed.

    Page 1 is 0% and the last page is 100%. Intermediate values round up so a
    reader who has moved off the first page never sees 0%.
    """
    page, total = clamp_page(page, total)
    if total == 1:
        return 100
    pct = math.ceil(100 * (page - 1) / (total - 1))
    return min(100, max(0, pct))


def percentage_to_location_fraction(page: int, total: int) -> float:
    """Fractional position in [0.0, 1.0] for location-indexed documents."""
    page, total = clamp_page(page, total)
    return (page - 1) / max(1, total - 1)


def fraction_to_index(fraction: float, count: int) -> int:
    """Index into a sequence of `count` items for a fractional position."""
    if count <= 1:
        return 0
    fraction = min(1.0, max(0.0, fraction))
    return min(count - 1, round(fraction * (count - 1)))
