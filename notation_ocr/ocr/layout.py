"""Reading-order reconstruction for OCR line fragments.

Score sheets are tabular (columns of moves) and photographed rows are rarely
perfectly horizontal, so a single sort by ``top`` interleaves cells from
neighbouring rows. Fragments are first clustered into rows by vertical
proximity, then ordered left to right within each row.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import cast

from notation_ocr.types import BoundingBox, TextFragment

# Fraction of the mean height of two neighbours under which they share a row.
ROW_THRESHOLD_RATIO = 0.5


def group_rows(fragments: Sequence[TextFragment]) -> list[list[TextFragment]]:
    """Cluster fragments with geometry into rows, each sorted by ``left``."""
    placed = [f for f in fragments if f.bounding_box is not None]
    if not placed:
        return []

    ordered = sorted(placed, key=lambda f: _box(f).top)
    rows: list[list[TextFragment]] = []
    current = [ordered[0]]
    for prev, frag in zip(ordered, ordered[1:]):
        prev_box, box = _box(prev), _box(frag)
        threshold = (box.height + prev_box.height) / 2 * ROW_THRESHOLD_RATIO
        if abs(box.top - prev_box.top) < threshold:
            current.append(frag)
        else:
            rows.append(current)
            current = [frag]
    rows.append(current)

    return [sorted(row, key=lambda f: _box(f).left) for row in rows]


def reconstruct_text(fragments: Sequence[TextFragment]) -> str:
    """Join fragments in reading order: spaces within a row, newlines between rows.

    Fragments without geometry cannot be placed; they follow the rows, one per line.
    """
    if not fragments:
        return ""
    if len(fragments) == 1:
        return fragments[0].text
    lines = [" ".join(f.text for f in row) for row in group_rows(fragments)]
    lines.extend(f.text for f in fragments if f.bounding_box is None)
    return "\n".join(lines)


def _box(fragment: TextFragment) -> BoundingBox:
    # Only called on fragments that group_rows kept as placed.
    return cast(BoundingBox, fragment.bounding_box)
