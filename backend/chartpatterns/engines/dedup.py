"""
Chart Patterns — Candidate Deduplication

Same-type candidates whose index ranges overlap by at least half of the
shorter range are linked (single linkage); each linked group keeps one
representative. Different types never merge.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Sequence

OVERLAP_THRESHOLD = 0.5


def overlap_ratio(a, b) -> float:
    """Overlap of two candidate ranges divided by the shorter range length."""
    ra, rb = a.range, b.range
    overlap = min(ra.end_index, rb.end_index) - max(ra.start_index, rb.start_index)
    if overlap <= 0:
        return 0.0
    shorter = max(1, min(ra.end_index - ra.start_index, rb.end_index - rb.start_index))
    return overlap / shorter


def _rank(candidate) -> tuple:
    return (candidate.range.end_index, candidate.completion, candidate.confidence)


def deduplicate(candidates: Sequence, threshold: float = OVERLAP_THRESHOLD) -> list:
    """Collapse overlapping same-type candidates.

    The representative of each group has the latest end index, then the
    highest completion, then the highest confidence. Output keeps input order
    of the surviving representatives, so a second pass is a no-op.
    """
    by_type: dict = defaultdict(list)
    for pos, c in enumerate(candidates):
        by_type[c.type].append(pos)

    keep: set[int] = set()
    for positions in by_type.values():
        parent = {p: p for p in positions}

        def find(x: int) -> int:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        for i, pi in enumerate(positions):
            for pj in positions[i + 1:]:
                if overlap_ratio(candidates[pi], candidates[pj]) >= threshold:
                    parent[find(pi)] = find(pj)

        groups: dict[int, list[int]] = defaultdict(list)
        for p in positions:
            groups[find(p)].append(p)
        for members in groups.values():
            keep.add(max(members, key=lambda m: _rank(candidates[m])))

    return [c for pos, c in enumerate(candidates) if pos in keep]
