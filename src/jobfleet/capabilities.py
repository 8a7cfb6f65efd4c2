# capabilities.py
from __future__ import annotations

from typing import Iterable, List, Optional


def normalize_capabilities(tags: Optional[Iterable[str]]) -> List[str]:
    """
    Canonical form for capability tags: stripped, lowercased, de-duplicated, sorted.

    Used for both host capabilities and job requirements; a mismatch between the two
    would make jobs silently unschedulable.
    """
    if not tags:
        return []
    out = {str(t).strip().lower() for t in tags}
    out.discard("")
    return sorted(out)


def has_capabilities(offered: Iterable[str], required: Iterable[str]) -> bool:
    """True when every required tag is offered. An empty requirement matches any host."""
    return set(required).issubset(offered)
