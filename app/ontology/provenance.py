"""Edit provenance and precedence.

An edit may only overwrite fields last written by a source of equal or
lower precedence: manual > agent > inference.
"""

from __future__ import annotations

from enum import Enum


class EditSource(str, Enum):
    INFERENCE = "inference"
    AGENT = "agent"
    MANUAL = "manual"


_RANK = {EditSource.INFERENCE: 1, EditSource.AGENT: 2, EditSource.MANUAL: 3}


def rank(source: str | None) -> int:
    if not source:
        return 0
    try:
        return _RANK[EditSource(source)]
    except ValueError:
        return 0


def can_modify(last_edit_source: str | None, source: str) -> bool:
    """True when ``source`` may overwrite a field last edited by ``last_edit_source``."""
    return rank(source) >= rank(last_edit_source)
