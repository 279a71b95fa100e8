# coding=utf-8
from __future__ import annotations

import logging
from typing import Iterable, List, Sequence, Tuple

from .config import TdtConfig

logger = logging.getLogger(__name__)

DEFAULT_MAX_OVERLAP = 12
DEFAULT_PREVIOUS_WINDOW = 15


def remove_duplicate_token_sequence(
    previous: Sequence[int],
    current: Sequence[int],
    *,
    max_overlap: int = DEFAULT_MAX_OVERLAP,
    previous_window: int = DEFAULT_PREVIOUS_WINDOW,
    search_radius: int = TdtConfig().boundary_search_frames,
    punctuation_tokens: Iterable[int] = TdtConfig().punctuation_token_ids,
) -> Tuple[List[int], int]:
    """
    Drop the leading run of ``current`` that repeats the tail of ``previous``.

    Returns the deduplicated tokens and how many leading tokens were removed, so
    callers can drop the same number of aligned timestamps and confidences.
    """
    prev = [int(t) for t in previous]
    cur = [int(t) for t in current]
    removed = 0

    punct = set(int(t) for t in punctuation_tokens)
    if prev and cur and prev[-1] == cur[0] and cur[0] in punct:
        cur = cur[1:]
        removed += 1

    max_search = min(max(0, int(previous_window)), len(prev))
    max_match = min(max(0, int(max_overlap)), len(cur))
    if max_search < 2 or max_match < 2:
        return cur, removed

    longest = min(max_search, max_match)
    for k in range(longest, 1, -1):
        if prev[-k:] == cur[:k]:
            logger.debug("exact suffix/prefix overlap length=%d tokens=%s", k, prev[-k:])
            return cur[k:], removed + k

    # No boundary match: look for a repeated run near the start of current.
    radius = max(0, int(search_radius))
    prev_start = max(0, len(prev) - max_search)
    for k in range(longest, 1, -1):
        prev_end = len(prev) - k + 1
        if prev_end <= prev_start:
            continue
        cur_limit = min(radius, max(0, len(cur) - k + 1))
        for i in range(prev_start, prev_end):
            window = prev[i : i + k]
            for j in range(cur_limit):
                if cur[j : j + k] == window:
                    logger.debug(
                        "duplicate run length=%d at current_start=%d tokens=%s search_radius=%d",
                        k,
                        j,
                        window,
                        radius,
                    )
                    return cur[j + k :], removed + j + k

    return cur, removed


def dedup_aligned(
    previous: Sequence[int],
    tokens: Sequence[int],
    timestamps: Sequence[int],
    confidences: Sequence[float],
    **kwargs,
) -> Tuple[List[int], List[int], List[float], int]:
    deduped, removed = remove_duplicate_token_sequence(previous, tokens, **kwargs)
    return deduped, list(timestamps[removed:]), list(confidences[removed:]), removed
