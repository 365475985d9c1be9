"""
Fuzzy matching for keys and tags.

A pattern matches a candidate when its characters appear in the candidate
in order (a subsequence). Among all such alignments the best-scoring one
wins: every matched character earns a base score, matches at word
boundaries and runs of consecutive matches earn bonuses, and gaps between
matches cost a penalty. Case is ignored unless the pattern itself
contains an uppercase letter ("smart case").

Written in-house in the manner of skim's SkimMatcherV2; no fuzzy matching
library is a dependency.
"""

from typing import Optional

SCORE_MATCH = 16
PENALTY_GAP_START = -3
PENALTY_GAP_EXTENSION = -1

# Bonuses depend on the character before the match
BONUS_BOUNDARY = 8          # after a separator or at the start
BONUS_CAMEL = 7             # lower -> upper, or letter -> digit
BONUS_CONSECUTIVE = 4       # directly after the previous match
BONUS_FIRST_CHAR_MULTIPLIER = 2

_SEPARATORS = frozenset(" \t-_./\\:@#,;|")

_NEG = float("-inf")


def _bonus(prev: Optional[str], ch: str) -> int:
    if prev is None or prev in _SEPARATORS:
        return BONUS_BOUNDARY
    if prev.islower() and ch.isupper():
        return BONUS_CAMEL
    if prev.isalpha() and ch.isdigit():
        return BONUS_CAMEL
    return 0


def _is_subsequence(pattern: str, text: str) -> bool:
    it = iter(text)
    return all(ch in it for ch in pattern)


def fuzzy_match(pattern: str, candidate: str) -> Optional[int]:
    """
    Score ``candidate`` against ``pattern``.

    Returns:
        An integer score (higher is better), or None when the pattern is
        not a subsequence of the candidate. An empty pattern never matches.
    """
    if not pattern or not candidate:
        return None

    case_sensitive = any(ch.isupper() for ch in pattern)
    needle = pattern if case_sensitive else pattern.lower()
    hay = candidate if case_sensitive else candidate.lower()

    if len(needle) > len(hay) or not _is_subsequence(needle, hay):
        return None

    n = len(hay)
    bonuses = [_bonus(candidate[j - 1] if j else None, candidate[j]) for j in range(n)]

    # prev[j]: best score with needle[:i] matched and needle[i-1] at hay[j]
    prev = [
        SCORE_MATCH + bonuses[j] * BONUS_FIRST_CHAR_MULTIPLIER
        if hay[j] == needle[0] else _NEG
        for j in range(n)
    ]

    for i in range(1, len(needle)):
        cur = [_NEG] * n
        # gap[j]: best prev[k] for k < j - 1, charged for the gap up to j
        gap = _NEG
        for j in range(1, n):
            if j >= 2:
                gap = max(gap + PENALTY_GAP_EXTENSION, prev[j - 2] + PENALTY_GAP_START)
            if hay[j] != needle[i]:
                continue
            consecutive = prev[j - 1] + max(bonuses[j], BONUS_CONSECUTIVE)
            gapped = gap + bonuses[j]
            best = max(consecutive, gapped)
            if best != _NEG:
                cur[j] = SCORE_MATCH + best
        prev = cur

    best = max(prev)
    if best == _NEG:
        return None
    return int(best)
