"""Lexical title similarity."""

from patchwatch.detect.relatedness import differs_by_sequel_number
from patchwatch.normalize.title import normalize

# Score for titles that differ only by a sequel number, below any decision floor
SEQUEL_SCORE = 0.3
SUBSTRING_FLOOR = 0.85
SUBSTRING_SCALE = 0.95
PARTIAL_TOKEN_CREDIT = 0.7
PARTIAL_TOKEN_MIN_LENGTH = 4
TOKEN_WEIGHT = 0.85
LENGTH_WEIGHT = 0.15


def _partially_matches(a: str, b: str) -> bool:
    return (len(a) >= PARTIAL_TOKEN_MIN_LENGTH and b in a) or (
        len(b) >= PARTIAL_TOKEN_MIN_LENGTH and a in b
    )


def similarity(a: str, b: str) -> float:
    """
    Score how likely two titles name the same thing.

    Both titles are normalized first. Identical titles score 1.0 and titles
    that differ only by a trailing sequel number ("Dark Souls 2" vs "Dark
    Souls 3", "Risk of Rain" vs "Risk of Rain 2") score 0.3. A title contained
    in the other scores at least 0.85, otherwise the score is a token overlap
    blended with word-count closeness. The function is symmetric.

    Args:
        a: First title
        b: Second title

    Returns:
        Score in [0, 1]
    """
    left, right = normalize(a), normalize(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    if differs_by_sequel_number(left, right):
        return SEQUEL_SCORE

    if left in right or right in left:
        shorter, longer = sorted((len(left), len(right)))
        return max(SUBSTRING_FLOOR, shorter / longer * SUBSTRING_SCALE)

    tokens_a = [t for t in left.split() if len(t) > 1]
    tokens_b = [t for t in right.split() if len(t) > 1]
    if not tokens_a or not tokens_b:
        return 0.0

    set_a, set_b = set(tokens_a), set(tokens_b)
    exact = len(set_a & set_b)

    only_a, only_b = set_a - set_b, set_b - set_a
    partial_a = sum(1 for x in only_a if any(_partially_matches(x, y) for y in only_b))
    partial_b = sum(1 for y in only_b if any(_partially_matches(x, y) for x in only_a))
    partial = PARTIAL_TOKEN_CREDIT * min(partial_a, partial_b)

    overlap = (exact + partial) / len(set_a | set_b)
    closeness = min(len(tokens_a), len(tokens_b)) / max(len(tokens_a), len(tokens_b))

    return min(1.0, overlap * TOKEN_WEIGHT + closeness * LENGTH_WEIGHT)
