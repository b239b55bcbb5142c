"""Related-but-distinct title detection (sequels, expansions, remasters).

A listing whose normalized title contains the tracked title's tokens in order,
plus extra ones, is usually a different product in the same franchise
("Assetto Corsa" vs "Assetto Corsa Evo"), not an update.
"""

import re
from typing import Optional

from patchwatch.normalize.title import normalize, tokens

NUMBERED_SEQUEL = "numbered_sequel"
EXPANSION = "expansion"
REMASTER = "remaster"
NAMED_SEQUEL = "named_sequel"

EXPANSION_KEYWORDS = {
    "dlc", "expansion", "addon", "add", "extended", "episode", "chapter", "part",
    "season", "pack",
}
REMASTER_KEYWORDS = {"remaster", "remastered", "remake", "remade", "redux", "hd", "reforged"}

# Normalization has already turned roman numerals into digits
SEQUEL_NUMBER = re.compile(r"[1-9]\d?")


def sequel_number(normalized: str) -> Optional[tuple[str, int]]:
    """Split a trailing sequel number off a normalized title: "dark souls 3" -> ("dark souls", 3)."""
    words = normalized.split()
    if len(words) < 2 or not SEQUEL_NUMBER.fullmatch(words[-1]):
        return None
    return " ".join(words[:-1]), int(words[-1])


def differs_by_sequel_number(left: str, right: str) -> bool:
    """
    Whether two normalized titles are the same base title with different
    sequel numbers, or one numbered and the other not ("risk of rain" vs
    "risk of rain 2").
    """
    if left == right:
        return False
    numbered_left, numbered_right = sequel_number(left), sequel_number(right)
    if numbered_left and numbered_right:
        return numbered_left[0] == numbered_right[0]
    if numbered_left:
        return numbered_left[0] == right
    if numbered_right:
        return numbered_right[0] == left
    return False


def _is_ordered_subsequence(shorter: list[str], longer: list[str]) -> bool:
    remaining = iter(longer)
    return all(token in remaining for token in shorter)


def _split(a: str, b: str) -> Optional[tuple[list[str], list[str]]]:
    tokens_a, tokens_b = tokens(a), tokens(b)
    if tokens_a == tokens_b:
        return None
    if len(tokens_a) < 2 or len(tokens_b) < 2:
        return None
    if len(tokens_a) == len(tokens_b):
        return None
    return (tokens_a, tokens_b) if len(tokens_a) < len(tokens_b) else (tokens_b, tokens_a)


def are_related_but_distinct(a: str, b: str) -> bool:
    """
    Whether two titles name different products in the same franchise.

    Single-word titles never qualify ("Portal" vs "Portal 2"), which keeps a
    short tracked title from flagging every listing that mentions it.
    """
    split = _split(a, b)
    if split is None:
        return False
    shorter, longer = split
    return _is_ordered_subsequence(shorter, longer)


def classify_relation(a: str, b: str) -> Optional[str]:
    """Label a related pair for decision reasons and sequel notices; None when the pair is not related."""
    if differs_by_sequel_number(normalize(a), normalize(b)):
        return NUMBERED_SEQUEL
    if not are_related_but_distinct(a, b):
        return None

    shorter, longer = _split(a, b)
    extra = list(longer)
    for token in shorter:
        extra.remove(token)

    if any(token in REMASTER_KEYWORDS for token in extra):
        return REMASTER
    if any(token in EXPANSION_KEYWORDS for token in extra):
        return EXPANSION
    if any(token.isdigit() for token in extra):
        return NUMBERED_SEQUEL
    return NAMED_SEQUEL
