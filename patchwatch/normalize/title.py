"""Title normalization for aggregator listings.

Scraped titles carry release-group tags, version tokens, edition qualifiers and
assorted punctuation. ``normalize`` reduces a title to a lowercase, space
separated canonical form so two listings for the same title compare equal.

The work is an ordered list of independent steps. Each step is a pure
``str -> str`` callable, so individual patterns can be tested and new ones
appended without touching the others.
"""

import html
import logging
import re
from typing import Callable

logger = logging.getLogger(__name__)

Step = Callable[[str], str]

# Passes over the step list before giving up on reaching a fixed point
MAX_PASSES = 4


def _sub(pattern: str, replacement: str = " ", flags: int = re.IGNORECASE) -> Step:
    compiled = re.compile(pattern, flags)

    def step(text: str) -> str:
        return compiled.sub(replacement, text)

    step.__name__ = f"sub({pattern})"
    return step


# Release-group / repack names and marketing noise, matched after lowercasing
NOISE_TERMS = [
    "denuvoless", "cracked", "repack", "fitgirl", "dodi", "empress", "codex",
    "skidrow", "plaza", "rune", "tenoke", "p2p", "elamigos", "gog rip",
    "free download", "full version", "all dlcs?", "with dlcs?", "dlcs? included",
    "pre-installed", "preinstalled", "hotfix", "season pass", "dlc bundle",
    "bonus content", "pre-order bonus", "pre-purchase bonus",
]

EDITION_QUALIFIERS = [
    "definitive", "ultimate", "deluxe", "complete", "premium", "gold",
    "enhanced", "special", "anniversary", "collector['’]?s", "digital deluxe",
]

NUMBER_WORDS = {
    "one": "1", "two": "2", "three": "3", "four": "4", "five": "5",
    "six": "6", "seven": "7", "eight": "8", "nine": "9",
}

# Longest first so "viii" is not read as "v" + "iii"
ROMAN_NUMERALS = [
    ("viii", "8"), ("vii", "7"), ("iii", "3"), ("vi", "6"), ("iv", "4"),
    ("ix", "9"), ("ii", "2"), ("v", "5"), ("x", "10"),
]


def _replace_words(mapping) -> Step:
    pairs = list(mapping.items()) if isinstance(mapping, dict) else list(mapping)
    pattern = re.compile(r"\b(" + "|".join(word for word, _ in pairs) + r")\b")
    lookup = dict(pairs)

    def step(text: str) -> str:
        return pattern.sub(lambda m: lookup[m.group(1)], text)

    return step


STEPS: list[Step] = [
    html.unescape,
    _sub(r"[®™©]", ""),
    # Scene groups are upper-case tags glued on with a dash ("-RUNE", "-TENOKE").
    # Case-sensitive so "Half-Life" survives.
    _sub(r"-[A-Z0-9]{3,}$", "", flags=0),
    _sub(r"-[A-Z0-9]{3,}(?=\s)", " ", flags=0),
    # Embedded version / build / update tokens
    _sub(r"\bv\d+(?:\.\d+)*(?:[.\-_ ]?(?:alpha|beta|rc|hotfix|patch)\d*|[a-z](?![a-z0-9]))?(?:-[a-z0-9]+)?"),
    _sub(r"\b(?:version|ver\.?)\s*\d+(?:\.\d+)*"),
    _sub(r"\bbuild\s*#?\d+"),
    _sub(r"\bb\d{4,}\b"),
    _sub(r"\bupdate\s*\d+(?:\.\d+)*"),
    str.lower,
    _sub(r"\b(?:" + "|".join(NOISE_TERMS) + r")\b"),
    _sub(r"\bmulti\d+\b"),
    _sub(r"[\(\[]\s*(?:19|20)\d{2}\s*[\)\]]"),
    _sub(r"\[[^\]]*\]"),
    _sub(r"\([^)]*\)"),
    _sub(r"\{[^}]*\}"),
    _sub(r"\b(?:goty|game of the year)\b(?:\s+edition\b)?"),
    _sub(r"\bdirector['’]?s\s+cut\b"),
    _sub(r"\b(?:" + "|".join(EDITION_QUALIFIERS) + r")\s+edition\b"),
    _sub(r"\s(?:" + "|".join(EDITION_QUALIFIERS) + r")\s*$"),
    _sub(r"\bedition\b"),
    _sub(r"&", " and "),
    _replace_words(NUMBER_WORDS),
    _replace_words(ROMAN_NUMERALS),
    _sub(r"['’‘`]", ""),
    _sub(r"[^\w\s]|_"),
    _sub(r"\s+"),
    str.strip,
]


def _single_pass(text: str) -> str:
    for step in STEPS:
        text = step(text)
    return text


def normalize(title: str | None) -> str:
    """
    Reduce a listing title to its canonical comparison form.

    Never raises. If stripping removes everything (a title made only of noise
    tags), the lowercased, trimmed input is returned instead.

    Args:
        title: Raw listing or entity title

    Returns:
        Canonical lowercase title
    """
    if not title:
        return ""

    current = _single_pass(title)
    if not current:
        return title.lower().strip()

    for _ in range(MAX_PASSES):
        following = _single_pass(current)
        if following == current or not following:
            return current
        current = following

    logger.debug(f"Normalization of {title!r} did not settle after {MAX_PASSES} passes")
    return current


def tokens(title: str | None) -> list[str]:
    """Whitespace tokens of the normalized title."""
    normalized = normalize(title)
    return normalized.split() if normalized else []
