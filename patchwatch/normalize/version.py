"""Version and build token extraction.

Listings announce versions in several incompatible ways: ``v1.2.3``,
``Build 12345``, or not at all (only the publish date or the aggregator's post id
hints at recency). Extraction is a prioritized cascade of matchers; the first
one that produces a token wins. Tokens only compare within the same kind.
"""

import logging
import re
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Callable, Optional

logger = logging.getLogger(__name__)

SEMANTIC = "semantic"
BUILD = "build"
DATE = "date"
ORDINAL = "ordinal"

# Suffix ranks relative to the bare release (0)
PRE_RELEASE_RANKS = {"alpha": -3, "beta": -2, "rc": -1}
POST_RELEASE_RANKS = {"hotfix": 2, "patch": 2}
LETTER_RANK = 1

_V_PATTERN = re.compile(
    r"(?<![a-z0-9])(?:v|version\s*|ver\.?\s*)(\d+(?:\.\d+){0,3})"
    r"(?:[.\-_ ]?(alpha|beta|rc|hotfix|patch)[.\-_ ]?(\d*)|[.\-]?([a-z]))?"
    r"(?![a-z0-9])",
    re.IGNORECASE,
)
_BUILD_PATTERN = re.compile(r"\bbuild\s*#?\s*(\d+)\b|\bb(\d{4,})\b", re.IGNORECASE)
_STORED_SEMANTIC = re.compile(
    r"^v?(\d+(?:\.\d+)*)(?:[.\-_ ]?(alpha|beta|rc|hotfix|patch)[.\-_ ]?(\d*)|[.\-]?([a-z]))?$",
    re.IGNORECASE,
)
_STORED_BUILD = re.compile(r"^(?:build\s*#?\s*|b)(\d+)$", re.IGNORECASE)
_STORED_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_STORED_ORDINAL = re.compile(r"^#(\d+)$")


@dataclass(frozen=True)
class VersionToken:
    """A version, build, date or ordinal extracted from a listing."""

    kind: str  # "semantic", "build", "date", "ordinal"
    raw: str
    components: tuple[int, ...]
    suffix: Optional[str] = None  # "b", "beta2", "hotfix"
    confidence: float = 1.0
    origin: str = "title"  # "title", "excerpt", "publish_date", "source_id", "external", "stored"

    def __str__(self) -> str:
        return self.canonical()

    def canonical(self) -> str:
        """Storage form, readable back with ``parse_version``."""
        if self.kind == DATE:
            year, month, day = self.components
            return f"{year:04d}-{month:02d}-{day:02d}"
        if self.kind == BUILD:
            return f"build {self.components[0]}"
        if self.kind == ORDINAL:
            return f"#{self.components[0]}"

        text = ".".join(str(part) for part in self.components)
        if self.suffix:
            if len(self.suffix) == 1:
                text += self.suffix
            else:
                text += f"-{self.suffix}"
        return text

    def suffix_key(self) -> tuple[int, str, int]:
        """Sort key for the suffix: pre-releases below the bare release, letters and hotfixes above."""
        if not self.suffix:
            return (0, "", 0)
        if len(self.suffix) == 1:
            return (LETTER_RANK, self.suffix, 0)

        match = re.match(r"([a-z]+)(\d*)", self.suffix)
        name, number = match.group(1), match.group(2)
        rank = PRE_RELEASE_RANKS.get(name, POST_RELEASE_RANKS.get(name, 0))
        return (rank, "", int(number) if number else 0)


def _suffix_from_match(name: Optional[str], number: Optional[str], letter: Optional[str]) -> Optional[str]:
    if name:
        return f"{name.lower()}{number or ''}"
    if letter:
        return letter.lower()
    return None


def _components(text: str) -> tuple[int, ...]:
    return tuple(int(part) for part in text.split("."))


def _match_prefixed(text: Optional[str], origin: str, confidence: float) -> Optional[VersionToken]:
    if not text:
        return None
    match = _V_PATTERN.search(text)
    if not match:
        return None
    return VersionToken(
        kind=SEMANTIC,
        raw=match.group(0).strip(),
        components=_components(match.group(1)),
        suffix=_suffix_from_match(match.group(2), match.group(3), match.group(4)),
        confidence=confidence,
        origin=origin,
    )


def _match_build(text: Optional[str]) -> Optional[VersionToken]:
    if not text:
        return None
    match = _BUILD_PATTERN.search(text)
    if not match:
        return None
    number = match.group(1) or match.group(2)
    return VersionToken(
        kind=BUILD,
        raw=match.group(0),
        components=(int(number),),
        confidence=0.8,
        origin="title",
    )


def date_token(published_at, origin: str = "publish_date", confidence: float = 0.6) -> Optional[VersionToken]:
    """Synthetic ordinal from a publish date."""
    if published_at is None:
        return None
    if isinstance(published_at, datetime):
        published_at = published_at.date()
    if not isinstance(published_at, date):
        return None
    return VersionToken(
        kind=DATE,
        raw=published_at.isoformat(),
        components=(published_at.year, published_at.month, published_at.day),
        confidence=confidence,
        origin=origin,
    )


def _match_source_id(source_id) -> Optional[VersionToken]:
    if source_id is None:
        return None
    text = str(source_id).strip()
    if not text.isdigit():
        return None
    return VersionToken(
        kind=ORDINAL,
        raw=text,
        components=(int(text),),
        confidence=0.3,
        origin="source_id",
    )


Matcher = Callable[..., Optional[VersionToken]]

# First match wins
EXTRACTION_CASCADE: list[tuple[str, Matcher]] = [
    ("title_version", lambda title, excerpt, published_at, source_id: _match_prefixed(title, "title", 0.9)),
    ("excerpt_version", lambda title, excerpt, published_at, source_id: _match_prefixed(excerpt, "excerpt", 0.8)),
    ("title_build", lambda title, excerpt, published_at, source_id: _match_build(title)),
    ("publish_date", lambda title, excerpt, published_at, source_id: date_token(published_at)),
    ("source_id", lambda title, excerpt, published_at, source_id: _match_source_id(source_id)),
]


def extract_version(
    title: str,
    excerpt: Optional[str] = None,
    published_at=None,
    source_id=None,
) -> Optional[VersionToken]:
    """
    Extract the most trustworthy version token for a listing.

    Args:
        title: Listing title
        excerpt: Optional listing body / description
        published_at: Optional publish date (date or datetime)
        source_id: Optional numeric aggregator post id

    Returns:
        VersionToken, or None when nothing usable is present
    """
    for name, matcher in EXTRACTION_CASCADE:
        token = matcher(title, excerpt, published_at, source_id)
        if token is not None:
            logger.debug(f"Version {token.canonical()} from {name} for {title!r}")
            return token
    return None


def parse_version(text: Optional[str]) -> Optional[VersionToken]:
    """Parse a stored version string (``1.1``, ``build 123``, ``2025-09-22``, ``#42``)."""
    if not text:
        return None
    text = text.strip()

    match = _STORED_DATE.match(text)
    if match:
        try:
            return date_token(date(int(match.group(1)), int(match.group(2)), int(match.group(3))),
                              origin="stored", confidence=1.0)
        except ValueError:
            return None

    match = _STORED_BUILD.match(text)
    if match:
        return VersionToken(BUILD, text, (int(match.group(1)),), origin="stored")

    match = _STORED_ORDINAL.match(text)
    if match:
        return VersionToken(ORDINAL, text, (int(match.group(1)),), origin="stored")

    match = _STORED_SEMANTIC.match(text)
    if match:
        return VersionToken(
            kind=SEMANTIC,
            raw=text,
            components=_components(match.group(1)),
            suffix=_suffix_from_match(match.group(2), match.group(3), match.group(4)),
            origin="stored",
        )

    # Free text stays anywhere in a longer string ("Patch 1.05 notes")
    return _match_prefixed(text, "stored", 1.0)


_LOOSE_DOTTED = re.compile(r"(?<![\d.])(\d+(?:\.\d+){1,3})(?![\d.])")


def version_from_text(text: Optional[str], origin: str = "external", confidence: float = 0.9) -> Optional[VersionToken]:
    """Best-effort token from catalog text such as ``"1.05 (gog-3)"`` or ``"Update Notes V1.3.9"``."""
    token = parse_version(text)
    if token is None and text:
        match = _LOOSE_DOTTED.search(text)
        if match:
            token = VersionToken(SEMANTIC, match.group(1), _components(match.group(1)))
    if token is None:
        return None
    return replace(token, origin=origin, confidence=confidence)


def compare_versions(a: Optional[VersionToken], b: Optional[VersionToken]) -> Optional[int]:
    """
    Compare two version tokens.

    Returns:
        1 if ``a`` is newer, -1 if older, 0 if equal, None if incomparable
        (either missing or different kinds)
    """
    if a is None or b is None or a.kind != b.kind:
        return None

    for left, right in zip(a.components, b.components):
        if left != right:
            return 1 if left > right else -1

    if len(a.components) != len(b.components):
        return 1 if len(a.components) > len(b.components) else -1

    key_a, key_b = a.suffix_key(), b.suffix_key()
    if key_a == key_b:
        return 0
    return 1 if key_a > key_b else -1
