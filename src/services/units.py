"""
Unit splitting service.

This module splits extracted file text into token-bounded, non-overlapping
"units" suitable for model context windows, while keeping exact character
offsets for citation.

Features:
- Token counting with tiktoken (encoder chosen by configuration)
- Semantic split levels: blocks, markdown headings, sentences / table rows
- Greedy packing of adjacent segments up to the token budget
- Hard token split for segments that exceed the budget on their own
- Folding of tiny trailing fragments into a neighbour
- File-type builders (CSV repeats its header, images are a single unit)

Every unit's text is exactly `text[start_offset:end_offset]` (CSV units
additionally carry the header line in front), so a citation can always be
mapped back to the source span.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import tiktoken

from src.core.config import settings
from src.core.exceptions import ExtractionError
from src.core.logging import get_logger
from src.db.base import new_public_id
from src.db.enums import FileType

logger = get_logger(__name__)

TokenCounter = Callable[[str], int]
Span = tuple[int, int]

# =============================================================================
# Constants
# =============================================================================

BLOCK_SEP = re.compile(r"\n[ \t]*\n\s*")

HEADING_LINE = re.compile(r"^\s{0,3}#{1,6}\s*\S+", re.MULTILINE)

TABLE_ROW = re.compile(r"^\s*\|", re.MULTILINE)

# A sentence ends at terminal punctuation (optionally closed by quotes or
# brackets) followed by whitespace, or at a line break.
SENTENCE_END = re.compile(r"[.!?]+[\"')\]]*\s+|\n+")

ABBREVIATIONS = frozenset({
    "dr.", "mr.", "mrs.", "ms.", "prof.", "etc.", "ca.", "bzw.", "usw.",
    "vgl.", "nr.", "str.", "tel.", "evtl.", "geb.", "ing.", "dipl.", "bsp.",
})

TINY_UNIT_RATIO = 0.05


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class UnitData:
    """
    A text unit before database storage.

    This is the payload staged between preprocessing and indexing.
    """

    public_id: str
    unit_index: int
    text: str
    start_offset: int
    end_offset: int
    token_count: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "public_id": self.public_id,
            "unit_index": self.unit_index,
            "text": self.text,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "token_count": self.token_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UnitData":
        return cls(
            public_id=data["public_id"],
            unit_index=data["unit_index"],
            text=data["text"],
            start_offset=data["start_offset"],
            end_offset=data["end_offset"],
            token_count=data["token_count"],
        )


# =============================================================================
# Utility Functions
# =============================================================================


@lru_cache(maxsize=8)
def get_encoder(name: str) -> tiktoken.Encoding:
    """Load a tiktoken encoding, mapping unknown names to ExtractionError."""
    try:
        return tiktoken.get_encoding(name)
    except ValueError as e:
        raise ExtractionError(f"Unknown unit encoder {name!r}") from e


def tiktoken_counter(name: str) -> TokenCounter:
    """Token counter backed by a tiktoken encoding."""
    encoder = get_encoder(name)

    def count(text: str) -> int:
        # encode_ordinary: special-token look-alikes in documents are plain text
        return len(encoder.encode_ordinary(text))

    return count


def decode_text(data: bytes, encoding: str = "utf-8") -> str:
    """Decode extracted file bytes; undecodable input is an ExtractionError."""
    try:
        text = data.decode(encoding)
    except UnicodeDecodeError as e:
        raise ExtractionError(f"File text is not valid {encoding}: {e.reason} at byte {e.start}") from e
    return text.lstrip("\ufeff")


def _trim(text: str, start: int, end: int) -> Span:
    """Shrink a span so it excludes surrounding whitespace."""
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def _spans_between(text: str, start: int, end: int, cuts: list[int]) -> list[Span]:
    """Trimmed, non-empty spans between sorted cut positions."""
    bounds = [start] + [c for c in cuts if start < c < end] + [end]
    spans = []
    for s, e in zip(bounds, bounds[1:]):
        s, e = _trim(text, s, e)
        if s < e:
            spans.append((s, e))
    return spans


# =============================================================================
# Split Levels
# =============================================================================


def split_blocks(text: str, start: int, end: int) -> list[Span]:
    """Split on blank lines."""
    cuts = [m.end() for m in BLOCK_SEP.finditer(text, start, end)]
    return _spans_between(text, start, end, cuts)


def split_headings(text: str, start: int, end: int) -> list[Span]:
    """Split before every markdown heading line."""
    cuts = [m.start() for m in HEADING_LINE.finditer(text, start, end)]
    return _spans_between(text, start, end, cuts)


def split_sentences(text: str, start: int, end: int) -> list[Span]:
    """Split into table rows (markdown tables) or sentences."""
    if TABLE_ROW.search(text, start, end):
        cuts = [i + 1 for i in range(start, end) if text[i] == "\n"]
        return _spans_between(text, start, end, cuts)

    cuts = []
    for match in SENTENCE_END.finditer(text, start, end):
        if not match.group().startswith("\n") and _ends_with_abbreviation(text, start, match.start()):
            continue
        cuts.append(match.end())
    return _spans_between(text, start, end, cuts)


def _ends_with_abbreviation(text: str, start: int, dot: int) -> bool:
    """True if the word ending at `dot` (followed by '.') is a known abbreviation."""
    if dot >= len(text) or text[dot] != ".":
        return False
    word_start = dot
    while word_start > start and not text[word_start - 1].isspace():
        word_start -= 1
    return text[word_start:dot + 1].lower() in ABBREVIATIONS


SPLIT_LEVELS: list[Callable[[str, int, int], list[Span]]] = [
    split_blocks,
    split_headings,
    split_sentences,
]


# =============================================================================
# Splitter
# =============================================================================


class UnitSplitter:
    """
    Splits text into units of at most `max_tokens` tokens.

    The splitter is deterministic: identical text and encoder always give
    identical unit boundaries. Token counts are cached per split call.

    Example:
        splitter = UnitSplitter(max_tokens=500)
        for unit in splitter.split(text):
            print(unit.public_id, unit.start_offset, unit.end_offset)
    """

    def __init__(
        self,
        max_tokens: int | None = None,
        encoder: str | None = None,
        token_counter: TokenCounter | None = None,
    ):
        self.max_tokens = max_tokens or settings.max_unit_tokens
        if self.max_tokens < 1:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")
        self.encoder = encoder or settings.unit_encoder
        self._counter = token_counter or tiktoken_counter(self.encoder)
        self._cache: dict[str, int] = {}

    @property
    def tiny_threshold(self) -> int:
        return max(1, int(self.max_tokens * TINY_UNIT_RATIO))

    def count(self, text: str) -> int:
        cached = self._cache.get(text)
        if cached is None:
            cached = self._counter(text)
            self._cache[text] = cached
        return cached

    def _fits(self, text: str, span: Span) -> bool:
        return self.count(text[span[0]:span[1]]) <= self.max_tokens

    # ----- public builders -----

    def split(self, text: str) -> list[UnitData]:
        """Split free text into units."""
        self._cache.clear()
        spans = self._split_span(text, 0, len(text), 0)
        spans = self._fold_tiny(text, spans)
        return self._to_units(text, spans)

    def split_csv(self, text: str) -> list[UnitData]:
        """
        Split CSV text by rows, repeating the header at the top of each unit.

        Offsets cover the data rows only.
        """
        self._cache.clear()
        header_end = text.find("\n")
        if header_end == -1:
            return self._to_units(text, [_trim(text, 0, len(text))] if text.strip() else [])

        header = text[:header_end].rstrip("\r")
        prefix = header + "\n"

        def budget_ok(s: int, e: int) -> bool:
            return self.count(prefix + text[s:e]) <= self.max_tokens

        rows = _spans_between(text, header_end + 1, len(text), [
            i + 1 for i in range(header_end + 1, len(text)) if text[i] == "\n"
        ])

        spans: list[Span] = []
        for row in rows:
            if spans and budget_ok(spans[-1][0], row[1]):
                spans[-1] = (spans[-1][0], row[1])
            elif budget_ok(*row):
                spans.append(row)
            else:
                spans.extend(self._hard_split(text, *row))

        units = []
        for index, (s, e) in enumerate(spans):
            unit_text = prefix + text[s:e]
            units.append(UnitData(
                public_id=new_public_id(),
                unit_index=index,
                text=unit_text,
                start_offset=s,
                end_offset=e,
                token_count=self.count(unit_text),
            ))
        return units

    def single(self, text: str) -> list[UnitData]:
        """Whole text as one unit (images, opaque files)."""
        self._cache.clear()
        span = _trim(text, 0, len(text))
        return self._to_units(text, [span] if span[0] < span[1] else [])

    def build(self, text: str, file_type: FileType) -> list[UnitData]:
        """Dispatch to the builder for a file type."""
        if file_type == FileType.CSV:
            return self.split_csv(text)
        if file_type in (FileType.IMAGE, FileType.FILE):
            return self.single(text)
        return self.split(text)

    # ----- internals -----

    def _split_span(self, text: str, start: int, end: int, level: int) -> list[Span]:
        start, end = _trim(text, start, end)
        if start >= end:
            return []
        if self._fits(text, (start, end)):
            return [(start, end)]
        if level >= len(SPLIT_LEVELS):
            return self._hard_split(text, start, end)

        parts = SPLIT_LEVELS[level](text, start, end)
        if len(parts) <= 1:
            return self._split_span(text, start, end, level + 1)

        pieces: list[Span] = []
        for s, e in parts:
            pieces.extend(self._split_span(text, s, e, level + 1))
        return self._pack(text, pieces)

    def _pack(self, text: str, pieces: list[Span]) -> list[Span]:
        """Greedily join adjacent pieces while the joined span fits."""
        packed: list[Span] = []
        for piece in pieces:
            if packed and self._fits(text, (packed[-1][0], piece[1])):
                packed[-1] = (packed[-1][0], piece[1])
            else:
                packed.append(piece)
        return packed

    def _hard_split(self, text: str, start: int, end: int) -> list[Span]:
        """Cut a span at the largest prefix that fits, preferring whitespace."""
        spans = []
        while start < end:
            lo, hi = start + 1, end
            while lo < hi:
                mid = (lo + hi + 1) // 2
                if self._fits(text, (start, mid)):
                    lo = mid
                else:
                    hi = mid - 1
            cut = lo
            if cut < end:
                space = text.rfind(" ", start, cut)
                if space > start + (cut - start) // 2:
                    cut = space
            s, e = _trim(text, start, cut)
            if s < e:
                spans.append((s, e))
            start, _ = _trim(text, cut, end)
        return spans

    def _fold_tiny(self, text: str, spans: list[Span]) -> list[Span]:
        """Fold units below the tiny threshold into a neighbour when the result fits."""
        tiny = self.tiny_threshold
        folded: list[Span] = []
        for span in spans:
            if folded:
                is_tiny = (
                    self.count(text[span[0]:span[1]]) < tiny
                    or self.count(text[folded[-1][0]:folded[-1][1]]) < tiny
                )
                merged = (folded[-1][0], span[1])
                if is_tiny and self._fits(text, merged):
                    folded[-1] = merged
                    continue
            folded.append(span)
        return folded

    def _to_units(self, text: str, spans: list[Span]) -> list[UnitData]:
        units = []
        for index, (s, e) in enumerate(spans):
            unit_text = text[s:e]
            units.append(UnitData(
                public_id=new_public_id(),
                unit_index=index,
                text=unit_text,
                start_offset=s,
                end_offset=e,
                token_count=self.count(unit_text),
            ))
        logger.debug("Text split into units", units=len(units), chars=len(text))
        return units
