"""
Incremental parser for inline [[citation-id]] markers.

Generated answers cite text units with markers such as `[[abc-123]]`. The
answer arrives as a stream of arbitrary chunks, so a marker may be split
across chunks; the parser holds back a possible partial marker until it is
either completed or proven not to be one.

Rules:
- A valid id is a non-empty run of [A-Za-z0-9_-]
- Valid markers become citation events and never appear as content
- An opening `[[` whose contents are not a valid id is emitted as literal
  content one character at a time, so the text after it is rescanned
- `flush()` emits whatever is still held back as plain content

Not safe for concurrent use; one parser per stream.
"""

import re
from collections.abc import Callable

MARKER_OPEN = "[["
MARKER_CLOSE = "]]"
CITATION_ID = re.compile(r"[A-Za-z0-9_-]+")

ContentHandler = Callable[[str], None]
CitationHandler = Callable[[str], None]


class CitationStreamParser:
    """
    Splits a text stream into content and citation events.

    Example:
        parser = CitationStreamParser()
        parser.consume("See [[abc", on_content, on_citation)
        parser.consume("-123]] end", on_content, on_citation)
        parser.flush(on_content)
        # content "See ", citation "abc-123", content " end"
    """

    def __init__(self) -> None:
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Unconsumed tail held back for the next chunk."""
        return self._buffer

    def consume(
        self,
        chunk: str,
        on_content: ContentHandler,
        on_citation: CitationHandler,
    ) -> None:
        self._buffer += chunk

        while self._buffer:
            start = self._buffer.find(MARKER_OPEN)
            if start == -1:
                # A trailing "[" may be the first half of an opening marker
                if self._buffer.endswith("["):
                    head, self._buffer = self._buffer[:-1], "["
                    if head:
                        on_content(head)
                else:
                    on_content(self._buffer)
                    self._buffer = ""
                return

            if start > 0:
                on_content(self._buffer[:start])
                self._buffer = self._buffer[start:]

            end = self._buffer.find(MARKER_CLOSE, len(MARKER_OPEN))
            if end == -1:
                candidate = self._buffer[len(MARKER_OPEN):]
                # Still a possible marker: an id prefix, optionally followed by one "]"
                if candidate == "" or CITATION_ID.fullmatch(candidate.removesuffix("]")):
                    return
                on_content(self._buffer[0])
                self._buffer = self._buffer[1:]
                continue

            citation_id = self._buffer[len(MARKER_OPEN):end]
            if CITATION_ID.fullmatch(citation_id):
                on_citation(citation_id)
                self._buffer = self._buffer[end + len(MARKER_CLOSE):]
            else:
                on_content(self._buffer[0])
                self._buffer = self._buffer[1:]

    def flush(self, on_content: ContentHandler) -> None:
        """Emit held-back text as content (call at end of stream)."""
        if self._buffer:
            on_content(self._buffer)
            self._buffer = ""

    def parse(self, text: str) -> list[tuple[str, str]]:
        """Parse a complete text into ("content" | "citation", value) events."""
        events: list[tuple[str, str]] = []
        self.consume(
            text,
            lambda content: events.append(("content", content)),
            lambda citation: events.append(("citation", citation)),
        )
        self.flush(lambda content: events.append(("content", content)))
        return events
