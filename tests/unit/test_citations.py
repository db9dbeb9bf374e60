"""Unit tests for the citation stream parser."""

import pytest

from src.services.citations import CitationStreamParser


def run(chunks: list[str]) -> tuple[str, list[str]]:
    """Feed chunks through one parser; returns (joined content, citations)."""
    parser = CitationStreamParser()
    content: list[str] = []
    citations: list[str] = []
    for chunk in chunks:
        parser.consume(chunk, content.append, citations.append)
    parser.flush(content.append)
    return "".join(content), citations


# =============================================================================
# Whole Text
# =============================================================================


class TestParse:
    """Tests for parsing complete texts."""

    def test_plain_text(self) -> None:
        assert CitationStreamParser().parse("No markers here.") == [("content", "No markers here.")]

    def test_marker_between_content(self) -> None:
        assert CitationStreamParser().parse("See [[abc-123]] end") == [
            ("content", "See "),
            ("citation", "abc-123"),
            ("content", " end"),
        ]

    def test_adjacent_markers(self) -> None:
        assert CitationStreamParser().parse("[[a]][[b_2]]") == [("citation", "a"), ("citation", "b_2")]

    @pytest.mark.parametrize("text", ["x [[a b]] y", "[[]]", "[[a.b]]", "a ]] b", "[single] brackets"])
    def test_invalid_markers_stay_content(self, text: str) -> None:
        assert run([text]) == (text, [])

    def test_extra_bracket_before_marker(self) -> None:
        assert run(["[[[a]]"]) == ("[", ["a"])


# =============================================================================
# Streaming
# =============================================================================


class TestStreaming:
    """Tests for markers split across chunks."""

    def test_marker_split_inside_id(self) -> None:
        assert run(["See [[abc", "-123]] end"]) == ("See  end", ["abc-123"])

    def test_marker_split_between_brackets(self) -> None:
        assert run(["Hello [", "[x]] ok"]) == ("Hello  ok", ["x"])

    def test_marker_split_in_closing_brackets(self) -> None:
        assert run(["[[abc]", "] done"]) == (" done", ["abc"])

    def test_every_character_a_chunk(self) -> None:
        text = "Acme [[u-1]] builds [[u_2]] widgets [not [[a b]]."
        assert run(list(text)) == run([text])
        assert run(list(text)) == ("Acme  builds  widgets [not [[a b]].", ["u-1", "u_2"])

    def test_pending_holds_partial_marker(self) -> None:
        parser = CitationStreamParser()
        content: list[str] = []
        parser.consume("text [[abc", content.append, lambda _: None)

        assert content == ["text "]
        assert parser.pending == "[[abc"

    def test_invalid_partial_is_released(self) -> None:
        parser = CitationStreamParser()
        content: list[str] = []
        parser.consume("[[a b", content.append, lambda _: None)

        assert "".join(content) == "[[a b"
        assert parser.pending == ""

    def test_flush_releases_unfinished_marker(self) -> None:
        assert run(["end [[abc"]) == ("end [[abc", [])
        assert run(["trailing ["]) == ("trailing [", [])

    def test_flush_on_empty_parser(self) -> None:
        content: list[str] = []
        CitationStreamParser().flush(content.append)
        assert content == []
