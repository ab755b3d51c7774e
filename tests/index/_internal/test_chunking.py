"""Tests for sentence splitting and chunking strategies."""

from __future__ import annotations

from tabrecall.config.constants import WINDOW_OVERLAP_WORDS
from tabrecall.index._internal.chunking import ChunkingOptions, TextChunker, split_sentences


def _numbered_sentences(count: int) -> str:
    return " ".join(
        f"Sentence number {i} talks about topic {i} in some detail." for i in range(count)
    )


class TestSplitSentences:
    def test_splits_latin_sentences_on_capitalized_boundaries(self) -> None:
        text = "The first sentence is here. The second one follows! Is this the third?"
        assert split_sentences(text) == [
            "The first sentence is here.",
            "The second one follows!",
            "Is this the third?",
        ]

    def test_drops_fragments_at_or_below_minimum_length(self) -> None:
        text = "Too short. This sentence is long enough to keep."
        assert split_sentences(text) == ["This sentence is long enough to keep."]

    def test_splits_cjk_sentences(self) -> None:
        text = "今天天气很好，我们去公园散步吧。明天可能会下雨，记得带伞出门哦。"
        sentences = split_sentences(text)
        assert len(sentences) == 2
        assert sentences[0].endswith("。")

    def test_given_long_unpunctuated_text_when_split_then_aggressive_split_used(self) -> None:
        """Fewer than three sentences in >500 chars falls back to clause splitting."""
        # Given
        text = "; ".join(["lorem ipsum dolor sit amet consectetur"] * 20)
        assert len(text) > 500

        # When
        sentences = split_sentences(text)

        # Then
        assert len(sentences) == 20
        assert all("lorem" in s for s in sentences)


class TestTextChunker:
    """Chunking strategies and the minimum length rule."""

    def test_given_title_when_chunk_then_title_chunk_first(self) -> None:
        chunks = TextChunker().chunk(_numbered_sentences(3), title="  Interesting Page  ")

        assert chunks[0].source == "title"
        assert chunks[0].text == "Interesting Page"
        assert chunks[0].index == 0
        assert chunks[1].index == 1

    def test_short_title_is_skipped(self) -> None:
        chunks = TextChunker().chunk(_numbered_sentences(3), title="Home")
        assert all(c.source != "title" for c in chunks)

    def test_title_disabled_by_option(self) -> None:
        chunker = TextChunker(ChunkingOptions(include_title=False))
        chunks = chunker.chunk(_numbered_sentences(3), title="Interesting Page")
        assert all(c.source != "title" for c in chunks)

    def test_empty_text_yields_only_title(self) -> None:
        chunker = TextChunker()
        assert [c.source for c in chunker.chunk("   ", title="A Proper Title")] == ["title"]
        assert chunker.chunk("", title=None) == []

    def test_given_many_sentences_when_chunk_then_packed_with_overlap(self) -> None:
        """Greedy packing respects the word bound and overlaps one sentence."""
        # Given: 20 sentences of 10 words each
        text = _numbered_sentences(20)

        # When
        chunks = TextChunker(ChunkingOptions(max_words_per_chunk=80)).chunk(text)

        # Then
        assert [c.source for c in chunks] == [
            "content_chunk_0",
            "content_chunk_1",
            "content_chunk_2",
        ]
        assert all(c.word_count <= 80 for c in chunks)
        last_of_first = chunks[0].text.rsplit("Sentence", 1)[1]
        assert chunks[1].text.startswith("Sentence" + last_of_first)
        assert chunks[-1].text.endswith("topic 19 in some detail.")

    def test_given_over_long_sentence_when_chunk_then_mixed_strategy(self) -> None:
        """A sentence over the word bound is cut into parts; short ones stand alone."""
        # Given
        long_sentence = "Word0 " + " ".join(f"word{i}" for i in range(1, 200)) + "."
        text = f"This short sentence is fine. Tiny but ok here. {long_sentence}"

        # When
        chunks = TextChunker(ChunkingOptions(max_words_per_chunk=80)).chunk(text)

        # Then
        assert [c.source for c in chunks] == [
            "sentence_chunk_0",
            "long_sentence_chunk_2_part_0",
            "long_sentence_chunk_2_part_1",
            "long_sentence_chunk_2_part_2",
        ]
        assert [c.word_count for c in chunks[1:]] == [80, 80, 50]
        for before, after in zip(chunks[1:], chunks[2:]):
            overlap = before.text.split()[-WINDOW_OVERLAP_WORDS:]
            assert after.text.split()[:WINDOW_OVERLAP_WORDS] == overlap

    def test_given_no_sentences_when_chunk_then_paragraph_fallback(self) -> None:
        text = "short line one\nshort line two\nshort three\n\nanother para\nwith words here"

        chunks = TextChunker().chunk(text)

        assert [c.source for c in chunks] == ["paragraph_0_chunk_0", "paragraph_1_chunk_0"]
        assert chunks[0].text == "short line one short line two short three"

    def test_given_single_block_without_sentences_then_content_windows(self) -> None:
        text = "tiny line here\nmore tiny bits\nand yet more"

        chunks = TextChunker().chunk(text)

        assert [c.source for c in chunks] == ["content_chunk_0"]

    def test_every_content_chunk_exceeds_minimum_length(self) -> None:
        """Short sentences never become chunks, whatever the strategy."""
        long_sentence = "Alpha " + " ".join(["beta"] * 120) + "."
        text = f"Ok this is tiny. Another short one! {long_sentence} Fine, it ends here now."
        chunker = TextChunker(ChunkingOptions(min_chunk_length=20))

        chunks = chunker.chunk(text, title="Mixed Content Page")

        content = [c for c in chunks if c.source != "title"]
        assert content
        assert all(len(c.text.strip()) > 20 for c in content)
