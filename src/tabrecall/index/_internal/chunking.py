"""Split extracted page text into bounded, sentence-aligned chunks.

Strategy, in order of preference:
  1. Greedy sentence packing up to ``max_words_per_chunk`` with a sentence
     overlap between consecutive chunks.
  2. Mixed: if any sentence alone exceeds the word bound, short sentences
     become their own chunk and long ones are cut into word windows.
  3. Fallback: no usable sentences at all, so cut paragraphs (or the whole
     text) into fixed word windows.

The sentence splitter understands Latin and CJK terminators. When it finds
fewer than three sentences in a long text (typical for scraped pages with
little punctuation) a more aggressive splitter also breaks on clause
separators and closing brackets.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from tabrecall.config.constants import (
    AGGRESSIVE_SPLIT_MIN_CHARS,
    AGGRESSIVE_SPLIT_MIN_SENTENCES,
    FALLBACK_WINDOW_WORDS,
    SENTENCE_MIN_LENGTH,
    TITLE_MIN_LENGTH,
    WINDOW_OVERLAP_WORDS,
)
from tabrecall.index.models import TextChunk

# Sentence boundaries. Each rewrite inserts a newline after a terminator.
_CJK_END = re.compile(r"([。！？][\"'”’]?)\s*")
_LATIN_END = re.compile(r"([.!?][\"'”’]?)\s+(?=[A-Z])")
_LINE_END = re.compile(r"([.!?])\s*$", re.MULTILINE)
_BLANK_LINES = re.compile(r"\n\s*\n")

# Aggressive boundaries
_ANY_END = re.compile(r"([.!?。！？])")
_CLAUSE = re.compile(r"([;；:：])")
_BRACKET = re.compile(r"([)）])\s*(?=[\u4e00-\u9fa5A-Z])")

_PARAGRAPH = re.compile(r"\n\s*\n")


@dataclass(frozen=True, slots=True)
class ChunkingOptions:
    max_words_per_chunk: int = 80
    overlap_sentences: int = 1
    min_chunk_length: int = 20
    include_title: bool = True


def _words(text: str) -> list[str]:
    return text.split()


def split_sentences(content: str) -> list[str]:
    """Split text into sentences longer than the minimum sentence length."""
    processed = _CJK_END.sub("\\1\n", content)
    processed = _LATIN_END.sub("\\1\n", processed)
    processed = _LINE_END.sub("\\1\n", processed)
    processed = _BLANK_LINES.sub("\n", processed)

    sentences = [s.strip() for s in processed.split("\n")]
    sentences = [s for s in sentences if len(s) > SENTENCE_MIN_LENGTH]

    if len(sentences) < AGGRESSIVE_SPLIT_MIN_SENTENCES and len(content) > AGGRESSIVE_SPLIT_MIN_CHARS:
        return _split_aggressively(content)
    return sentences


def _split_aggressively(content: str, max_words: int = 80) -> list[str]:
    processed = _ANY_END.sub("\\1\n", content)
    processed = _CLAUSE.sub("\\1\n", processed)
    processed = _BRACKET.sub("\\1\n", processed)
    pieces = [s.strip() for s in processed.split("\n")]

    result: list[str] = []
    step = max(1, max_words - WINDOW_OVERLAP_WORDS)
    for piece in pieces:
        if len(piece) <= SENTENCE_MIN_LENGTH:
            continue
        words = _words(piece)
        if len(words) <= max_words:
            result.append(piece)
            continue
        for start in range(0, len(words), step):
            window = " ".join(words[start : start + max_words])
            if len(window) > SENTENCE_MIN_LENGTH:
                result.append(window)
    return result


class TextChunker:
    """Stateless chunker. One instance can serve every document."""

    def __init__(self, options: ChunkingOptions | None = None) -> None:
        self.options = options or ChunkingOptions()

    def chunk(self, text: str, title: str | None = None) -> list[TextChunk]:
        opts = self.options
        chunks: list[TextChunk] = []

        clean_title = (title or "").strip()
        if opts.include_title and len(clean_title) > TITLE_MIN_LENGTH:
            chunks.append(
                TextChunk(
                    text=clean_title,
                    source="title",
                    index=0,
                    word_count=len(_words(clean_title)),
                )
            )

        content = (text or "").strip()
        if not content:
            return chunks

        sentences = split_sentences(content)
        if not sentences:
            return self._fallback(content, chunks)
        if any(len(_words(s)) > opts.max_words_per_chunk for s in sentences):
            return self._mixed(sentences, chunks)
        return self._pack(sentences, chunks)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _keep(self, text: str) -> bool:
        return len(text.strip()) > self.options.min_chunk_length

    def _pack(self, sentences: list[str], chunks: list[TextChunk]) -> list[TextChunk]:
        opts = self.options
        index = len(chunks)
        i = 0
        while i < len(sentences):
            parts: list[str] = []
            word_count = 0
            used = 0
            while i + used < len(sentences) and word_count < opts.max_words_per_chunk:
                sentence = sentences[i + used]
                n = len(_words(sentence))
                if word_count + n > opts.max_words_per_chunk and word_count > 0:
                    break
                parts.append(sentence)
                word_count += n
                used += 1

            chunk_text = " ".join(parts).strip()
            if self._keep(chunk_text):
                chunks.append(
                    TextChunk(
                        text=chunk_text,
                        source=f"content_chunk_{index}",
                        index=index,
                        word_count=word_count,
                    )
                )
                index += 1

            if i + used >= len(sentences):
                break
            i += max(1, used - opts.overlap_sentences)
        return chunks

    def _mixed(self, sentences: list[str], chunks: list[TextChunk]) -> list[TextChunk]:
        max_words = self.options.max_words_per_chunk
        index = len(chunks)
        for sentence in sentences:
            words = _words(sentence)
            if len(words) <= max_words:
                if self._keep(sentence):
                    chunks.append(
                        TextChunk(
                            text=sentence.strip(),
                            source=f"sentence_chunk_{index}",
                            index=index,
                            word_count=len(words),
                        )
                    )
                index += 1
                continue
            step = max(1, max_words - WINDOW_OVERLAP_WORDS)
            for part, start in enumerate(range(0, len(words), step)):
                window = words[start : start + max_words]
                window_text = " ".join(window)
                if self._keep(window_text):
                    chunks.append(
                        TextChunk(
                            text=window_text,
                            source=f"long_sentence_chunk_{index}_part_{part}",
                            index=index,
                            word_count=len(window),
                        )
                    )
                # the last window already reaches the sentence end
                if start + max_words >= len(words):
                    break
            index += 1
        return chunks

    def _fallback(self, content: str, chunks: list[TextChunk]) -> list[TextChunk]:
        index = len(chunks)
        paragraphs = [p.strip() for p in _PARAGRAPH.split(content) if self._keep(p)]

        if len(paragraphs) > 1:
            for p_index, paragraph in enumerate(paragraphs):
                for part, window in enumerate(_windows(paragraph, FALLBACK_WINDOW_WORDS)):
                    window_text = " ".join(window)
                    if self._keep(window_text):
                        chunks.append(
                            TextChunk(
                                text=window_text,
                                source=f"paragraph_{p_index}_chunk_{part}",
                                index=index,
                                word_count=len(window),
                            )
                        )
                        index += 1
            return chunks

        for part, window in enumerate(_windows(content, FALLBACK_WINDOW_WORDS)):
            window_text = " ".join(window)
            if self._keep(window_text):
                chunks.append(
                    TextChunk(
                        text=window_text,
                        source=f"content_chunk_{part}",
                        index=index,
                        word_count=len(window),
                    )
                )
                index += 1
        return chunks


def _windows(text: str, size: int) -> list[list[str]]:
    words = _words(text)
    return [words[i : i + size] for i in range(0, len(words), size)]
