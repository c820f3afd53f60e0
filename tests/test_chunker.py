"""Test sentence detection and read-aloud chunking."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bookflow import (
    ReflowCoordinator, Settings, MemoryBook, SpeechChunk,
    is_sentence_end, split_sentences, split_into_sentence_chunks,
    build_speech_chunks, speech_paragraphs, find_chunk_at, layout_chapter,
)


SENTENCES = ["Sentence number {} runs along the quiet river bank.".format(i) for i in range(20)]


class TestSentenceEnds:
    """Test sentence boundary detection."""

    def test_abbreviation_is_not_an_end(self):
        assert split_sentences("Dr. Smith arrived.") == ["Dr. Smith arrived."]

    def test_two_sentences(self):
        assert split_sentences("He left. She stayed.") == ["He left.", "She stayed."]

    def test_initials(self):
        assert split_sentences("J. R. R. Tolkien wrote books.") == ["J. R. R. Tolkien wrote books."]
        assert not is_sentence_end("e.g. this", 3)

    def test_question_exclamation_semicolon(self):
        assert split_sentences("Is it? Yes! Fine; done.") == ["Is it?", "Yes!", "Fine;", "done."]

    def test_period_inside_word_is_not_an_end(self):
        assert not is_sentence_end("see example.com now", 11)
        assert is_sentence_end("the end.", 7)


class TestChunking:
    """Test chunk sizes and reconstruction."""

    def test_chunks_within_bounds(self):
        text = " ".join(SENTENCES)
        chunks = split_into_sentence_chunks(text, 100, 150)
        assert len(chunks) > 1
        assert all(len(chunk) <= 150 for chunk in chunks)
        assert all(len(chunk) > 100 for chunk in chunks[:-1])
        assert all(chunk.endswith(".") for chunk in chunks)

    def test_chunks_rebuild_text(self):
        text = " ".join(SENTENCES)
        assert " ".join(split_into_sentence_chunks(text, 100, 150)) == text
        assert " ".join(split_into_sentence_chunks(text)) == text

    def test_short_text_is_one_chunk(self):
        assert split_into_sentence_chunks("He left. She stayed.") == ["He left. She stayed."]

    def test_no_boundary_runs_on(self):
        text = " ".join(["word"] * 120)
        assert split_into_sentence_chunks(text, 100, 150) == [text]

    def test_empty_input(self):
        assert split_into_sentence_chunks("") == []
        assert split_into_sentence_chunks("   ") == []


class TestSpeechChunks:
    """Test chunks built from document rows."""

    def setup_method(self):
        self.lines = ["* First item here.", "", "# Heading", "", "Body row one continues",
                      "onto row two.", "", "[Image: map.png]", "", "   * * *"]
        self.skip = [7, 9]
        self.markers = {0: 2, 2: 2}

    def test_paragraphs_skip_blank_and_image_rows(self):
        assert speech_paragraphs(self.lines, skip_rows=self.skip) == [(0, 1), (2, 3), (4, 6)]

    def test_highlight_ranges(self):
        chunks = build_speech_chunks(self.lines, 300, 400, self.skip, self.markers)
        assert chunks == [
            SpeechChunk("First item here.", 0, {0: (2, 18)}),
            SpeechChunk("Heading", 2, {2: (2, 9)}),
            SpeechChunk("Body row one continues onto row two.", 4, {4: (0, 22), 5: (0, 13)}),
        ]

    def test_small_chunks_split_rows(self):
        lines = ["He left. She", "stayed."]
        chunks = build_speech_chunks(lines, 1, 10)
        assert [c.text for c in chunks] == ["He left.", "She stayed."]
        assert chunks[0].highlights == {0: (0, 8)}
        assert chunks[1].highlights == {0: (9, 12), 1: (0, 7)}
        assert chunks[1].first_row == 0

    def test_rows_without_markers_are_read_whole(self):
        chunks = build_speech_chunks(["1. not a list", "* not a bullet"], 300, 400)
        assert chunks == [SpeechChunk("1. not a list * not a bullet", 0,
                                      {0: (0, 13), 1: (0, 14)})]

    def test_wrapped_number_is_kept(self):
        structure = layout_chapter(
            "<p>It all started back in the year 1999. That was long ago.</p>", 33)
        assert structure.lines == ("It all started back in the year", "1999. That was long ago.")
        chunks = build_speech_chunks(structure.lines, marker_rows=structure.marker_rows)
        assert chunks == [SpeechChunk("It all started back in the year 1999. That was long ago.",
                                      0, {0: (0, 31), 1: (0, 24)})]

    def test_heading_and_list_markers_from_layout(self):
        structure = layout_chapter(
            "<h2>Heading</h2><ol><li>First step</li><li>Second step</li></ol>", 40)
        assert structure.lines == ("## Heading", "", "1. First step", "2. Second step")
        assert structure.marker_rows == {0: 3, 2: 3, 3: 3}
        chunks = build_speech_chunks(structure.lines, marker_rows=structure.marker_rows)
        assert chunks == [
            SpeechChunk("Heading", 0, {0: (3, 10)}),
            SpeechChunk("First step Second step", 2, {2: (3, 13), 3: (3, 14)}),
        ]

    def test_find_chunk_at(self):
        chunks = build_speech_chunks(self.lines, 300, 400, self.skip, self.markers)
        assert find_chunk_at(chunks, 0) == 0
        assert find_chunk_at(chunks, 1) == 1
        assert find_chunk_at(chunks, 5) == 2
        assert find_chunk_at(chunks, 8) is None

    def test_empty_chapter_has_no_chunks(self):
        coordinator = ReflowCoordinator(MemoryBook([("ch1.xhtml", "")]))
        coordinator.load()
        assert coordinator.speech_chunks() == []

    def test_document_chunks_skip_break_rows(self, book):
        coordinator = ReflowCoordinator(book, Settings(width=50, chunk_min=80, chunk_max=120))
        coordinator.load()
        chunks = coordinator.speech_chunks()
        breaks = set(coordinator.document.pagebreak_rows)
        assert chunks
        for chunk in chunks:
            assert not breaks & set(chunk.highlights)
            assert "[Image:" not in chunk.text
            for row, (start, end) in chunk.highlights.items():
                assert 0 <= start < end <= len(coordinator.document.lines[row])
