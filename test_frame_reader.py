#!/usr/bin/env python3
"""
Tests for SSE line framing.
"""

from chat_relay.llm.streaming.models import LineKind
from chat_relay.llm.streaming.reader import FrameReader, classify_line


class TestClassifyLine:
    """Test single-line classification."""

    def test_data_line(self):
        assert classify_line('data: {"a": 1}') == LineKind.DATA

    def test_comment_line(self):
        assert classify_line(": keep-alive") == LineKind.COMMENT

    def test_blank_line(self):
        assert classify_line("") == LineKind.BLANK
        assert classify_line("   ") == LineKind.BLANK

    def test_unrecognized_line(self):
        assert classify_line("event: message") == LineKind.UNRECOGNIZED


class TestFrameReader:
    """Test chunk-to-line reassembly."""

    def test_complete_lines_in_one_chunk(self):
        reader = FrameReader()
        lines = reader.feed('data: {"x": 1}\n\ndata: [DONE]\n\n')
        assert [line.text for line in lines] == ['data: {"x": 1}', "data: [DONE]"]
        assert all(line.kind == LineKind.DATA for line in lines)
        assert reader.pending == ""

    def test_line_split_across_chunks(self):
        """A line is only emitted once its newline arrives."""
        reader = FrameReader()
        assert reader.feed('data: {"choices": [{"del') == []
        assert reader.pending == 'data: {"choices": [{"del'

        lines = reader.feed('ta": {"content": "Hi"}}]}\n')
        assert len(lines) == 1
        assert lines[0].text == 'data: {"choices": [{"delta": {"content": "Hi"}}]}'
        assert reader.pending == ""

    def test_strips_carriage_return(self):
        reader = FrameReader()
        lines = reader.feed("data: one\r\ndata: two\r\n")
        assert [line.text for line in lines] == ["data: one", "data: two"]

    def test_drops_blank_and_comment_lines(self):
        reader = FrameReader()
        lines = reader.feed(": OPENROUTER PROCESSING\n\n\r\ndata: x\n")
        assert [line.text for line in lines] == ["data: x"]
        assert reader.lines_dropped == 3
        assert reader.lines_read == 1

    def test_keeps_unrecognized_lines(self):
        reader = FrameReader()
        lines = reader.feed("event: ping\n")
        assert lines[0].kind == LineKind.UNRECOGNIZED

    def test_empty_chunk(self):
        reader = FrameReader()
        assert reader.feed("") == []

    def test_byte_at_a_time(self):
        """Arbitrary chunking yields the same lines."""
        stream = 'data: {"a": "b"}\n\n: c\ndata: [DONE]\n\n'
        reader = FrameReader()
        lines = []
        for ch in stream:
            lines.extend(reader.feed(ch))
        assert [line.text for line in lines] == ['data: {"a": "b"}', "data: [DONE]"]

    def test_close_discards_tail(self):
        reader = FrameReader()
        reader.feed("data: partial")
        reader.close()
        assert reader.pending == ""
        assert reader.feed("\n") == []
