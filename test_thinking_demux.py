#!/usr/bin/env python3
"""
Tests for the inline reasoning demultiplexer and outbound encoding.
"""

import json

import pytest

from chat_relay.llm.exceptions import ErrorKind
from chat_relay.llm.streaming.demux import (
    ThinkingDemultiplexer,
    encode_event,
    partial_marker_length,
)
from chat_relay.llm.streaming.models import (
    ContentDelta,
    Done,
    StreamFailed,
    ThinkingComplete,
    ThinkingDelta,
    ThinkingStarted,
)


def run(deltas, demux=None):
    demux = demux or ThinkingDemultiplexer()
    events = []
    for delta in deltas:
        events.extend(demux.process(ContentDelta(text=delta)))
    events.extend(demux.finish())
    return events


def summarize(events):
    """Collapse delta packaging: (content, thinking, transition sequence)."""
    content = "".join(e.text for e in events if isinstance(e, ContentDelta))
    thinking = "".join(e.text for e in events if isinstance(e, ThinkingDelta))
    transitions = [
        type(e).__name__ if isinstance(e, ThinkingStarted) else e.accumulated
        for e in events
        if isinstance(e, ThinkingStarted | ThinkingComplete)
    ]
    return content, thinking, transitions


class TestThinkingDemultiplexer:
    """Test content/thinking splitting."""

    def test_split_marker_scenario(self):
        events = run(["He", "llo <thi", "nking>ana", "lysis</thinking> world"])
        assert events == [
            ContentDelta(text="He"),
            ContentDelta(text="llo "),
            ThinkingStarted(),
            ThinkingDelta(text="ana", accumulated="ana"),
            ThinkingDelta(text="lysis", accumulated="analysis"),
            ThinkingComplete(accumulated="analysis"),
            ContentDelta(text=" world"),
        ]

    def test_rechunking_is_idempotent(self):
        text = "Intro <thinking>step one, step two</thinking> answer <thinking>again</thinking>!"
        whole = summarize(run([text]))
        by_char = summarize(run(list(text)))
        by_three = summarize(run([text[i:i + 3] for i in range(0, len(text), 3)]))

        assert whole == ("Intro  answer !", "step one, step twoagain", [
            "ThinkingStarted", "step one, step two", "ThinkingStarted", "again",
        ])
        assert by_char == whole
        assert by_three == whole

    def test_marker_in_single_delta(self):
        events = run(["a<thinking>b</thinking>c"])
        assert events == [
            ContentDelta(text="a"),
            ThinkingStarted(),
            ThinkingDelta(text="b", accumulated="b"),
            ThinkingComplete(accumulated="b"),
            ContentDelta(text="c"),
        ]

    def test_accumulator_cleared_between_blocks(self):
        events = run(["<thinking>one</thinking><thinking>two</thinking>"])
        completes = [e.accumulated for e in events if isinstance(e, ThinkingComplete)]
        assert completes == ["one", "two"]

    def test_truncated_block_completes_on_finish(self):
        demux = ThinkingDemultiplexer()
        events = run(["ok <thinking>partial reas", "oning"], demux)
        assert events[-1] == ThinkingComplete(accumulated="partial reasoning")
        assert demux.blocks_truncated == 1
        assert not demux.inside_thinking

    def test_held_back_end_marker_prefix_released_on_finish(self):
        events = run(["<thinking>abc</thi"])
        assert events[-2:] == [
            ThinkingDelta(text="</thi", accumulated="abc</thi"),
            ThinkingComplete(accumulated="abc</thi"),
        ]

    def test_held_back_start_prefix_released_as_content(self):
        events = run(["a <thin"])
        assert summarize(events) == ("a <thin", "", [])

    def test_pass_through_without_markers(self):
        deltas = ["The quick ", "brown fox ", "jumps < over > 3 dogs"]
        events = run(deltas)
        assert all(isinstance(e, ContentDelta) for e in events)
        assert "".join(e.text for e in events) == "".join(deltas)

    def test_pass_through_repackages_possible_marker_prefix(self):
        # A trailing "<" could start a marker, so it travels with the next delta
        assert run(["a <", "b"]) == [ContentDelta(text="a "), ContentDelta(text="<b")]
        # Deltas without a marker prefix keep their boundaries
        assert run(["a ", "b"]) == [ContentDelta(text="a "), ContentDelta(text="b")]

    def test_custom_markers(self):
        demux = ThinkingDemultiplexer("[[", "]]")
        assert summarize(run(["x[[y]]z"], demux)) == ("xz", "y", ["ThinkingStarted", "y"])

    def test_rejects_empty_markers(self):
        with pytest.raises(ValueError):
            ThinkingDemultiplexer("", "</thinking>")

    def test_reset(self):
        demux = ThinkingDemultiplexer()
        demux.process("<thinking>abc")
        demux.reset()
        assert not demux.inside_thinking
        assert demux.process("plain") == [ContentDelta(text="plain")]


class TestPartialMarkerLength:
    def test_prefixes(self):
        assert partial_marker_length("llo <thi", "<thinking>") == 4
        assert partial_marker_length("abc<", "<thinking>") == 1
        assert partial_marker_length("abc", "<thinking>") == 0

    def test_full_marker_is_not_partial(self):
        assert partial_marker_length("<thinking>", "<thinking>") == 0


class TestEncodeEvent:
    """Test outbound SSE encoding."""

    def decode(self, line):
        assert line.startswith("data: ") and line.endswith("\n\n")
        return json.loads(line[len("data: "):-2])

    def test_content_matches_provider_chunk_shape(self):
        payload = self.decode(encode_event(ContentDelta(text="héllo")))
        assert payload == {"choices": [{"index": 0, "delta": {"content": "héllo"}}]}

    def test_thinking_events(self):
        assert self.decode(encode_event(ThinkingStarted())) == {
            "thinking": True, "type": "started",
        }
        assert self.decode(encode_event(ThinkingDelta(text="a", accumulated="ba"))) == {
            "thinking": True, "type": "delta", "delta": "a", "accumulated": "ba",
        }
        assert self.decode(encode_event(ThinkingComplete(accumulated="ba"))) == {
            "thinking": True, "type": "complete", "accumulated": "ba",
        }

    def test_failure_and_done(self):
        line = encode_event(StreamFailed(kind=ErrorKind.FIRST_TOKEN_TIMEOUT, message="slow"))
        assert self.decode(line) == {
            "error": {"kind": "first_token_timeout", "message": "slow"},
        }
        assert encode_event(Done()) == "data: [DONE]\n\n"
