"""
tests/unit/test_protocol.py — Relay wire format tests
"""

import json

import pytest

from chatbridge.exceptions import ProtocolError
from chatbridge.gateway.protocol import (
    Envelope,
    flatten,
    make_envelope,
    make_game_frame,
    parse_game_frame,
)


class TestParseGameFrame:
    def test_extracts_message(self):
        assert parse_game_frame('{"message": "[Survival] <Alice> hi"}') == "[Survival] <Alice> hi"

    def test_extra_fields_ignored(self):
        assert parse_game_frame('{"message": "hi", "type": "chat", "ts": 1}') == "hi"

    def test_invalid_json(self):
        with pytest.raises(ProtocolError, match="not valid JSON"):
            parse_game_frame("{message: hi")

    def test_non_object(self):
        with pytest.raises(ProtocolError, match="JSON object"):
            parse_game_frame('["hi"]')

    def test_missing_message(self):
        with pytest.raises(ProtocolError):
            parse_game_frame('{"text": "hi"}')

    def test_non_string_message(self):
        with pytest.raises(ProtocolError):
            parse_game_frame('{"message": 42}')

    def test_game_frame_helper_parses_back(self):
        assert parse_game_frame(make_game_frame("héllo")) == "héllo"


class TestEnvelope:
    def test_json_keeps_unicode(self):
        raw = make_envelope("Koishi", "消息推送受限").to_json()
        assert "消息推送受限" in raw
        assert json.loads(raw) == {"sender": "Koishi", "message": "消息推送受限"}

    def test_make_envelope_flattens_lines(self):
        env = make_envelope("Alice", "line one\nline two\r\nline three")
        assert env.message == "line one line two line three"

    def test_from_json(self):
        env = Envelope.from_json('{"sender": "Bob", "message": "yo"}')
        assert env == Envelope("Bob", "yo")


class TestFlatten:
    def test_single_line_unchanged(self):
        assert flatten("hello world") == "hello world"

    def test_empty(self):
        assert flatten("") == ""
