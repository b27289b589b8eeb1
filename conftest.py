"""Shared test fixtures and utilities."""

import json
from unittest.mock import MagicMock

import pytest

from speaker_scribe.shared import TranscriptionItem


def make_openai_response(text="{}", prompt_tokens=10, completion_tokens=5):
    """Build a mock OpenAI ChatCompletion response."""
    msg = MagicMock()
    msg.content = text if text is None or isinstance(text, str) else json.dumps(text)
    choice = MagicMock()
    choice.message = msg
    usage = MagicMock()
    usage.prompt_tokens = prompt_tokens
    usage.completion_tokens = completion_tokens
    resp = MagicMock()
    resp.choices = [choice]
    resp.usage = usage
    return resp


def make_anthropic_tool_response(data, name="store_result"):
    """Build a mock Anthropic Message whose only block is a tool call."""
    block = MagicMock()
    block.type = "tool_use"
    block.name = name
    block.input = data
    resp = MagicMock()
    resp.content = [block]
    return resp


def make_items(*rows):
    """Build TranscriptionItems from (speaker, start, end, text) tuples."""
    return [TranscriptionItem(speaker=s, start_time=a, end_time=b, text=t)
            for s, a, b, t in rows]


@pytest.fixture
def fake_audio(tmp_path):
    """A small file standing in for an mp3 on disk."""
    path = tmp_path / "audio.mp3"
    path.write_bytes(b"ID3fake-mp3-bytes")
    return path
