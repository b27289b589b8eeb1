"""Tests for inference.py: content parts, client selection, and structured requests."""

import base64
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_anthropic_tool_response, make_openai_response
from speaker_scribe.inference import (
    CLAUDE_MAX_TOKENS, RESULT_TOOL_NAME,
    InferenceError, SchemaValidationError,
    audio_part, text_part, create_llm_client, create_text_client,
    request_structured, text_request_options, _strip_code_fence,
)
from speaker_scribe.schemas import SpeakerMappingResponse, SummaryResponse
from speaker_scribe.shared import ScribeConfig


def _config(**overrides):
    defaults = dict(source_path=Path("talk.m4a"))
    defaults.update(overrides)
    return ScribeConfig(**defaults)


SUMMARY = {"title": "Rivers", "slug": "rivers", "summary": "- maps"}


# ---------------------------------------------------------------------------
# Content parts
# ---------------------------------------------------------------------------

class TestContentParts:
    def test_text_part(self):
        assert text_part("hi") == {"type": "text", "text": "hi"}

    def test_audio_part_inlines_base64(self, fake_audio):
        part = audio_part(fake_audio)
        assert part["type"] == "input_audio"
        assert part["input_audio"]["format"] == "mp3"
        assert base64.b64decode(part["input_audio"]["data"]) == fake_audio.read_bytes()

    def test_audio_part_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            audio_part(tmp_path / "missing.mp3")


class TestStripCodeFence:
    def test_plain_json_unchanged(self):
        assert _strip_code_fence('{"a": 1}') == '{"a": 1}'

    def test_fenced_json(self):
        assert _strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'


# ---------------------------------------------------------------------------
# Client selection
# ---------------------------------------------------------------------------

class TestCreateClients:
    @patch("openai.OpenAI")
    def test_llm_client_uses_config(self, mock_openai):
        config = _config(api_key="sk-test", base_url="https://example.test/v1", api_timeout=30.0)
        create_llm_client(config)
        mock_openai.assert_called_once_with(
            base_url="https://example.test/v1", api_key="sk-test", timeout=30.0)

    @patch("openai.OpenAI")
    def test_llm_client_falls_back_to_env(self, mock_openai, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-env")
        create_llm_client(_config())
        assert mock_openai.call_args.kwargs["api_key"] == "sk-env"

    @patch("anthropic.Anthropic")
    def test_text_client_anthropic(self, mock_anthropic):
        create_text_client(_config(text_backend="anthropic", anthropic_api_key="sk-ant"))
        assert mock_anthropic.call_args.kwargs["api_key"] == "sk-ant"

    @patch("speaker_scribe.inference.create_llm_client")
    def test_text_client_defaults_to_main_backend(self, mock_create):
        config = _config()
        assert create_text_client(config) is mock_create.return_value
        mock_create.assert_called_once_with(config)


class TestTextRequestOptions:
    def test_openrouter(self):
        opts = text_request_options(_config(model="google/test", max_tokens=1000))
        assert opts == {"backend": "openrouter", "model": "google/test", "max_tokens": 1000}

    def test_anthropic(self):
        opts = text_request_options(_config(text_backend="anthropic", claude_model="claude-x"))
        assert opts == {"backend": "anthropic", "model": "claude-x", "max_tokens": CLAUDE_MAX_TOKENS}


# ---------------------------------------------------------------------------
# request_structured: OpenAI-compatible path
# ---------------------------------------------------------------------------

class TestRequestStructuredOpenAI:
    def _call(self, client, schema=SummaryResponse):
        return request_structured(
            client, model="google/test", system="be helpful",
            content=[text_part("transcript")], schema=schema, max_tokens=100,
        )

    def test_returns_validated_model(self):
        client = MagicMock()
        client.chat.completions.create.return_value = make_openai_response(SUMMARY)
        result = self._call(client)
        assert isinstance(result, SummaryResponse)
        assert result.title == "Rivers"

    def test_sends_json_schema(self):
        client = MagicMock()
        client.chat.completions.create.return_value = make_openai_response(SUMMARY)
        self._call(client)
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "google/test"
        assert kwargs["max_tokens"] == 100
        assert kwargs["messages"][0] == {"role": "system", "content": "be helpful"}
        assert kwargs["messages"][1]["content"] == [text_part("transcript")]
        fmt = kwargs["response_format"]
        assert fmt["type"] == "json_schema"
        assert fmt["json_schema"]["name"] == "SummaryResponse"
        assert "title" in fmt["json_schema"]["schema"]["properties"]

    def test_accepts_fenced_json(self):
        client = MagicMock()
        client.chat.completions.create.return_value = make_openai_response(
            '```json\n{"mapping": [{"code": "SPEAKER_01", "name": "Alice"}]}\n```')
        result = self._call(client, SpeakerMappingResponse)
        assert result.as_dict() == {"SPEAKER_01": "Alice"}

    def test_wrong_shape_raises_schema_error(self):
        client = MagicMock()
        client.chat.completions.create.return_value = make_openai_response({"title": "only"})
        with pytest.raises(SchemaValidationError):
            self._call(client)

    def test_invalid_json_raises_schema_error(self):
        client = MagicMock()
        client.chat.completions.create.return_value = make_openai_response("not json at all")
        with pytest.raises(SchemaValidationError):
            self._call(client)

    def test_empty_content_raises_schema_error(self):
        client = MagicMock()
        client.chat.completions.create.return_value = make_openai_response(None)
        with pytest.raises(SchemaValidationError):
            self._call(client)

    def test_no_choices_raises(self):
        client = MagicMock()
        resp = make_openai_response(SUMMARY)
        resp.choices = []
        client.chat.completions.create.return_value = resp
        with pytest.raises(InferenceError):
            self._call(client)

    def test_transport_error_propagates(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = ConnectionError("reset")
        with pytest.raises(ConnectionError):
            self._call(client)


# ---------------------------------------------------------------------------
# request_structured: Anthropic path
# ---------------------------------------------------------------------------

class TestRequestStructuredAnthropic:
    def _call(self, client, content=None):
        return request_structured(
            client, model="claude-x", system="be helpful",
            content=content or [text_part("transcript")],
            schema=SummaryResponse, max_tokens=100, backend="anthropic",
        )

    def test_forces_tool_call(self):
        client = MagicMock()
        client.messages.create.return_value = make_anthropic_tool_response(SUMMARY)
        result = self._call(client)
        assert result.slug == "rivers"
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": RESULT_TOOL_NAME}
        assert kwargs["tools"][0]["input_schema"] == SummaryResponse.model_json_schema()
        assert kwargs["system"] == "be helpful"
        assert kwargs["messages"] == [
            {"role": "user", "content": [{"type": "text", "text": "transcript"}]},
        ]

    def test_string_tool_input_is_parsed(self):
        client = MagicMock()
        client.messages.create.return_value = make_anthropic_tool_response(
            '{"title": "Rivers", "slug": "rivers", "summary": "- maps"}')
        assert self._call(client).title == "Rivers"

    def test_missing_tool_call_raises(self):
        client = MagicMock()
        client.messages.create.return_value = make_anthropic_tool_response(SUMMARY, name="other")
        with pytest.raises(SchemaValidationError):
            self._call(client)

    def test_rejects_audio(self, fake_audio):
        client = MagicMock()
        with pytest.raises(InferenceError):
            self._call(client, content=[audio_part(fake_audio)])
        client.messages.create.assert_not_called()
