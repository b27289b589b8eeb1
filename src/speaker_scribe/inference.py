"""
Inference service boundary.

A request is a system instruction plus a list of content parts (text and
audio) and a target pydantic schema. The reply is validated against the
schema; anything that does not conform raises SchemaValidationError so that
callers can retry it exactly like a transport failure.

Audio requests go through an OpenAI-compatible chat-completions endpoint
(OpenRouter by default). Text-only requests may instead use the Anthropic
API, where structured output is obtained by forcing a tool call.
"""

import base64
import json
import os
import re
from pathlib import Path

from pydantic import BaseModel, ValidationError

from speaker_scribe.shared import ScribeConfig

RESULT_TOOL_NAME = "store_result"
CLAUDE_MAX_TOKENS = 16000


class InferenceError(Exception):
    """The inference service did not return a usable result."""


class SchemaValidationError(InferenceError):
    """The inference service replied, but not with the requested shape."""


def create_llm_client(config: ScribeConfig):
    """Create the OpenAI-compatible client used for audio requests."""
    from openai import OpenAI
    api_key = config.api_key or os.environ.get("OPENROUTER_API_KEY")
    return OpenAI(base_url=config.base_url, api_key=api_key, timeout=config.api_timeout)


def create_text_client(config: ScribeConfig):
    """Create the client for text-only requests (Anthropic or the main backend)."""
    if config.text_backend == "anthropic":
        import anthropic
        api_key = config.anthropic_api_key or os.environ.get("ANTHROPIC_API_KEY")
        return anthropic.Anthropic(api_key=api_key, timeout=config.api_timeout)
    return create_llm_client(config)


def text_request_options(config: ScribeConfig) -> dict:
    """Backend, model and token limit for text-only requests."""
    if config.text_backend == "anthropic":
        return {"backend": "anthropic", "model": config.claude_model,
                "max_tokens": CLAUDE_MAX_TOKENS}
    return {"backend": "openrouter", "model": config.model,
            "max_tokens": config.max_tokens}


def text_part(text: str) -> dict:
    return {"type": "text", "text": text}


def audio_part(path: Path) -> dict:
    """Inline an audio file as a base64 content part."""
    path = Path(path)
    data = base64.b64encode(path.read_bytes()).decode("ascii")
    fmt = path.suffix.lstrip(".").lower() or "mp3"
    return {"type": "input_audio", "input_audio": {"data": data, "format": fmt}}


def _has_audio_content(content: list) -> bool:
    """Check if any content part carries audio."""
    return any(part.get("type") == "input_audio" for part in content)


def _convert_content_to_anthropic(content: list) -> list:
    """Convert OpenAI-style text parts to Anthropic content blocks."""
    return [{"type": "text", "text": part["text"]}
            for part in content if part.get("type") == "text"]


def _strip_code_fence(raw: str) -> str:
    """Remove an optional markdown code block around a JSON reply."""
    raw = raw.strip()
    if raw.startswith("```"):
        raw = re.sub(r"^```(?:json)?\s*", "", raw)
        raw = re.sub(r"\s*```\s*$", "", raw)
    return raw


def _validate(payload, schema: type[BaseModel]) -> BaseModel:
    try:
        if isinstance(payload, str):
            return schema.model_validate_json(_strip_code_fence(payload))
        return schema.model_validate(payload)
    except ValidationError as e:
        raise SchemaValidationError(
            f"response does not match {schema.__name__} "
            f"({e.error_count()} validation error(s))") from e


def _request_openai(client, model: str, system: str, content: list,
                    schema: type[BaseModel], max_tokens: int) -> BaseModel:
    response = client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": content},
        ],
        response_format={
            "type": "json_schema",
            "json_schema": {
                "name": schema.__name__,
                "schema": schema.model_json_schema(),
            },
        },
    )
    if not response.choices:
        raise InferenceError("inference service returned no choices")
    text = response.choices[0].message.content or ""
    if not text.strip():
        raise SchemaValidationError(f"empty response for {schema.__name__}")
    return _validate(text, schema)


def _request_anthropic(client, model: str, system: str, content: list,
                       schema: type[BaseModel], max_tokens: int) -> BaseModel:
    if _has_audio_content(content):
        raise InferenceError("the Anthropic backend only handles text requests")
    tool = {
        "name": RESULT_TOOL_NAME,
        "description": f"Store the {schema.__name__} result. Call this exactly once.",
        "input_schema": schema.model_json_schema(),
    }
    response = client.messages.create(
        model=model,
        max_tokens=max_tokens,
        system=system,
        tools=[tool],
        tool_choice={"type": "tool", "name": RESULT_TOOL_NAME},
        messages=[{"role": "user", "content": _convert_content_to_anthropic(content)}],
    )
    for block in response.content:
        if block.type != "tool_use" or block.name != RESULT_TOOL_NAME:
            continue
        data = block.input
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                raise SchemaValidationError(f"tool input is not JSON: {e}") from e
        return _validate(data, schema)
    raise SchemaValidationError(f"no {RESULT_TOOL_NAME} tool call in response")


def request_structured(client, *, model: str, system: str, content: list,
                       schema: type[BaseModel], max_tokens: int,
                       backend: str = "openrouter") -> BaseModel:
    """Send one request and return the validated ``schema`` instance.

    Raises InferenceError (or SchemaValidationError) when the reply is
    unusable; transport errors from the client library propagate unchanged.
    """
    if backend == "anthropic":
        return _request_anthropic(client, model, system, content, schema, max_tokens)
    return _request_openai(client, model, system, content, schema, max_tokens)
