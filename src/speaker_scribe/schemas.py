"""
Structured response contracts for the inference service.

Every call to the model names one of these models as its target schema; the
JSON schema sent with the request is generated from it and the reply is
validated against it before any pipeline stage sees the data.
"""
from __future__ import annotations

from pydantic import BaseModel, Field


class TranscribedTurn(BaseModel):
    """One speaker turn as returned for a chunk (times relative to the chunk)."""

    speaker: str = Field(..., description="Speaker code, e.g. SPEAKER_01")
    startTime: float = Field(..., ge=0.0, description="Start time in seconds, relative to this segment")
    endTime: float = Field(..., ge=0.0, description="End time in seconds, relative to this segment")
    text: str = Field(..., description="What was said")


class ChunkTranscription(BaseModel):
    """Response for one chunk transcription call."""

    transcription: list[TranscribedTurn] = Field(..., description="Speaker turns in order")


class SpeakerDescription(BaseModel):
    id: str = Field(..., description="Speaker code, e.g. SPEAKER_01")
    description: str = Field(..., description="Voice traits: timbre, tone, gender, role")


class SpeakerDiscovery(BaseModel):
    """Response for the initial speaker characterisation call."""

    speakers: list[SpeakerDescription] = Field(..., description="Every main speaker heard in the sample")


class SpeakerAssignment(BaseModel):
    code: str = Field(..., description="Raw speaker code as it appears in the transcript")
    name: str = Field(..., description="Unified speaker identity")


class SpeakerMappingResponse(BaseModel):
    """Response for a speaker resolution call: raw code -> unified identity."""

    mapping: list[SpeakerAssignment] = Field(..., description="One entry per speaker code")

    def as_dict(self) -> dict[str, str]:
        """Return the mapping as a dict; later entries win on duplicate codes."""
        return {a.code: a.name for a in self.mapping}


class SummaryResponse(BaseModel):
    """Response for the title/summary call."""

    title: str = Field(..., description="Title generated from the content")
    slug: str = Field(
        ...,
        description="English URL slug from the title: lowercase letters, digits and hyphens only",
    )
    summary: str = Field(
        ...,
        description="Markdown summary of the conversation listing 4-6 key discussion points",
    )
