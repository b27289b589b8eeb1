"""
Transcription module for the chunked transcription pipeline.

Transcribes chunks one at a time with the inference service. Each call sees
the tail of the transcript so far and the speaker codes already in use, so
that the model keeps its labels stable across chunk boundaries. Chunk-relative
timestamps are then re-based onto the recording's timeline.
"""

from speaker_scribe.inference import audio_part, request_structured, text_part
from speaker_scribe.schemas import ChunkTranscription
from speaker_scribe.shared import (
    tprint as print,
    Chunk, ScribeConfig, TranscriptionItem,
    RetryError, retry_call,
)

DEFAULT_PROMPT_TEMPLATE = """You are a professional transcriptionist. Transcribe the audio segment you are given verbatim, attributing every turn to a speaker.

Speakers identified so far:
{{knownSpeakers}}

Reuse these speaker codes whenever a voice matches one of them. Label a voice that is genuinely new with the next unused code (SPEAKER_01, SPEAKER_02, ...).

Transcript immediately preceding this segment:
{{previousContext}}

Rules:
1. startTime and endTime are seconds relative to the start of this segment.
2. Split long monologues into shorter turns.
3. Transcribe everything that is said; do not summarise or skip.
{{customPrompt}}"""

NONE_YET = "none yet"

CHUNK_INSTRUCTION = (
    "Transcribe this audio segment. Use the speaker codes from the system prompt "
    "whenever a voice matches, and stay consistent with the preceding context."
)

IDLE = "idle"
TRANSCRIBING = "transcribing"
MERGED = "merged"


class ChunkTranscriptionError(Exception):
    """A chunk could not be transcribed within the retry budget."""

    def __init__(self, chunk_index: int, attempts: int, cause: BaseException):
        super().__init__(
            f"Transcription of chunk {chunk_index + 1} failed after "
            f"{attempts} attempt(s): {cause}")
        self.chunk_index = chunk_index
        self.attempts = attempts


def render_prompt(template: str, known_speakers: list, previous_context: str,
                  custom_prompt: str = None) -> str:
    """Fill the {{knownSpeakers}}, {{previousContext}} and {{customPrompt}} slots."""
    speakers = "\n".join(known_speakers) if known_speakers else NONE_YET
    extra = f"Additional instructions: {custom_prompt}" if custom_prompt else ""
    return (template
            .replace("{{knownSpeakers}}", speakers)
            .replace("{{previousContext}}", previous_context or NONE_YET)
            .replace("{{customPrompt}}", extra))


def render_context(items: list, max_lines: int) -> str:
    """Render the last ``max_lines`` items as ``speaker: text`` lines."""
    if max_lines <= 0:
        return ""
    return "\n".join(f"{item.speaker}: {item.text}" for item in items[-max_lines:])


def _is_known_code(code: str, registry: list) -> bool:
    # Entries may be bare codes or discovery hints such as "SPEAKER_01: deep voice"
    return any(code.startswith(entry) or entry.startswith(code) for entry in registry)


def merge_known_speakers(registry: list, codes: list) -> list:
    """Return ``registry`` plus every code in ``codes`` it does not already cover."""
    merged = list(registry)
    for code in codes:
        if code and not _is_known_code(code, merged):
            merged.append(code)
    return merged


def rebase_items(items: list, offset: float) -> list:
    """Shift chunk-relative items onto the absolute timeline (in place)."""
    for item in items:
        item.start_time += offset
        item.end_time += offset
    return items


def _to_items(response: ChunkTranscription) -> list:
    items = []
    for turn in response.transcription:
        items.append(TranscriptionItem(
            speaker=turn.speaker.strip(),
            start_time=turn.startTime,
            end_time=max(turn.endTime, turn.startTime),
            text=turn.text.strip(),
        ))
    return items


def transcribe_chunk(client, config: ScribeConfig, chunk: Chunk,
                     previous_context: str, known_speakers: list,
                     custom_prompt: str = None) -> list:
    """Transcribe one chunk and return chunk-relative TranscriptionItems.

    Any failure of the inference call, including a reply that does not match
    the schema, is retried up to ``config.chunk_max_attempts`` times with a
    fixed delay. Running out of attempts raises ChunkTranscriptionError.
    """
    print(f"  Transcribing chunk {chunk.index + 1} ({chunk.path.name})...")

    system = render_prompt(
        config.prompt_template or DEFAULT_PROMPT_TEMPLATE,
        known_speakers, previous_context, custom_prompt,
    )
    content = [audio_part(chunk.path), text_part(CHUNK_INSTRUCTION)]

    def _call():
        return request_structured(
            client,
            model=config.transcription_model,
            system=system,
            content=content,
            schema=ChunkTranscription,
            max_tokens=config.max_tokens,
        )

    try:
        response = retry_call(
            _call,
            max_attempts=config.chunk_max_attempts,
            delay=config.chunk_retry_delay,
            label=f"Chunk {chunk.index + 1} transcription",
        )
    except RetryError as e:
        raise ChunkTranscriptionError(chunk.index, e.attempts, e.last_error) from e.last_error

    items = _to_items(response)
    print(f"    {len(items)} turns")
    return items


class ContextPipeline:
    """Drives chunks through transcribe_chunk strictly in order.

    State: the phase (idle -> transcribing -> merged), the index of the next
    chunk, the known speaker code registry and the absolute transcript. Each
    step() handles exactly one chunk, so a run can be inspected or stopped
    between chunks.
    """

    def __init__(self, client, config: ScribeConfig, chunks: list,
                 known_speakers: list = None):
        self.client = client
        self.config = config
        self.chunks = list(chunks)
        self.known_speakers = list(known_speakers or [])
        self.transcription = []
        self.index = 0
        self.phase = IDLE if self.chunks else MERGED

    @property
    def previous_context(self) -> str:
        return render_context(self.transcription, self.config.context_lines)

    def step(self) -> list:
        """Transcribe the next chunk and return its re-based items."""
        if self.phase == MERGED:
            raise RuntimeError("All chunks have already been transcribed")
        self.phase = TRANSCRIBING
        chunk = self.chunks[self.index]

        items = transcribe_chunk(
            self.client, self.config, chunk,
            self.previous_context, list(self.known_speakers),
            self.config.custom_prompt,
        )

        self.known_speakers = merge_known_speakers(
            self.known_speakers, [item.speaker for item in items])
        rebase_items(items, chunk.start_offset)
        self.transcription.extend(items)

        self.index += 1
        if self.index >= len(self.chunks):
            self.phase = MERGED
        return items

    def run(self) -> list:
        """Step through every remaining chunk; return the absolute transcript."""
        while self.phase != MERGED:
            self.step()
        return list(self.transcription)


def transcribe_chunks(client, config: ScribeConfig, chunks: list,
                      known_speakers: list = None) -> list:
    """Transcribe all chunks sequentially; return the absolute transcript."""
    print()
    print("[transcribe] Transcribing chunks in order...")
    pipeline = ContextPipeline(client, config, chunks, known_speakers)
    transcription = pipeline.run()
    print(f"  {len(transcription)} turns from {len(chunks)} chunk(s), "
          f"{len(pipeline.known_speakers)} known speaker code(s)")
    return transcription
