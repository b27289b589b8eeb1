"""
Shared types and utilities for the chunked transcription pipeline.

Contains ScribeConfig, the transcript data types, the bounded retry policy,
and utility functions used by every pipeline stage module.
"""

import json
import shutil
import subprocess
import time
from pathlib import Path
from dataclasses import dataclass, field
from typing import Callable, Optional

import builtins


def tprint(*args, **kwargs):
    """Print with [HH:MM:SS] timestamp prefix.

    Skips the timestamp for carriage-return progress lines (end != newline)
    so that in-place progress updates remain clean.
    """
    if kwargs.get("end", "\n") != "\n":
        builtins.print(*args, flush=True, **kwargs)
        return
    stamp = time.strftime("[%H:%M:%S]")
    builtins.print(stamp, *args, flush=True, **kwargs)


print = tprint

DEFAULT_MODEL = "google/gemini-3-flash-preview"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_ATTRIBUTION = "Transcribed by Gemini. Spotted a mistake? Leave a comment."

RESOLVERS = ("audio", "text", "none")
TEXT_BACKENDS = ("openrouter", "anthropic")


@dataclass
class ScribeConfig:
    """Configuration for the chunked transcription pipeline."""
    source_path: Path
    work_root: Path = field(default_factory=Path.cwd)  # temp_chunks_* dirs are created here
    segment_seconds: int = 600
    context_lines: int = 100  # Trailing transcript lines passed to the next chunk (10 = lightweight)
    custom_prompt: Optional[str] = None
    prompt_template: Optional[str] = None  # None = built-in template
    resolver: str = "audio"  # "audio" | "text" | "none"
    discover_speakers: bool = True
    discovery_seconds: int = 600
    resolve_window_seconds: int = 300
    sample_padding: float = 0.2
    normalize_char_budget: int = 1_000_000
    summary_char_budget: int = 500_000
    attribution: str = DEFAULT_ATTRIBUTION
    # Inference backend (OpenAI-compatible, OpenRouter by default)
    api_key: Optional[str] = None
    base_url: str = OPENROUTER_BASE_URL
    transcription_model: str = DEFAULT_MODEL
    model: str = DEFAULT_MODEL  # discovery, speaker resolution, summary
    max_tokens: int = 65536
    api_timeout: float = 600.0  # seconds per API attempt
    # Optional Anthropic backend for the text-only calls (text resolver, summary)
    text_backend: str = "openrouter"
    anthropic_api_key: Optional[str] = None
    claude_model: str = "claude-sonnet-4-20250514"
    # Retry policy
    chunk_max_attempts: int = 3
    chunk_retry_delay: float = 2.0  # seconds, fixed between attempts
    api_max_retries: int = 3
    api_initial_backoff: float = 5.0  # seconds, doubled after each failure
    verbose: bool = False


# Standard file names
CHUNK_PATTERN = "chunk_%03d.mp3"
DISCOVERY_SAMPLE_MP3 = "discovery_sample.mp3"
SAMPLES_DIR = "samples"


@dataclass(frozen=True)
class Chunk:
    """One fixed-length slice of the source recording."""
    index: int
    path: Path
    start_offset: float


@dataclass
class TranscriptionItem:
    """One speaker turn. Times are chunk-relative until re-based."""
    speaker: str
    start_time: float
    end_time: float
    text: str

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def to_dict(self) -> dict:
        return {
            "speaker": self.speaker,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "text": self.text,
        }


@dataclass
class AccumulatedResult:
    """Data threaded through every pipeline stage."""
    title: str = ""
    slug: str = ""
    transcription: list = field(default_factory=list)  # list[TranscriptionItem]
    summary: str = ""


@dataclass(frozen=True)
class ConfirmedSample:
    """Audio + text exemplar recorded when a canonical speaker is first established."""
    canonical_name: str
    audio_path: Path
    reference_text: str


class RetryError(Exception):
    """Raised when a call still fails after the last allowed attempt."""

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        super().__init__(f"{label} failed after {attempts} attempt(s): {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


def retry_call(fn: Callable, max_attempts: int, delay: float, backoff: float = 1.0,
               label: str = "call", retry_on: tuple = (Exception,),
               sleep: Optional[Callable[[float], None]] = None):
    """Call fn() until it succeeds, at most max_attempts times.

    Waits ``delay`` seconds between attempts, multiplied by ``backoff`` after
    each failure (1.0 = fixed delay). Raises RetryError chained to the last
    error once the attempts are exhausted.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    wait = delay
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt >= max_attempts:
                raise RetryError(label, attempt, e) from e
            print(f"    {label} failed ({e}), retrying in {wait:g}s "
                  f"(attempt {attempt}/{max_attempts})...")
            (sleep or time.sleep)(wait)
            wait *= backoff


def api_retry(config: ScribeConfig, fn: Callable, label: str):
    """Retry policy for the non-chunk inference calls (exponential backoff)."""
    return retry_call(
        fn,
        max_attempts=config.api_max_retries,
        delay=config.api_initial_backoff,
        backoff=2.0,
        label=label,
    )


def transcript_to_json(items: list, limit: Optional[int] = None) -> str:
    """Serialize transcript items for a prompt, truncated to ``limit`` characters."""
    text = json.dumps([item.to_dict() for item in items], ensure_ascii=False)
    if limit is not None:
        return text[:limit]
    return text


# ---------------------------------------------------------------------------
# Pipeline utilities (used across segmentation, resolution and output)
# ---------------------------------------------------------------------------

def run_command(cmd: list[str], description: str, verbose: bool = False) -> subprocess.CompletedProcess:
    """Run a shell command with error handling."""
    if verbose:
        print(f"  Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        return result
    except subprocess.CalledProcessError as e:
        print(f"  Error: {description}")
        print(f"  {e.stderr}")
        raise


def _save_json(path: Path, data) -> None:
    """Write data to a JSON file with standard formatting."""
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def check_dependencies() -> dict[str, bool]:
    """Check for required external tools."""
    deps = {
        "ffmpeg": False,
    }

    for tool in ["ffmpeg"]:
        deps[tool] = shutil.which(tool) is not None

    return deps
