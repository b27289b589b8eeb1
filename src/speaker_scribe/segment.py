"""
Audio segmentation for the transcription pipeline.

Wraps ffmpeg: cuts the source recording into fixed-length mp3 chunks and
extracts arbitrary sub-ranges (discovery samples, speaker samples, and
single transcript items).
"""

import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path

from speaker_scribe.shared import (
    tprint as print,
    Chunk, CHUNK_PATTERN, run_command,
)

MP3_ENCODE_ARGS = ["-c:a", "libmp3lame", "-b:a", "128k"]


def split_audio(source: Path, work_dir: Path, segment_seconds: int = 600,
                verbose: bool = False) -> list[Chunk]:
    """Split ``source`` into ``segment_seconds`` chunks inside ``work_dir``.

    Returns chunks in recording order. The last chunk may be shorter.
    """
    source = Path(source)
    if not source.exists():
        raise FileNotFoundError(f"Audio file not found: {source}")
    if segment_seconds <= 0:
        raise ValueError(f"segment_seconds must be positive, got {segment_seconds}")

    work_dir = Path(work_dir)
    work_dir.mkdir(parents=True, exist_ok=True)
    pattern = work_dir / CHUNK_PATTERN

    print(f"  Splitting audio into {segment_seconds}s segments...")
    run_command(
        ["ffmpeg", "-y", "-i", str(source),
         "-f", "segment", "-segment_time", str(segment_seconds),
         *MP3_ENCODE_ARGS, str(pattern)],
        "splitting audio into chunks",
        verbose,
    )

    paths = sorted(work_dir.glob("chunk_*.mp3"))
    if not paths:
        raise RuntimeError(f"ffmpeg produced no chunks for {source.name}")

    return [
        Chunk(index=i, path=path, start_offset=float(i * segment_seconds))
        for i, path in enumerate(paths)
    ]


def extract_audio_segment(source: Path, start: float, end: float, out_path: Path,
                          verbose: bool = False) -> Path:
    """Extract ``[start, end]`` seconds of ``source`` to ``out_path`` as mp3.

    ``start`` is clamped to 0.
    """
    start = max(0.0, start)
    duration = end - start
    if duration <= 0:
        raise ValueError(f"Empty audio range: {start:.2f}s - {end:.2f}s")

    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    run_command(
        ["ffmpeg", "-y", "-ss", f"{start:.3f}", "-t", f"{duration:.3f}",
         "-i", str(source), *MP3_ENCODE_ARGS, str(out_path)],
        f"extracting audio {start:.1f}s-{end:.1f}s",
        verbose,
    )
    return out_path


@contextmanager
def working_directory(parent: Path, prefix: str = "temp_chunks_"):
    """Create a scratch directory for chunk files and always remove it.

    Removal problems are reported but never raised, so they cannot hide the
    outcome of the work done inside the block.
    """
    Path(parent).mkdir(parents=True, exist_ok=True)
    work_dir = Path(tempfile.mkdtemp(prefix=prefix, dir=parent))
    try:
        yield work_dir
    finally:
        try:
            shutil.rmtree(work_dir)
            print("  Cleaned up temporary files")
        except OSError as e:
            print(f"  Warning: Could not remove {work_dir}: {e}")
