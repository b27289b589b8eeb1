"""
Result assembly: turn the accumulated pipeline result into the persisted
JSON artifact, and write it beside the source recording.
"""

import datetime
import uuid
from pathlib import Path

from speaker_scribe.shared import (
    tprint as print,
    AccumulatedResult, DEFAULT_ATTRIBUTION, _save_json,
)
from speaker_scribe.summarize import normalize_slug

PENDING_SPEAKER = "pending"
FAILURE_TEXT = "Transcription processing failed. Check the audio file format or the API settings."


def _today(today=None) -> str:
    return (today or datetime.date.today()).isoformat()


def _content_item(start: float, end: float, speaker: str, text: str) -> dict:
    return {
        "id": str(uuid.uuid4()),
        "start": start,
        "end": end,
        "type": "speech",
        "speaker": speaker,
        "text": text,
    }


def fallback_artifact(source_path: Path, today=None,
                      attribution: str = DEFAULT_ATTRIBUTION) -> dict:
    """Placeholder artifact used when the real one cannot be assembled."""
    source_path = Path(source_path)
    item = _content_item(0, 0, PENDING_SPEAKER, FAILURE_TEXT)
    item["failed"] = True
    return {
        "info": {
            "filename": source_path.name,
            "name": source_path.stem,
            "slug": normalize_slug(source_path.stem),
            "date": _today(today),
            "description": f"Transcription failed.\n\n{attribution}",
        },
        "content": [item],
    }


def build_artifact(result: AccumulatedResult, source_path: Path, today=None,
                   attribution: str = DEFAULT_ATTRIBUTION) -> dict:
    """Map the final result onto the artifact layout.

    Never raises: any problem with the result yields the fallback artifact.
    """
    source_path = Path(source_path)
    try:
        return {
            "info": {
                "filename": source_path.name,
                "name": result.title,
                "slug": result.slug,
                "date": _today(today),
                "description": f"{result.summary}\n\n{attribution}",
            },
            "content": [
                _content_item(item.start_time, item.end_time, item.speaker, item.text)
                for item in result.transcription
            ],
        }
    except Exception as e:
        print(f"  Warning: Could not assemble result, writing placeholder: {e}")
        return fallback_artifact(source_path, today, attribution)


def write_artifact(artifact: dict, source_path: Path) -> Path:
    """Write ``<slug>.json`` next to the source file and return its path."""
    source_path = Path(source_path)
    slug = artifact["info"]["slug"] or normalize_slug(source_path.stem)
    out_path = source_path.parent / f"{slug}.json"
    _save_json(out_path, artifact)
    print(f"  Saved: {out_path}")
    return out_path
