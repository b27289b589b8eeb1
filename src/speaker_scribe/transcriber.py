#!/usr/bin/env python3
"""
Speaker Scribe
==============
Turns a long audio recording into a speaker-attributed, timestamped
transcript with a title and summary.

Pipeline:
1. Split the recording into fixed-length chunks (ffmpeg)
2. Characterise the speakers in the opening minutes
3. Transcribe chunks in order, carrying context and known speaker codes
4. Unify speaker codes across chunks (audio samples or transcript text)
5. Generate a title, URL slug and summary
6. Write <slug>.json beside the recording

Usage:
    speaker-scribe <audio> [options]

Examples:
    # Basic usage
    speaker-scribe interview.m4a

    # Extra instructions for every chunk
    speaker-scribe interview.m4a --prompt "Keep filler words"

    # Resolve speakers from the transcript text only (cheaper)
    speaker-scribe interview.m4a --resolver text

    # Check a suspicious item of a finished transcript
    speaker-scribe interview.m4a --extract interview-with-alice.json <item-id>
"""

import argparse
import json
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from speaker_scribe import __version__
from speaker_scribe.shared import (
    tprint as print,
    ScribeConfig, AccumulatedResult,
    DEFAULT_MODEL, OPENROUTER_BASE_URL, RESOLVERS, TEXT_BACKENDS,
    check_dependencies,
)

SECTION_SEPARATOR = "=" * 50
EXTRACT_PADDING = 0.5  # seconds either side of an extracted item
PROMPT_TEMPLATE_FILE = "prompt.md"

# Pipeline stage modules
from speaker_scribe.segment import split_audio, extract_audio_segment, working_directory
from speaker_scribe.inference import create_llm_client, create_text_client
from speaker_scribe.transcription import transcribe_chunks
from speaker_scribe.diarization import discover_speakers, resolve_speakers
from speaker_scribe.summarize import generate_title_and_summary
from speaker_scribe.output import build_artifact, write_artifact


def process_audio_file(config: ScribeConfig, client=None, text_client=None) -> dict:
    """Run the whole pipeline on ``config.source_path`` and return the artifact.

    The scratch directory holding chunks and samples is removed on every
    exit path.
    """
    if client is None:
        client = create_llm_client(config)
    if text_client is None:
        text_client = create_text_client(config) if config.text_backend == "anthropic" else client

    with working_directory(config.work_root) as work_dir:
        print()
        print("[segment] Splitting audio...")
        chunks = split_audio(config.source_path, work_dir, config.segment_seconds, config.verbose)
        print(f"  {len(chunks)} chunk(s)")

        known_speakers = []
        if config.discover_speakers:
            known_speakers = discover_speakers(client, config, config.source_path, work_dir)

        transcription = transcribe_chunks(client, config, chunks, known_speakers)
        result = AccumulatedResult(transcription=transcription)
        result = resolve_speakers(client, text_client, config, result, work_dir)
        result = generate_title_and_summary(text_client, config, result)

    return build_artifact(result, config.source_path, attribution=config.attribution)


def extract_item_audio(source: Path, artifact_path: Path, item_id: str,
                       verbose: bool = False) -> Path:
    """Cut the audio of one transcript item (padded) to extract_<id>.mp3."""
    artifact_path = Path(artifact_path)
    with open(artifact_path, 'r', encoding='utf-8') as f:
        artifact = json.load(f)

    item = next((i for i in artifact.get("content", []) if i.get("id") == item_id), None)
    if item is None:
        raise ValueError(f"No item with id {item_id} in {artifact_path.name}")

    out_path = artifact_path.parent / f"extract_{item_id}.mp3"
    extract_audio_segment(
        source,
        max(0.0, item["start"] - EXTRACT_PADDING),
        item["end"] + EXTRACT_PADDING,
        out_path,
        verbose,
    )
    return out_path


def _read_prompt_file(path: str) -> str:
    with open(path, 'r', encoding='utf-8') as f:
        return f.read().strip()


def build_config(args, custom_prompt=None, prompt_template=None) -> ScribeConfig:
    """Create a ScribeConfig from parsed arguments, falling back to the environment."""
    return ScribeConfig(
        source_path=Path(args.audio),
        segment_seconds=args.segment_seconds,
        context_lines=args.context_lines,
        custom_prompt=custom_prompt,
        prompt_template=prompt_template,
        resolver=args.resolver,
        discover_speakers=not args.no_discovery,
        api_key=args.api_key or os.environ.get("OPENROUTER_API_KEY"),
        base_url=args.base_url or os.environ.get("OPENROUTER_BASE_URL") or OPENROUTER_BASE_URL,
        transcription_model=(args.transcription_model or os.environ.get("TRANSCRIPTION_MODEL")
                             or DEFAULT_MODEL),
        model=args.model or os.environ.get("OPENROUTER_MODEL") or DEFAULT_MODEL,
        text_backend=args.text_backend,
        anthropic_api_key=args.anthropic_api_key or os.environ.get("ANTHROPIC_API_KEY"),
        claude_model=args.claude_model,
        verbose=args.verbose,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="speaker-scribe",
        description="Speaker-attributed transcription of long audio recordings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s interview.m4a
  %(prog)s interview.m4a --prompt "Keep filler words"
  %(prog)s interview.m4a --prompt-file instructions.txt --resolver text
  %(prog)s interview.m4a --extract interview-with-alice.json <item-id>
        """
    )
    parser.add_argument("--version", action="version",
                        version=f"%(prog)s {__version__}")

    # Input
    input_group = parser.add_argument_group("input")
    input_group.add_argument("audio", help="Path to the audio (or video) recording")
    input_group.add_argument("--extract", nargs=2, metavar=("ARTIFACT_JSON", "ITEM_ID"),
                        help="Extract the audio of one transcript item (+/-0.5s) "
                             "to extract_<id>.mp3 beside the artifact, then exit")

    # Prompt
    prompt_group = parser.add_argument_group("prompt")
    custom = prompt_group.add_mutually_exclusive_group()
    custom.add_argument("--prompt",
                        help="Additional instructions appended to every chunk prompt")
    custom.add_argument("--prompt-file",
                        help="Read the additional instructions from a file")
    prompt_group.add_argument("--prompt-template",
                        help=f"Prompt template with {{{{knownSpeakers}}}}, {{{{previousContext}}}} "
                             f"and {{{{customPrompt}}}} slots (default: ./{PROMPT_TEMPLATE_FILE} "
                             f"if present, else built-in)")

    # Pipeline
    pipeline_group = parser.add_argument_group("pipeline")
    pipeline_group.add_argument("--segment-seconds", type=int, default=600,
                        help="Chunk length in seconds (default: 600)")
    pipeline_group.add_argument("--context-lines", type=int, default=100,
                        help="Trailing transcript lines passed to the next chunk (default: 100)")
    pipeline_group.add_argument("--resolver", choices=RESOLVERS, default="audio",
                        help="Speaker resolution strategy (default: audio)")
    pipeline_group.add_argument("--no-discovery", action="store_true",
                        help="Skip the initial speaker characterisation call")
    pipeline_group.add_argument("-v", "--verbose", action="store_true",
                        help="Show ffmpeg commands and tracebacks")

    # Inference backend
    llm_group = parser.add_argument_group("inference backend")
    llm_group.add_argument("--api-key",
                        help="OpenRouter API key (or set OPENROUTER_API_KEY env var)")
    llm_group.add_argument("--base-url",
                        help=f"OpenAI-compatible endpoint (default: {OPENROUTER_BASE_URL})")
    llm_group.add_argument("--transcription-model",
                        help=f"Model for chunk transcription (or TRANSCRIPTION_MODEL; default: {DEFAULT_MODEL})")
    llm_group.add_argument("--model",
                        help=f"Model for discovery, resolution and summary (or OPENROUTER_MODEL; default: {DEFAULT_MODEL})")
    llm_group.add_argument("--text-backend", choices=TEXT_BACKENDS, default="openrouter",
                        help="Backend for text-only calls: text resolver and summary (default: openrouter)")
    llm_group.add_argument("--anthropic-api-key",
                        help="Anthropic API key for --text-backend anthropic (or set ANTHROPIC_API_KEY)")
    llm_group.add_argument("--claude-model", default="claude-sonnet-4-20250514",
                        help="Claude model for --text-backend anthropic (default: claude-sonnet-4-20250514)")
    return parser


def main(argv=None):
    load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.segment_seconds <= 0:
        parser.error("--segment-seconds must be positive")
    if args.context_lines < 0:
        parser.error("--context-lines must not be negative")

    # Check dependencies
    print("Checking dependencies...")
    deps = check_dependencies()
    if not deps["ffmpeg"]:
        print("Missing dependencies:")
        print("  - ffmpeg (install with: brew install ffmpeg or apt install ffmpeg)")
        sys.exit(1)
    print("  ffmpeg: OK")

    source = Path(args.audio)
    if not source.exists():
        print()
        print(f"Error: Audio file not found: {source}")
        sys.exit(1)

    if args.extract:
        artifact_path, item_id = args.extract
        try:
            out_path = extract_item_audio(source, Path(artifact_path), item_id, args.verbose)
        except Exception as e:
            print()
            print(f"Error: {e}")
            sys.exit(1)
        print(f"Extracted audio: {out_path}")
        return

    custom_prompt = args.prompt
    if args.prompt_file:
        try:
            custom_prompt = _read_prompt_file(args.prompt_file)
        except OSError as e:
            print()
            print(f"Error: Cannot read prompt file {args.prompt_file}: {e}")
            sys.exit(1)
        print(f"  Using prompt from: {args.prompt_file}")
    elif custom_prompt:
        print("  Using custom prompt")

    prompt_template = None
    template_path = args.prompt_template or (
        PROMPT_TEMPLATE_FILE if Path(PROMPT_TEMPLATE_FILE).exists() else None)
    if template_path:
        try:
            prompt_template = _read_prompt_file(template_path)
        except OSError as e:
            print()
            print(f"Error: Cannot read prompt template {template_path}: {e}")
            sys.exit(1)
        print(f"  Using prompt template: {template_path}")

    config = build_config(args, custom_prompt, prompt_template)

    # Early validation: API keys
    if not config.api_key:
        print()
        print("Error: No OpenRouter API key found.")
        print()
        print("Options:")
        print("  1. Set OPENROUTER_API_KEY environment variable (or in .env)")
        print("  2. Use --api-key YOUR_KEY")
        sys.exit(1)
    if config.text_backend == "anthropic" and not config.anthropic_api_key:
        print()
        print("Error: --text-backend anthropic requested but no Anthropic API key found.")
        print()
        print("Options:")
        print("  1. Set ANTHROPIC_API_KEY environment variable")
        print("  2. Use --anthropic-api-key YOUR_KEY")
        print("  3. Remove --text-backend anthropic to use OpenRouter for everything")
        sys.exit(1)

    print(f"  Transcription model: {config.transcription_model}")
    print(f"  Model: {config.model}")
    if config.text_backend == "anthropic":
        print(f"  Text backend: Anthropic API ({config.claude_model})")
    print()
    print(f"Processing: {source}")

    try:
        artifact = process_audio_file(config)
        out_path = write_artifact(artifact, source)

        print()
        print(SECTION_SEPARATOR)
        print("COMPLETE!")
        print(SECTION_SEPARATOR)
        print()
        print(f"Transcript: {out_path}")
        print(f"  {len(artifact['content'])} items, title: {artifact['info']['name']}")
        print()
        print("Tip: To check a misattributed speaker or a wrong timestamp, extract an item:")
        print(f'  speaker-scribe "{source}" --extract "{out_path}" <item-id>')

    except Exception as e:
        print()
        print(f"Error: {e}")
        if config.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
