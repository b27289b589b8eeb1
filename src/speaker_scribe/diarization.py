"""
Speaker resolution module for the chunked transcription pipeline.

Speaker codes are only stable within a single inference call. This module
maps the raw per-chunk codes onto canonical speaker identities, either from
the text of the whole transcript or incrementally from audio samples taken
per time window, and can characterise the speakers up front so that the
transcription starts with a set of known codes.
"""

import re
from dataclasses import dataclass, replace
from pathlib import Path

from speaker_scribe.inference import (
    audio_part, text_part, request_structured, text_request_options,
)
from speaker_scribe.schemas import SpeakerDiscovery, SpeakerMappingResponse
from speaker_scribe.segment import extract_audio_segment
from speaker_scribe.shared import (
    tprint as print,
    AccumulatedResult, ConfirmedSample, ScribeConfig,
    DISCOVERY_SAMPLE_MP3, SAMPLES_DIR,
    api_retry, transcript_to_json,
)

DISCOVERY_SYSTEM_PROMPT = (
    "You are an expert audio analyst. Identify every main speaker in the audio "
    "and describe their voice (timbre, tone, gender, role) so that a later "
    "transcription can tell them apart consistently."
)

NORMALIZE_SYSTEM_PROMPT = (
    "You are an expert at analysing conversations. The transcript below was "
    "produced in separate chunks, so the same person may appear under several "
    "speaker codes. Using contextual cues such as self-introductions, direct "
    "address and role language, map every speaker code to one unified speaker "
    "identity: the person's real name when the transcript reveals it, otherwise "
    "a consistent descriptive label. Include every speaker code."
)

RESOLVE_SYSTEM_PROMPT = (
    "You are an expert audio analyst. Using the audio samples and their text, "
    "build a mapping from speaker codes to real speaker identities. Compare each "
    "new code against the confirmed speakers and reuse a confirmed identity "
    "whenever it is the same voice, so that identities stay consistent."
)


@dataclass(frozen=True)
class SpeakerSample:
    """Representative utterance of a not-yet-resolved speaker code."""
    code: str
    audio_path: Path
    text: str


# ---------------------------------------------------------------------------
# Speaker discovery (seeds the known-speaker registry)
# ---------------------------------------------------------------------------

def discover_speakers(client, config: ScribeConfig, source: Path, work_dir: Path) -> list:
    """Characterise the speakers heard in the opening of the recording.

    Returns hints like ``"SPEAKER_01: low male voice, host"``. Failure is not
    fatal: a warning is printed and an empty list returned.
    """
    print()
    print("[discover] Identifying speakers from the opening minutes...")

    sample_path = Path(work_dir) / DISCOVERY_SAMPLE_MP3
    try:
        extract_audio_segment(source, 0, config.discovery_seconds, sample_path, config.verbose)
        content = [
            audio_part(sample_path),
            text_part("Identify every speaker in this audio and give a short description of each."),
        ]
        response = api_retry(
            config,
            lambda: request_structured(
                client,
                model=config.model,
                system=DISCOVERY_SYSTEM_PROMPT,
                content=content,
                schema=SpeakerDiscovery,
                max_tokens=config.max_tokens,
            ),
            "Speaker discovery",
        )
    except Exception as e:
        print(f"  Warning: Speaker discovery failed, continuing without hints: {e}")
        return []

    hints = [f"{s.id.strip()}: {s.description.strip()}" for s in response.speakers if s.id.strip()]
    for hint in hints:
        print(f"  {hint}")
    return hints


# ---------------------------------------------------------------------------
# Mapping helpers
# ---------------------------------------------------------------------------

def _codes_in_order(items: list) -> list:
    """Unique speaker codes in order of first appearance."""
    seen = []
    for item in items:
        if item.speaker not in seen:
            seen.append(item.speaker)
    return seen


def canonicalize_mapping(mapping: dict) -> dict:
    """Resolve chains and make every canonical name map to itself.

    ``{"S1": "S2", "S2": "Bob"}`` becomes ``{"S1": "Bob", "S2": "Bob",
    "Bob": "Bob"}``, so applying the result twice equals applying it once.
    """
    resolved = {}
    for code in mapping:
        seen = {code}
        current = mapping[code]
        while current in mapping and mapping[current] != current and current not in seen:
            seen.add(current)
            current = mapping[current]
        resolved[code] = current
    for name in set(resolved.values()):
        resolved[name] = name
    return resolved


def apply_speaker_mapping(items: list, mapping: dict) -> list:
    """Return new items with each speaker replaced by its canonical identity.

    Codes missing from the mapping keep their value. Timing and text are
    never touched.
    """
    canonical = canonicalize_mapping(mapping)
    return [replace(item, speaker=canonical.get(item.speaker, item.speaker))
            for item in items]


# ---------------------------------------------------------------------------
# Text-based normalization
# ---------------------------------------------------------------------------

def normalize_speakers_by_text(client, config: ScribeConfig, items: list) -> dict:
    """Infer a total code -> identity mapping from the whole transcript's text."""
    codes = _codes_in_order(items)
    if not codes:
        return {}

    payload = transcript_to_json(items, config.normalize_char_budget)
    content = [text_part(
        f"Speaker codes: {', '.join(codes)}\n\n"
        f"Transcript (JSON):\n{payload}"
    )]
    options = text_request_options(config)

    response = api_retry(
        config,
        lambda: request_structured(
            client,
            system=NORMALIZE_SYSTEM_PROMPT,
            content=content,
            schema=SpeakerMappingResponse,
            **options,
        ),
        "Speaker normalization",
    )

    returned = response.as_dict()
    mapping = {}
    for code in codes:
        name = returned.get(code, "").strip()
        mapping[code] = name or code
    return mapping


# ---------------------------------------------------------------------------
# Audio-sample incremental resolution
# ---------------------------------------------------------------------------

def _safe_filename(code: str) -> str:
    return re.sub(r'[^\w-]+', '_', code).strip('_') or "speaker"


class AudioSampleResolver:
    """Resolves speaker codes window by window using audio samples.

    The timeline is cut into fixed windows (by item start time). For each
    window, in order, the codes not yet in the global mapping are sampled
    (longest utterance, padded) and sent together with the confirmed samples
    of every speaker established so far. The first sample recorded for a
    canonical name is kept for the rest of the run. Windows with no unknown
    codes cost nothing.
    """

    def __init__(self, client, config: ScribeConfig, source: Path,
                 samples_dir: Path, items: list):
        self.client = client
        self.config = config
        self.source = Path(source)
        self.samples_dir = Path(samples_dir)
        self.items = list(items)
        self.window_seconds = config.resolve_window_seconds
        if self.items:
            last_start = max(item.start_time for item in self.items)
            self.num_windows = int(last_start // self.window_seconds) + 1
        else:
            self.num_windows = 0
        self.window_index = 0
        self.mapping = {}
        self.confirmed = {}  # canonical name -> ConfirmedSample, insertion ordered
        self.calls = 0

    @property
    def done(self) -> bool:
        return self.window_index >= self.num_windows

    def window_bounds(self, index: int) -> tuple:
        start = index * self.window_seconds
        return start, start + self.window_seconds

    def window_items(self, index: int) -> list:
        start, end = self.window_bounds(index)
        return [item for item in self.items if start <= item.start_time < end]

    def unknown_codes(self, items: list) -> list:
        return [code for code in _codes_in_order(items) if code not in self.mapping]

    def _extract_sample(self, code: str, items: list, index: int) -> SpeakerSample:
        best = None
        for item in items:
            if item.speaker == code and (best is None or item.duration > best.duration):
                best = item
        out_path = self.samples_dir / f"sample_{_safe_filename(code)}_window{index:03d}.mp3"
        extract_audio_segment(
            self.source,
            best.start_time - self.config.sample_padding,
            best.end_time + self.config.sample_padding,
            out_path,
            self.config.verbose,
        )
        return SpeakerSample(code=code, audio_path=out_path, text=best.text)

    def _build_content(self, index: int, samples: list) -> list:
        start, end = self.window_bounds(index)
        content = [text_part(
            f"Audio samples from time window {index + 1}/{self.num_windows} "
            f"({start}s - {end}s). Analyse the voices and map each new speaker "
            f"code to a real identity, or merge it with a confirmed speaker."
        )]
        if self.confirmed:
            content.append(text_part("### Confirmed speakers"))
            for name, sample in self.confirmed.items():
                content.append(text_part(
                    f"Identity: {name}\nReference text: {sample.reference_text}"))
                content.append(audio_part(sample.audio_path))
        content.append(text_part("### New speaker codes to identify"))
        for sample in samples:
            content.append(text_part(f"Code: {sample.code}\nText: {sample.text}"))
            content.append(audio_part(sample.audio_path))
        content.append(text_part("Return a mapping entry for every new speaker code."))
        return content

    def step(self) -> dict:
        """Process the next window; return the mapping entries it added."""
        if self.done:
            raise RuntimeError("All windows have already been processed")
        index = self.window_index
        self.window_index += 1

        items = self.window_items(index)
        unknown = self.unknown_codes(items)
        if not unknown:
            return {}

        start, end = self.window_bounds(index)
        print(f"  Window {index + 1}/{self.num_windows} ({start}s - {end}s): "
              f"{len(unknown)} new code(s)")

        samples = [self._extract_sample(code, items, index) for code in unknown]
        content = self._build_content(index, samples)

        self.calls += 1
        response = api_retry(
            self.config,
            lambda: request_structured(
                self.client,
                model=self.config.model,
                system=RESOLVE_SYSTEM_PROMPT,
                content=content,
                schema=SpeakerMappingResponse,
                max_tokens=self.config.max_tokens,
            ),
            f"Speaker resolution (window {index + 1})",
        )
        returned = response.as_dict()

        ignored = sorted(set(returned) - set(unknown))
        if ignored:
            print(f"    Ignoring mapping for codes outside this window: {', '.join(ignored)}")

        added = {}
        for sample in samples:
            name = returned.get(sample.code, "").strip() or sample.code
            added[sample.code] = name
            self.mapping[sample.code] = name
            if name not in self.confirmed:
                self.confirmed[name] = ConfirmedSample(
                    canonical_name=name,
                    audio_path=sample.audio_path,
                    reference_text=sample.text,
                )
        return added

    def run(self) -> dict:
        """Process every remaining window; return the global mapping."""
        while not self.done:
            self.step()
        return dict(self.mapping)


# ---------------------------------------------------------------------------
# Stage entry point
# ---------------------------------------------------------------------------

def resolve_speakers(client, text_client, config: ScribeConfig,
                     result: AccumulatedResult, work_dir: Path) -> AccumulatedResult:
    """Unify speaker codes across the merged transcript.

    Uses the strategy named by ``config.resolver``. A failed resolution call
    propagates and aborts the run.
    """
    print()
    print(f"[resolve] Unifying speaker identities ({config.resolver})...")

    if config.resolver == "none":
        mapping = {}
    elif config.resolver == "text":
        mapping = normalize_speakers_by_text(text_client, config, result.transcription)
    elif config.resolver == "audio":
        resolver = AudioSampleResolver(
            client, config, config.source_path,
            Path(work_dir) / SAMPLES_DIR, result.transcription,
        )
        mapping = resolver.run()
        print(f"  {resolver.calls} resolution call(s) over {resolver.num_windows} window(s)")
    else:
        raise ValueError(f"Unknown speaker resolver: {config.resolver}")

    if mapping:
        print(f"  Speaker mapping: {mapping}")
    else:
        print("  Keeping speaker codes as transcribed")

    return replace(result, transcription=apply_speaker_mapping(result.transcription, mapping))
