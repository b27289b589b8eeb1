"""Title, slug and summary generation for a finished transcript."""

from __future__ import annotations

import re
from dataclasses import replace

from speaker_scribe.inference import request_structured, text_part, text_request_options
from speaker_scribe.schemas import SummaryResponse
from speaker_scribe.shared import (
    tprint as print,
    AccumulatedResult,
    ScribeConfig,
    api_retry,
    transcript_to_json,
)

SUMMARY_SYSTEM_PROMPT = (
    "You are an expert summarizer. Given a transcript, produce a fitting title, "
    "an English URL slug for that title (lowercase letters, digits and hyphens "
    "only), and a Markdown summary of the conversation listing 4-6 key "
    "discussion points. Be faithful to the content. Do not add information "
    "not present in the transcript."
)


def normalize_slug(slug: str, fallback: str = "transcript") -> str:
    """Force a slug to lowercase ``[a-z0-9-]`` with no leading/trailing hyphens."""
    slug = re.sub(r'[^a-z0-9-]+', '-', slug.lower())
    slug = re.sub(r'-{2,}', '-', slug).strip('-')
    return slug or fallback


def generate_title_and_summary(client, config: ScribeConfig,
                               result: AccumulatedResult) -> AccumulatedResult:
    """Return a copy of ``result`` with title, slug and summary filled in."""
    print()
    print("[summarize] Generating title and summary...")

    payload = transcript_to_json(result.transcription, config.summary_char_budget)
    options = text_request_options(config)
    print(f"  Using model: {options['model']}")
    print(f"  Transcript: {len(result.transcription)} turns, {len(payload):,} chars")

    response = api_retry(
        config,
        lambda: request_structured(
            client,
            system=SUMMARY_SYSTEM_PROMPT,
            content=[text_part(f"Transcript (JSON):\n{payload}")],
            schema=SummaryResponse,
            **options,
        ),
        "Title and summary",
    )

    title = response.title.strip()
    slug = normalize_slug(response.slug or title)
    print(f"  Title: {title}")
    print(f"  Slug: {slug}")
    return replace(result, title=title, slug=slug, summary=response.summary.strip())
