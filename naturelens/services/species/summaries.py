import logging
from dataclasses import dataclass
from urllib.parse import urlparse

from naturelens.config.settings import settings
from naturelens.services.errors import SummaryError
from naturelens.services.llm.base import LLMProvider

log = logging.getLogger(__name__)

SUMMARY_PROMPT = (
    "Find a brief, interesting educational summary about the {species}. "
    "Focus on conservation status or unique behaviors."
)

UNAVAILABLE_SUMMARY = "Information currently unavailable."
FAILED_SUMMARY = "Could not fetch online details."


@dataclass
class SpeciesSummary:
    summary: str
    url: str | None = None


def first_web_url(citations: list[str]) -> str | None:
    """First citation that is an http(s) address with a host, in source order."""
    for uri in citations:
        parsed = urlparse(uri or "")
        if parsed.scheme in ("http", "https") and parsed.netloc:
            return uri
    return None


class SummaryClient:
    """Search-grounded species summary.

    Idempotent per species; callers decide how often to ask.
    """

    def __init__(self, provider: LLMProvider, model: str | None = None):
        self.provider = provider
        self.model = model or settings.summary_model

    async def summarize(self, species: str) -> SpeciesSummary:
        try:
            response = await self.provider.complete(
                prompt=SUMMARY_PROMPT.format(species=species),
                model=self.model,
                grounded=True,
            )
        except Exception as e:
            log.error(f"Search failed for '{species}': {e}")
            return SpeciesSummary(summary=FAILED_SUMMARY)

        url = first_web_url(response.citations)
        try:
            summary = _require_text(response.content, species)
        except SummaryError as e:
            log.warning(str(e))
            summary = UNAVAILABLE_SUMMARY

        return SpeciesSummary(summary=summary, url=url)


def _require_text(content: str, species: str) -> str:
    text = (content or "").strip()
    if not text:
        raise SummaryError(f"Empty summary for '{species}'")
    return text
