import logging

from naturelens.config.settings import settings
from naturelens.services.errors import CaptionError
from naturelens.services.llm.base import LLMProvider

log = logging.getLogger(__name__)

CAPTION_PROMPT = "Write a very short, witty, or cute caption (max 10 words) for a photo of a {species}."


def empty_caption(species: str) -> str:
    return f"A lovely {species}"


def failed_caption(species: str) -> str:
    return f"Look, a {species}!"


class CaptionClient:
    """Short fun caption for a species. Never raises: falls back to fixed text."""

    def __init__(self, provider: LLMProvider, model: str | None = None):
        self.provider = provider
        self.model = model or settings.caption_model

    async def caption(self, species: str) -> str:
        try:
            return await self._request(species)
        except CaptionError:
            return empty_caption(species)
        except Exception as e:
            log.warning(f"Caption for '{species}' failed, using fallback: {e}")
            return failed_caption(species)

    async def _request(self, species: str) -> str:
        response = await self.provider.complete(
            prompt=CAPTION_PROMPT.format(species=species),
            model=self.model,
            temperature=0.9,
            max_tokens=64,
        )
        text = (response.content or "").strip()
        if not text:
            raise CaptionError(f"Empty caption for '{species}'")
        return text
