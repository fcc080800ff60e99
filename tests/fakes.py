import asyncio
import json

from naturelens.services.llm.base import LLMProvider, LLMResponse
from naturelens.services.media import InlineImage


def analysis_json(species: str = "Red Fox", **overrides) -> str:
    data = {
        "species": species,
        "scientificName": "Vulpes vulpes",
        "confidence": 0.93,
        "description": "A red fox standing in tall grass.",
        "habitat": "Forests, grasslands and urban edges.",
        "category": "mammal",
    }
    data.update(overrides)
    return json.dumps(data)


class FakeProvider(LLMProvider):
    """Scripted stand-in for a model provider.

    Classification replies are consumed from `analyses` in order; every other
    reply is a fixed value. Any scripted value that is an Exception is raised.
    Optional gates hold a call open until the test sets them.
    """

    provider_name = "fake"

    def __init__(self):
        self.analyses: list = []
        self.caption: str | Exception = "Sly, shy and fabulous"
        self.summary: str | Exception = "Red foxes are adaptable omnivores."
        self.citations: list[str] = ["https://en.wikipedia.org/wiki/Red_fox"]
        self.image: InlineImage | Exception | None = InlineImage(data=b"rendered", mime_type="image/png")
        self.classify_gate: asyncio.Event | None = None
        self.summary_gate: asyncio.Event | None = None
        self.calls: list[tuple[str, dict]] = []

    def calls_of(self, kind: str) -> list[dict]:
        return [kwargs for k, kwargs in self.calls if k == kind]

    async def complete(
        self,
        prompt,
        system="",
        model=None,
        temperature=0.3,
        max_tokens=4096,
        images=None,
        response_schema=None,
        grounded=False,
    ):
        kwargs = {"prompt": prompt, "model": model, "images": images}
        if response_schema is not None:
            self.calls.append(("classify", kwargs))
            if self.classify_gate is not None:
                await self.classify_gate.wait()
            reply = self.analyses.pop(0) if self.analyses else analysis_json()
            return self._reply(reply, model)

        if grounded:
            self.calls.append(("summary", kwargs))
            if self.summary_gate is not None:
                await self.summary_gate.wait()
            response = self._reply(self.summary, model)
            response.citations = list(self.citations)
            return response

        self.calls.append(("caption", kwargs))
        return self._reply(self.caption, model)

    async def render_image(self, prompt, model=None, images=None, aspect_ratio=None, image_size=None):
        self.calls.append(
            (
                "render",
                {
                    "prompt": prompt,
                    "model": model,
                    "images": images,
                    "aspect_ratio": aspect_ratio,
                    "image_size": image_size,
                },
            )
        )
        if isinstance(self.image, Exception):
            raise self.image
        return LLMResponse(
            content="",
            model=model or "fake-image",
            provider=self.provider_name,
            images=[self.image] if self.image else [],
        )

    async def is_available(self) -> bool:
        return True

    def _reply(self, value, model) -> LLMResponse:
        if isinstance(value, Exception):
            raise value
        return LLMResponse(content=value, model=model or "fake", provider=self.provider_name)
