from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from naturelens.services.media import InlineImage


@dataclass
class LLMResponse:
    content: str
    model: str
    provider: str
    usage: dict = field(default_factory=dict)
    images: list[InlineImage] = field(default_factory=list)
    citations: list[str] = field(default_factory=list)  # grounding sources, in source order
    raw: dict | None = None


class LLMProvider(ABC):
    """Base class for all model providers."""

    provider_name: str = "base"

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        system: str = "",
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 4096,
        images: list[InlineImage] | None = None,
        response_schema: dict | None = None,
        grounded: bool = False,
    ) -> LLMResponse: ...

    @abstractmethod
    async def render_image(
        self,
        prompt: str,
        model: str | None = None,
        images: list[InlineImage] | None = None,
        aspect_ratio: str | None = None,
        image_size: str | None = None,
    ) -> LLMResponse: ...

    @abstractmethod
    async def is_available(self) -> bool: ...
