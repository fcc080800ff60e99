import base64
import logging

from naturelens.config.settings import settings
from naturelens.services.llm.base import LLMProvider, LLMResponse
from naturelens.services.media import DEFAULT_IMAGE_MIME, InlineImage

log = logging.getLogger(__name__)


class GeminiProvider(LLMProvider):
    """Google Gemini provider: multimodal input, search grounding, image output."""

    provider_name = "gemini"

    def __init__(self, api_key: str | None = None, model: str | None = None):
        self.api_key = api_key or settings.gemini_api_key
        self.default_model = model or settings.summary_model
        self._client = None

    def _get_client(self):
        if self._client is None:
            from google import genai

            self._client = genai.Client(api_key=self.api_key)
        return self._client

    @staticmethod
    def _build_contents(prompt: str, images: list[InlineImage] | None):
        from google.genai import types

        if not images:
            return prompt
        parts = [types.Part.from_bytes(data=img.data, mime_type=img.mime_type) for img in images]
        parts.append(types.Part.from_text(text=prompt))
        return parts

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
    ) -> LLMResponse:
        from google.genai import types

        model_name = model or self.default_model

        kwargs = {
            "temperature": temperature,
            "max_output_tokens": max_tokens,
        }
        if system:
            kwargs["system_instruction"] = system
        if response_schema is not None:
            kwargs["response_mime_type"] = "application/json"
            kwargs["response_schema"] = response_schema
        if grounded:
            kwargs["tools"] = [types.Tool(google_search=types.GoogleSearch())]

        response = await self._get_client().aio.models.generate_content(
            model=model_name,
            contents=self._build_contents(prompt, images),
            config=types.GenerateContentConfig(**kwargs),
        )

        return LLMResponse(
            content=response.text or "",
            model=model_name,
            provider=self.provider_name,
            usage=_usage(response),
            citations=_citations(response),
        )

    async def render_image(
        self,
        prompt: str,
        model: str | None = None,
        images: list[InlineImage] | None = None,
        aspect_ratio: str | None = None,
        image_size: str | None = None,
    ) -> LLMResponse:
        from google.genai import types

        model_name = model or settings.image_model

        image_kwargs = {}
        if aspect_ratio:
            image_kwargs["aspect_ratio"] = aspect_ratio
        if image_size:
            image_kwargs["image_size"] = image_size

        config = types.GenerateContentConfig(
            response_modalities=["IMAGE", "TEXT"],
            image_config=types.ImageConfig(**image_kwargs) if image_kwargs else None,
        )

        response = await self._get_client().aio.models.generate_content(
            model=model_name,
            contents=self._build_contents(prompt, images),
            config=config,
        )

        text_parts = []
        rendered = []
        for candidate in response.candidates or []:
            if not candidate.content:
                continue
            for part in candidate.content.parts or []:
                if part.inline_data and part.inline_data.data:
                    data = part.inline_data.data
                    if isinstance(data, str):
                        data = base64.b64decode(data)
                    rendered.append(
                        InlineImage(data=data, mime_type=part.inline_data.mime_type or DEFAULT_IMAGE_MIME)
                    )
                elif part.text:
                    text_parts.append(part.text)

        log.debug(f"{model_name} returned {len(rendered)} image part(s)")
        return LLMResponse(
            content="".join(text_parts),
            model=model_name,
            provider=self.provider_name,
            usage=_usage(response),
            images=rendered,
        )

    async def is_available(self) -> bool:
        return bool(self.api_key)


def _usage(response) -> dict:
    meta = getattr(response, "usage_metadata", None)
    if meta is None:
        return {}
    return {
        "prompt_tokens": meta.prompt_token_count or 0,
        "completion_tokens": meta.candidates_token_count or 0,
    }


def _citations(response) -> list[str]:
    """Web URIs from the first candidate's grounding chunks."""
    if not response.candidates:
        return []
    metadata = response.candidates[0].grounding_metadata
    if metadata is None or not metadata.grounding_chunks:
        return []
    return [chunk.web.uri for chunk in metadata.grounding_chunks if chunk.web and chunk.web.uri]
