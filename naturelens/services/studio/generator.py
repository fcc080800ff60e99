import logging

from naturelens.config.settings import settings
from naturelens.services.errors import EditError, GenerationError
from naturelens.services.llm.base import LLMProvider
from naturelens.services.media import InlineImage

log = logging.getLogger(__name__)

ASPECT_RATIOS = ("1:1", "2:3", "3:2", "3:4", "4:3", "9:16", "16:9", "21:9")
IMAGE_SIZES = ("1K", "2K", "4K")


class ImageGenerator:
    """Text-to-image for the creative studio."""

    def __init__(self, provider: LLMProvider, model: str | None = None):
        self.provider = provider
        self.model = model or settings.image_model

    async def generate(self, prompt: str, aspect_ratio: str = "1:1", image_size: str = "1K") -> InlineImage:
        if not prompt or not prompt.strip():
            raise GenerationError("Prompt must not be empty")
        if aspect_ratio not in ASPECT_RATIOS:
            raise GenerationError(f"Unsupported aspect ratio '{aspect_ratio}'. Use one of {ASPECT_RATIOS}")
        if image_size not in IMAGE_SIZES:
            raise GenerationError(f"Unsupported image size '{image_size}'. Use one of {IMAGE_SIZES}")

        try:
            response = await self.provider.render_image(
                prompt=prompt.strip(),
                model=self.model,
                aspect_ratio=aspect_ratio,
                image_size=image_size,
            )
        except Exception as e:
            log.error(f"Image generation failed: {e}")
            raise GenerationError(f"Image generation failed: {e}") from e

        if not response.images:
            raise GenerationError("Model returned no image")
        log.info(f"Generated {aspect_ratio} {image_size} image with {response.model}")
        return response.images[0]


class ImageEditor:
    """Applies a free-text edit instruction to an existing image."""

    def __init__(self, provider: LLMProvider, model: str | None = None):
        self.provider = provider
        self.model = model or settings.edit_model

    async def edit(self, image_bytes: bytes, mime_type: str, instruction: str) -> InlineImage:
        if not instruction or not instruction.strip():
            raise EditError("Edit instruction must not be empty")
        if not image_bytes:
            raise EditError("No source image to edit")

        try:
            response = await self.provider.render_image(
                prompt=instruction.strip(),
                model=self.model,
                images=[InlineImage(data=image_bytes, mime_type=mime_type)],
            )
        except Exception as e:
            log.error(f"Image edit failed: {e}")
            raise EditError(f"Image edit failed: {e}") from e

        if not response.images:
            raise EditError("Model returned no edited image")
        return response.images[0]
