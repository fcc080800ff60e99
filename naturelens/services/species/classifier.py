import logging

from pydantic import ValidationError

from naturelens.config.settings import settings
from naturelens.services.collection.models import AnalysisResult
from naturelens.services.errors import ClassificationError
from naturelens.services.llm.base import LLMProvider
from naturelens.services.media import InlineImage

log = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an expert zoologist. Identify species accurately."

IDENTIFY_PROMPT = (
    "Identify the animal or bird in this picture clearly. "
    "If it is not an animal/bird, return 'Unknown' for species."
)

ANALYSIS_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "species": {"type": "STRING", "description": "Common name of the animal or bird."},
        "scientificName": {"type": "STRING", "description": "Scientific Latin name."},
        "confidence": {"type": "NUMBER", "description": "Confidence score between 0 and 1."},
        "description": {
            "type": "STRING",
            "description": "A brief visual description of the animal in the image.",
        },
        "habitat": {"type": "STRING", "description": "Typical habitat for this species."},
        "category": {
            "type": "STRING",
            "description": "Broad taxonomic grouping, e.g. bird, mammal, reptile, insect.",
        },
    },
    "required": ["species", "scientificName", "confidence", "description", "habitat"],
}


def parse_analysis(raw: str) -> AnalysisResult:
    """Validate the model's JSON reply into an AnalysisResult."""
    text = raw.strip().removeprefix("```json").removeprefix("```").removesuffix("```").strip()
    if not text:
        raise ClassificationError("No response from vision model")

    try:
        return AnalysisResult.model_validate_json(text)
    except ValidationError as e:
        raise ClassificationError(f"Vision model returned unusable analysis: {e}") from e


class SpeciesClassifier:
    """Sends an image to a vision model and returns a structured species analysis."""

    def __init__(self, provider: LLMProvider, model: str | None = None):
        self.provider = provider
        self.model = model or settings.classification_model

    async def classify(self, image_bytes: bytes, mime_type: str) -> AnalysisResult:
        if not image_bytes:
            raise ClassificationError("No image data to classify")

        try:
            response = await self.provider.complete(
                prompt=IDENTIFY_PROMPT,
                system=SYSTEM_PROMPT,
                model=self.model,
                images=[InlineImage(data=image_bytes, mime_type=mime_type)],
                response_schema=ANALYSIS_SCHEMA,
                temperature=0.2,
            )
        except Exception as e:
            log.error(f"Identification failed: {e}")
            raise ClassificationError(f"Vision model request failed: {e}") from e

        analysis = parse_analysis(response.content)
        log.info(f"Identified '{analysis.species}' (confidence={analysis.confidence:.2f})")
        return analysis
