import time
import uuid
from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

UNKNOWN_SPECIES = "Unknown"


def species_key(species: str) -> str:
    """Album key for a species label: lower-cased and trimmed."""
    return species.lower().strip()


def new_photo_id() -> str:
    return f"{time.time_ns() // 1_000_000}-{uuid.uuid4().hex[:8]}"


def now_ms() -> int:
    return time.time_ns() // 1_000_000


class PhotoSource(StrEnum):
    UPLOAD = "upload"
    GENERATED = "generated"
    EDITED = "edited"


class _CamelModel(BaseModel):
    # Stored payload uses camelCase keys ("coverPhotoUrl", "recentPhotos", ...)
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AnalysisResult(_CamelModel):
    model_config = ConfigDict(frozen=True)

    species: str
    scientific_name: str
    confidence: float = Field(ge=0.0, le=1.0)
    description: str
    habitat: str
    category: str | None = None

    @field_validator("species")
    @classmethod
    def _species_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("species must not be blank")
        return value

    @property
    def is_verified(self) -> bool:
        return self.confidence > 0.8

    @property
    def display_category(self) -> str:
        return self.category or "Wildlife"

    @property
    def is_unknown(self) -> bool:
        return species_key(self.species) == species_key(UNKNOWN_SPECIES)


class Photo(_CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_photo_id)
    url: str
    timestamp: int = Field(default_factory=now_ms)
    analysis: AnalysisResult
    fun_caption: str | None = None
    source: PhotoSource = PhotoSource.UPLOAD


class Album(_CamelModel):
    """Per-species album. `photos` is newest first and never empty."""

    id: str
    name: str
    cover_photo_url: str
    photos: list[Photo]
    wiki_summary: str | None = None
    wiki_url: str | None = None

    @property
    def sightings(self) -> int:
        return len(self.photos)

    @property
    def scientific_name(self) -> str | None:
        return self.photos[0].analysis.scientific_name if self.photos else None

    @property
    def is_enriched(self) -> bool:
        return bool(self.wiki_summary)


class Collection(_CamelModel):
    albums: dict[str, Album] = Field(default_factory=dict)
    recent_photos: list[Photo] = Field(default_factory=list)


@dataclass(frozen=True)
class PhotoRef:
    """Identity of a freshly ingested photo and the album it landed in."""

    photo_id: str
    album_key: str
