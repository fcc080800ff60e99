import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from pydantic import BaseModel

from naturelens.config.settings import settings
from naturelens.services.collection.models import Album, Photo
from naturelens.services.errors import AlbumNotFoundError, ClassificationError, GenerationError
from naturelens.services.pipeline.orchestrator import PipelineOrchestrator, create_pipeline
from naturelens.services.studio.generator import ASPECT_RATIOS, IMAGE_SIZES

logging.basicConfig(level=getattr(logging, settings.log_level))
log = logging.getLogger(__name__)

RETRY_MESSAGE = "Failed to identify image. Please try again."
GENERATION_RETRY_MESSAGE = "Failed to create image. Please try again."
EDIT_RETRY_MESSAGE = "Failed to edit image. Please try again."


@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator = await create_pipeline(settings)
    app.state.orchestrator = orchestrator
    log.info(f"Gemini available: {await orchestrator.classifier.provider.is_available()}")
    yield
    if orchestrator.store.storage is not None:
        await orchestrator.store.storage.close()


app = FastAPI(
    title="NatureLens",
    description="Identify wildlife photos and file them into species albums",
    version="0.1.0",
    lifespan=lifespan,
)


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def _album_summary(album: Album) -> dict:
    return {
        "id": album.id,
        "name": album.name,
        "cover_photo_url": album.cover_photo_url,
        "sightings": album.sightings,
        "scientific_name": album.scientific_name,
        "enriched": album.is_enriched,
    }


def _photo_view(photo: Photo) -> dict:
    data = photo.model_dump(mode="json", by_alias=True)
    data["verified"] = photo.analysis.is_verified
    data["category"] = photo.analysis.display_category
    return data


def _ingested(orchestrator: PipelineOrchestrator, ref) -> dict:
    return {
        "photo_id": ref.photo_id,
        "album_id": ref.album_key,
        "photo": _photo_view(orchestrator.find_photo(ref.photo_id)),
    }


# --- Health ---


@app.get("/health")
async def health(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    return {
        "status": "ok",
        "pipeline_state": orchestrator.state.value,
        "albums": len(orchestrator.store.albums()),
    }


# --- Albums ---


@app.get("/albums")
async def list_albums(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    return [_album_summary(a) for a in orchestrator.store.albums()]


@app.get("/albums/{album_id}")
async def open_album(album_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    """Open an album. The first open fetches a grounded species summary."""
    try:
        album = await orchestrator.open_album(album_id)
    except AlbumNotFoundError as e:
        raise HTTPException(404, str(e)) from e

    return {
        **_album_summary(album),
        "wiki_summary": album.wiki_summary,
        "wiki_url": album.wiki_url,
        "photos": [_photo_view(p) for p in album.photos],
    }


# --- Photos ---


@app.get("/photos/recent")
async def recent_photos(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    return [_photo_view(p) for p in orchestrator.store.recent_photos()]


@app.get("/photos/{photo_id}")
async def get_photo(photo_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    photo = orchestrator.find_photo(photo_id)
    if not photo:
        raise HTTPException(404, "Photo not found")
    return _photo_view(photo)


@app.post("/photos/upload")
async def upload_photo(
    file: UploadFile = File(...),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Identify an uploaded image and file it into its species album."""
    data = await file.read()
    if not data:
        raise HTTPException(400, "Empty upload")
    mime_type = file.content_type or "application/octet-stream"
    if not mime_type.startswith("image/"):
        raise HTTPException(400, f"Unsupported file type '{mime_type}'")

    try:
        ref = await orchestrator.ingest_upload(data, mime_type)
    except ClassificationError as e:
        raise HTTPException(502, RETRY_MESSAGE) from e
    return _ingested(orchestrator, ref)


class GenerateRequest(BaseModel):
    prompt: str
    aspect_ratio: str = "1:1"
    image_size: str = "1K"


@app.post("/photos/generate")
async def generate_photo(
    req: GenerateRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Create a wildlife image from a prompt, then identify and file it."""
    if not req.prompt.strip():
        raise HTTPException(400, "Prompt must not be empty")
    if req.aspect_ratio not in ASPECT_RATIOS or req.image_size not in IMAGE_SIZES:
        raise HTTPException(400, f"Aspect ratio must be one of {ASPECT_RATIOS}, size one of {IMAGE_SIZES}")

    try:
        ref = await orchestrator.ingest_generated(req.prompt, req.aspect_ratio, req.image_size)
    except GenerationError as e:
        raise HTTPException(502, GENERATION_RETRY_MESSAGE) from e
    except ClassificationError as e:
        raise HTTPException(502, RETRY_MESSAGE) from e
    return _ingested(orchestrator, ref)


class EditRequest(BaseModel):
    instruction: str


@app.post("/photos/{photo_id}/edit")
async def edit_photo(
    photo_id: str,
    req: EditRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Apply an edit instruction to a photo and file the result as a new photo."""
    source = orchestrator.find_photo(photo_id)
    if not source:
        raise HTTPException(404, "Photo not found")
    if not req.instruction.strip():
        raise HTTPException(400, "Edit instruction must not be empty")

    try:
        ref = await orchestrator.ingest_edited(source, req.instruction)
    except GenerationError as e:
        raise HTTPException(502, EDIT_RETRY_MESSAGE) from e
    except ClassificationError as e:
        raise HTTPException(502, RETRY_MESSAGE) from e
    return _ingested(orchestrator, ref)


# --- Collection ---


@app.delete("/collection")
async def clear_collection(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
    await orchestrator.store.clear()
    return {"status": "cleared"}
