import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import StrEnum

from naturelens.config.settings import Settings
from naturelens.config.settings import settings as default_settings
from naturelens.services.collection.models import (
    Album,
    Photo,
    PhotoRef,
    PhotoSource,
    species_key,
)
from naturelens.services.collection.store import CollectionStore
from naturelens.services.database import StateStorage
from naturelens.services.errors import (
    AlbumNotFoundError,
    ClassificationError,
    EditError,
    GenerationError,
    PersistenceError,
)
from naturelens.services.llm import GeminiProvider, LLMProvider
from naturelens.services.media import InlineImage, parse_data_uri, to_data_uri
from naturelens.services.species.captions import CaptionClient
from naturelens.services.species.classifier import SpeciesClassifier
from naturelens.services.species.summaries import SummaryClient
from naturelens.services.studio.generator import ImageEditor, ImageGenerator

log = logging.getLogger(__name__)


class IngestState(StrEnum):
    IDLE = "idle"
    GENERATING = "generating"  # generated/edited origins only
    CLASSIFYING = "classifying"
    CAPTIONING = "captioning"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"


# Caption failures degrade to fallback text, so Captioning never leads to Failed.
TRANSITIONS = {
    IngestState.IDLE: {IngestState.GENERATING, IngestState.CLASSIFYING},
    IngestState.GENERATING: {IngestState.CLASSIFYING, IngestState.FAILED},
    IngestState.CLASSIFYING: {IngestState.CAPTIONING, IngestState.FAILED},
    IngestState.CAPTIONING: {IngestState.MERGING},
    IngestState.MERGING: {IngestState.DONE},
    IngestState.DONE: set(),
    IngestState.FAILED: set(),
}

_job_ids = itertools.count(1)


@dataclass
class IngestJob:
    source: PhotoSource
    id: int = field(default_factory=lambda: next(_job_ids))
    state: IngestState = IngestState.IDLE
    history: list[IngestState] = field(default_factory=lambda: [IngestState.IDLE])

    def advance(self, new_state: IngestState):
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal ingest transition {self.state} -> {new_state}")
        self.state = new_state
        self.history.append(new_state)


class PipelineOrchestrator:
    """Turns raw images into classified photos filed in species albums.

    Upload, generation and edit all converge on _ingest():
    classify -> caption (best-effort) -> build Photo -> store.merge.
    Albums get a grounded summary the first time they are opened.
    """

    def __init__(
        self,
        store: CollectionStore,
        classifier: SpeciesClassifier,
        captioner: CaptionClient,
        summarizer: SummaryClient,
        generator: ImageGenerator,
        editor: ImageEditor,
        reject_unknown_species: bool = False,
    ):
        self.store = store
        self.classifier = classifier
        self.captioner = captioner
        self.summarizer = summarizer
        self.generator = generator
        self.editor = editor
        self.reject_unknown_species = reject_unknown_species

        self._active: dict[int, IngestJob] = {}
        self._enrichments: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_provider(
        cls,
        store: CollectionStore,
        provider: LLMProvider,
        config: Settings | None = None,
    ) -> "PipelineOrchestrator":
        config = config or default_settings
        return cls(
            store=store,
            classifier=SpeciesClassifier(provider, model=config.classification_model),
            captioner=CaptionClient(provider, model=config.caption_model),
            summarizer=SummaryClient(provider, model=config.summary_model),
            generator=ImageGenerator(provider, model=config.image_model),
            editor=ImageEditor(provider, model=config.edit_model),
            reject_unknown_species=config.reject_unknown_species,
        )

    @property
    def state(self) -> IngestState:
        """State of the newest in-flight ingest, or Idle when nothing is running."""
        if not self._active:
            return IngestState.IDLE
        return self._active[max(self._active)].state

    # --- Ingest ---

    async def ingest_upload(self, file_bytes: bytes, mime_type: str) -> PhotoRef:
        image = InlineImage(data=file_bytes, mime_type=mime_type)
        return await self._detached(self._ingest(image, IngestJob(PhotoSource.UPLOAD)))

    async def ingest_generated(self, prompt: str, aspect_ratio: str = "1:1", image_size: str = "1K") -> PhotoRef:
        return await self._detached(self._generate_and_ingest(prompt, aspect_ratio, image_size))

    async def ingest_edited(self, source_photo: Photo, instruction: str) -> PhotoRef:
        return await self._detached(self._edit_and_ingest(source_photo, instruction))

    async def _generate_and_ingest(self, prompt: str, aspect_ratio: str, image_size: str) -> PhotoRef:
        job = IngestJob(PhotoSource.GENERATED)
        image = await self._produce(job, self.generator.generate(prompt, aspect_ratio, image_size))
        return await self._ingest(image, job)

    async def _edit_and_ingest(self, source_photo: Photo, instruction: str) -> PhotoRef:
        job = IngestJob(PhotoSource.EDITED)
        try:
            original = parse_data_uri(source_photo.url)
        except ValueError as e:
            raise EditError(f"Photo {source_photo.id} has no editable image data: {e}") from e
        image = await self._produce(job, self.editor.edit(original.data, original.mime_type, instruction))
        return await self._ingest(image, job)

    async def _produce(self, job: IngestJob, request) -> InlineImage:
        self._active[job.id] = job
        try:
            job.advance(IngestState.GENERATING)
            return await request
        except GenerationError as e:
            job.advance(IngestState.FAILED)
            log.error(f"Ingest {job.id} ({job.source}) failed: {e}")
            raise
        finally:
            # _ingest() registers the job again before its first suspension point.
            self._active.pop(job.id, None)

    async def _ingest(self, image: InlineImage, job: IngestJob) -> PhotoRef:
        self._active[job.id] = job
        try:
            job.advance(IngestState.CLASSIFYING)
            try:
                analysis = await self.classifier.classify(image.data, image.mime_type)
                if self.reject_unknown_species and analysis.is_unknown:
                    raise ClassificationError("Image does not show a recognizable animal or bird")
            except ClassificationError as e:
                job.advance(IngestState.FAILED)
                log.error(f"Ingest {job.id} ({job.source}) failed: {e}")
                raise

            job.advance(IngestState.CAPTIONING)
            caption = await self.captioner.caption(analysis.species)

            job.advance(IngestState.MERGING)
            photo = Photo(
                url=to_data_uri(image.data, image.mime_type),
                analysis=analysis,
                fun_caption=caption,
                source=job.source,
            )
            key = await self.store.merge(photo)

            job.advance(IngestState.DONE)
            log.info(f"Ingest {job.id} ({job.source}) filed photo {photo.id} under '{key}'")
            return PhotoRef(photo_id=photo.id, album_key=key)
        finally:
            self._active.pop(job.id, None)

    async def _detached(self, coro) -> PhotoRef:
        # A caller that goes away mid-request does not orphan the photo.
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._collect)
        return await asyncio.shield(task)

    def _collect(self, task: asyncio.Task):
        self._background.discard(task)
        # Marks the exception as retrieved when the original caller is gone.
        if not task.cancelled() and task.exception() is not None:
            log.debug(f"Detached ingest ended with {task.exception()!r}")

    # --- Albums ---

    async def open_album(self, key: str) -> Album:
        """Return an album, fetching its grounded summary the first time only."""
        key = species_key(key)
        album = self.store.get_album(key)
        if album is None:
            raise AlbumNotFoundError(key)
        if album.is_enriched:
            return album

        task = self._enrichments.get(key)
        if task is None:
            task = asyncio.ensure_future(self._enrich(key, album.name))
            self._enrichments[key] = task
            task.add_done_callback(lambda t, k=key: self._forget_enrichment(k, t))
        await asyncio.shield(task)

        album = self.store.get_album(key)
        if album is None:
            # Collection was cleared while the summary was in flight.
            raise AlbumNotFoundError(key)
        return album

    def _forget_enrichment(self, key: str, task: asyncio.Task):
        if self._enrichments.get(key) is task:
            del self._enrichments[key]

    async def _enrich(self, key: str, name: str):
        details = await self.summarizer.summarize(name)
        if await self.store.set_enrichment(key, details.summary, details.url):
            log.info(f"Enriched album '{key}' (source={details.url or 'none'})")

    def find_photo(self, photo_id: str) -> Photo | None:
        return self.store.find_photo(photo_id)


async def create_pipeline(
    config: Settings | None = None,
    provider: LLMProvider | None = None,
) -> PipelineOrchestrator:
    """Wire storage, store, provider and clients from configuration."""
    config = config or default_settings
    storage = StateStorage(config.database_url)
    try:
        await storage.init()
    except PersistenceError as e:
        log.warning(f"Durable state unavailable, keeping the collection in memory: {e}")
        await storage.close()
        storage = None
    store = await CollectionStore.open(
        storage,
        namespace=config.storage_namespace,
        recent_limit=config.recent_photos_limit,
    )
    provider = provider or GeminiProvider(api_key=config.gemini_api_key, model=config.summary_model)
    return PipelineOrchestrator.from_provider(store, provider, config)
