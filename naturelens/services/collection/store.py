import asyncio
import logging

from pydantic import ValidationError

from naturelens.config.settings import settings
from naturelens.services.collection.models import Album, Collection, Photo, species_key
from naturelens.services.database import StateStorage
from naturelens.services.errors import PersistenceError

log = logging.getLogger(__name__)


class CollectionStore:
    """Owns the species-keyed Collection and its durable copy.

    All mutation goes through merge(), set_enrichment() and clear(). Each of
    them runs under one lock that also covers the save, so stored snapshots
    land in mutation order. Readers always get copies of the latest state.
    """

    def __init__(
        self,
        storage: StateStorage | None = None,
        namespace: str | None = None,
        recent_limit: int | None = None,
        collection: Collection | None = None,
    ):
        self.storage = storage
        self.namespace = namespace or settings.storage_namespace
        self.recent_limit = recent_limit or settings.recent_photos_limit
        self._collection = collection or Collection()
        self._lock = asyncio.Lock()

    @classmethod
    async def open(
        cls,
        storage: StateStorage | None,
        namespace: str | None = None,
        recent_limit: int | None = None,
    ) -> "CollectionStore":
        """Build a store, loading the persisted Collection if there is one."""
        store = cls(storage=storage, namespace=namespace, recent_limit=recent_limit)
        if storage is not None:
            try:
                store._collection = await store._load()
            except PersistenceError as e:
                log.warning(f"Starting from an empty collection: {e}")
        log.info(
            f"Collection ready: {len(store._collection.albums)} albums, "
            f"{len(store._collection.recent_photos)} recent photos"
        )
        return store

    async def _load(self) -> Collection:
        try:
            payload = await self.storage.read(self.namespace)
        except Exception as e:
            raise PersistenceError(f"Could not read '{self.namespace}': {e}") from e

        if not payload:
            return Collection()

        try:
            return Collection.model_validate_json(payload)
        except ValidationError as e:
            raise PersistenceError(f"Stored collection is corrupt: {e.error_count()} error(s)") from e

    def serialize(self) -> str:
        return self._collection.model_dump_json(by_alias=True)

    async def _persist(self):
        if self.storage is None:
            return
        try:
            await self.storage.write(self.namespace, self.serialize())
        except Exception as e:
            # In-memory state stays authoritative; the next save rewrites everything.
            log.error(f"Failed to save collection to '{self.namespace}': {e}")

    # --- Mutation ---

    async def merge(self, photo: Photo) -> str:
        """File a photo into its species album and the recent feed.

        Returns the resolved species key.
        """
        key = species_key(photo.analysis.species)

        async with self._lock:
            album = self._collection.albums.get(key)
            if album:
                album.photos.insert(0, photo)
                album.name = photo.analysis.species
            else:
                self._collection.albums[key] = Album(
                    id=key,
                    name=photo.analysis.species,
                    cover_photo_url=photo.url,
                    photos=[photo],
                )
                log.info(f"Created album '{key}'")

            recent = self._collection.recent_photos
            recent.insert(0, photo)
            del recent[self.recent_limit :]

            await self._persist()

        return key

    async def set_enrichment(self, key: str, summary: str, url: str | None = None) -> bool:
        """Attach a grounded summary to an album once.

        Returns False without touching anything when the album is unknown or
        already enriched.
        """
        async with self._lock:
            album = self._collection.albums.get(key)
            if album is None or album.wiki_summary:
                return False
            album.wiki_summary = summary
            album.wiki_url = url or None
            await self._persist()
        return True

    async def clear(self):
        async with self._lock:
            self._collection = Collection()
            await self._persist()
        log.info("Collection cleared")

    # --- Read access ---

    def get_album(self, key: str) -> Album | None:
        album = self._collection.albums.get(key)
        if album is None:
            return None
        return album.model_copy(update={"photos": list(album.photos)})

    def albums(self) -> list[Album]:
        return [self.get_album(key) for key in self._collection.albums]

    def recent_photos(self) -> list[Photo]:
        return list(self._collection.recent_photos)

    def find_photo(self, photo_id: str) -> Photo | None:
        for album in self._collection.albums.values():
            for photo in album.photos:
                if photo.id == photo_id:
                    return photo
        return None

    def snapshot(self) -> Collection:
        return self._collection.model_copy(deep=True)
