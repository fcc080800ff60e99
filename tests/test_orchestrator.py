import asyncio
import gc

import pytest

from naturelens.config.settings import Settings
from naturelens.services.collection.models import Collection, PhotoSource
from naturelens.services.errors import AlbumNotFoundError, ClassificationError, EditError, GenerationError
from naturelens.services.media import InlineImage, to_data_uri
from naturelens.services.pipeline.orchestrator import IngestJob, IngestState, create_pipeline
from naturelens.services.species.captions import failed_caption
from naturelens.services.species.summaries import FAILED_SUMMARY
from tests.fakes import FakeProvider, analysis_json


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


async def test_upload_scenario_merges_case_variants(orchestrator, store, provider):
    provider.analyses = [analysis_json("Red Fox"), analysis_json(" RED FOX ")]

    first = await orchestrator.ingest_upload(b"fox-1", "image/jpeg")
    album = store.get_album(first.album_key)
    assert first.album_key == "red fox"
    assert album.sightings == 1
    assert album.cover_photo_url == to_data_uri(b"fox-1", "image/jpeg")

    second = await orchestrator.ingest_upload(b"fox-2", "image/jpeg")
    album = store.get_album("red fox")
    assert second.album_key == "red fox"
    assert [p.id for p in album.photos] == [second.photo_id, first.photo_id]
    assert album.cover_photo_url == to_data_uri(b"fox-1", "image/jpeg")
    assert len(store.albums()) == 1


async def test_ingested_photo_carries_analysis_caption_and_source(orchestrator, provider):
    provider.caption = "Sneaky!"

    ref = await orchestrator.ingest_upload(b"fox", "image/png")

    photo = orchestrator.find_photo(ref.photo_id)
    assert photo.fun_caption == "Sneaky!"
    assert photo.source == PhotoSource.UPLOAD
    assert photo.analysis.species == "Red Fox"
    assert photo.url == "data:image/png;base64,Zm94"


async def test_classification_failure_leaves_collection_untouched(orchestrator, store, storage, provider):
    provider.analyses = [RuntimeError("model offline")]

    with pytest.raises(ClassificationError):
        await orchestrator.ingest_upload(b"fox", "image/jpeg")

    assert store.snapshot() == Collection()
    assert await storage.read("naturelens-test") is None
    assert provider.calls_of("caption") == []
    assert orchestrator.state == IngestState.IDLE


async def test_caption_failure_degrades_to_fallback(orchestrator, provider):
    provider.caption = RuntimeError("caption model down")

    ref = await orchestrator.ingest_upload(b"fox", "image/jpeg")

    assert orchestrator.find_photo(ref.photo_id).fun_caption == failed_caption("Red Fox")


async def test_recent_feed_after_eleven_ingests(orchestrator, store, provider):
    provider.analyses = [analysis_json(f"Species {i}") for i in range(11)]
    refs = [await orchestrator.ingest_upload(str(i).encode(), "image/jpeg") for i in range(11)]

    recent = [p.id for p in store.recent_photos()]
    assert len(recent) == 10
    assert refs[0].photo_id not in recent
    assert recent == [r.photo_id for r in reversed(refs[1:])]


async def test_unknown_species_kept_as_album_by_default(orchestrator, store, provider):
    provider.analyses = [analysis_json("Unknown", confidence=0.0)]

    ref = await orchestrator.ingest_upload(b"teapot", "image/jpeg")

    assert ref.album_key == "unknown"
    assert store.get_album("unknown").sightings == 1


async def test_unknown_species_rejected_when_configured(orchestrator, store, provider):
    orchestrator.reject_unknown_species = True
    provider.analyses = [analysis_json("unknown", confidence=0.0)]

    with pytest.raises(ClassificationError):
        await orchestrator.ingest_upload(b"teapot", "image/jpeg")
    assert store.albums() == []


async def test_ingest_generated(orchestrator, store, provider):
    provider.image = InlineImage(data=b"lion", mime_type="image/jpeg")
    provider.analyses = [analysis_json("Lion", scientificName="Panthera leo")]

    ref = await orchestrator.ingest_generated("A lion resting on a rock", "3:2", "4K")

    photo = orchestrator.find_photo(ref.photo_id)
    assert ref.album_key == "lion"
    assert photo.source == PhotoSource.GENERATED
    assert photo.url == to_data_uri(b"lion", "image/jpeg")
    assert provider.calls_of("classify")[0]["images"] == [InlineImage(data=b"lion", mime_type="image/jpeg")]


async def test_generation_failure_produces_no_photo(orchestrator, store, provider):
    provider.image = RuntimeError("safety block")

    with pytest.raises(GenerationError):
        await orchestrator.ingest_generated("A lion")

    assert store.albums() == []
    assert provider.calls_of("classify") == []
    assert orchestrator.state == IngestState.IDLE


async def test_ingest_edited_files_new_photo(orchestrator, store, provider):
    original = await orchestrator.ingest_upload(b"fox", "image/jpeg")
    source = orchestrator.find_photo(original.photo_id)
    provider.image = InlineImage(data=b"snowy-fox", mime_type="image/png")

    ref = await orchestrator.ingest_edited(source, "Make it snowy")

    render = provider.calls_of("render")[0]
    assert render["images"] == [InlineImage(data=b"fox", mime_type="image/jpeg")]
    edited = orchestrator.find_photo(ref.photo_id)
    assert edited.source == PhotoSource.EDITED
    assert edited.id != source.id
    assert [p.id for p in store.get_album("red fox").photos] == [edited.id, source.id]


async def test_edit_with_blank_instruction_fails(orchestrator, provider):
    ref = await orchestrator.ingest_upload(b"fox", "image/jpeg")

    with pytest.raises(EditError):
        await orchestrator.ingest_edited(orchestrator.find_photo(ref.photo_id), " ")
    assert provider.calls_of("render") == []


async def test_open_album_enriches_once(orchestrator, provider):
    ref = await orchestrator.ingest_upload(b"fox", "image/jpeg")

    first = await orchestrator.open_album(ref.album_key)
    second = await orchestrator.open_album("  Red Fox ")

    assert len(provider.calls_of("summary")) == 1
    assert first.wiki_summary == "Red foxes are adaptable omnivores."
    assert first.wiki_url == "https://en.wikipedia.org/wiki/Red_fox"
    assert (second.wiki_summary, second.wiki_url) == (first.wiki_summary, first.wiki_url)


async def test_concurrent_opens_share_one_summary_request(orchestrator, provider):
    await orchestrator.ingest_upload(b"fox", "image/jpeg")
    provider.summary_gate = asyncio.Event()

    opens = [asyncio.create_task(orchestrator.open_album("red fox")) for _ in range(3)]
    await _wait_for(lambda: len(provider.calls_of("summary")) == 1)
    provider.summary_gate.set()
    albums = await asyncio.gather(*opens)

    assert len(provider.calls_of("summary")) == 1
    assert {a.wiki_summary for a in albums} == {"Red foxes are adaptable omnivores."}


async def test_failed_summary_is_cached(orchestrator, provider):
    await orchestrator.ingest_upload(b"fox", "image/jpeg")
    provider.summary = RuntimeError("network blip")

    album = await orchestrator.open_album("red fox")
    provider.summary = "Now it works."
    again = await orchestrator.open_album("red fox")

    assert album.wiki_summary == FAILED_SUMMARY
    assert again.wiki_summary == FAILED_SUMMARY
    assert len(provider.calls_of("summary")) == 1


async def test_open_unknown_album(orchestrator):
    with pytest.raises(AlbumNotFoundError):
        await orchestrator.open_album("dodo")


async def test_pending_enrichment_does_not_block_ingest(orchestrator, store, provider):
    await orchestrator.ingest_upload(b"fox", "image/jpeg")
    provider.summary_gate = asyncio.Event()
    opening = asyncio.create_task(orchestrator.open_album("red fox"))
    await _wait_for(lambda: len(provider.calls_of("summary")) == 1)

    ref = await orchestrator.ingest_upload(b"fox-2", "image/jpeg")

    assert store.get_album("red fox").photos[0].id == ref.photo_id
    provider.summary_gate.set()
    album = await opening
    assert album.sightings == 2
    assert album.wiki_summary


async def test_state_tracks_in_flight_ingest(orchestrator, provider):
    provider.classify_gate = asyncio.Event()

    task = asyncio.create_task(orchestrator.ingest_upload(b"fox", "image/jpeg"))
    await _wait_for(lambda: orchestrator.state == IngestState.CLASSIFYING)
    provider.classify_gate.set()
    await task

    assert orchestrator.state == IngestState.IDLE


async def test_cancelled_caller_still_merges(orchestrator, store, provider):
    provider.classify_gate = asyncio.Event()

    task = asyncio.create_task(orchestrator.ingest_upload(b"fox", "image/jpeg"))
    await _wait_for(lambda: len(provider.calls_of("classify")) == 1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    provider.classify_gate.set()

    await _wait_for(lambda: store.get_album("red fox") is not None)
    assert store.get_album("red fox").sightings == 1


async def test_concurrent_uploads_same_species(orchestrator, store):
    refs = await asyncio.gather(*(orchestrator.ingest_upload(f"fox-{i}".encode(), "image/jpeg") for i in range(5)))

    assert {p.id for p in store.get_album("red fox").photos} == {r.photo_id for r in refs}


def test_ingest_job_rejects_failure_after_classification():
    job = IngestJob(PhotoSource.UPLOAD)
    job.advance(IngestState.CLASSIFYING)
    job.advance(IngestState.CAPTIONING)

    with pytest.raises(RuntimeError):
        job.advance(IngestState.FAILED)
    assert job.history == [IngestState.IDLE, IngestState.CLASSIFYING, IngestState.CAPTIONING]


async def test_album_cleared_during_enrichment(orchestrator, store, provider):
    await orchestrator.ingest_upload(b"fox", "image/jpeg")
    provider.summary_gate = asyncio.Event()
    opening = asyncio.create_task(orchestrator.open_album("red fox"))
    await _wait_for(lambda: len(provider.calls_of("summary")) == 1)

    await store.clear()
    provider.summary_gate.set()

    with pytest.raises(AlbumNotFoundError):
        await opening
    assert store.albums() == []


async def test_failure_after_cancelled_caller_is_collected(orchestrator, store, provider):
    loop = asyncio.get_running_loop()
    unhandled = []
    loop.set_exception_handler(lambda _, context: unhandled.append(context))
    try:
        provider.analyses = [RuntimeError("model offline")]
        provider.classify_gate = asyncio.Event()

        caller = asyncio.create_task(orchestrator.ingest_upload(b"fox", "image/jpeg"))
        await _wait_for(lambda: len(provider.calls_of("classify")) == 1)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        provider.classify_gate.set()

        await _wait_for(lambda: not orchestrator._background)
        del caller
        gc.collect()
        await asyncio.sleep(0)
    finally:
        loop.set_exception_handler(None)

    assert unhandled == []
    assert store.albums() == []
    assert orchestrator.state == IngestState.IDLE


async def test_damaged_database_falls_back_to_memory(tmp_path):
    path = tmp_path / "naturelens.db"
    path.write_bytes(b"this is not a sqlite database" * 64)
    config = Settings(database_url=f"sqlite+aiosqlite:///{path}", storage_namespace="naturelens-test")

    orchestrator = await create_pipeline(config, provider=FakeProvider())

    assert orchestrator.store.storage is None
    assert orchestrator.store.albums() == []
    ref = await orchestrator.ingest_upload(b"fox", "image/jpeg")
    assert orchestrator.store.get_album(ref.album_key).sightings == 1
    assert path.read_bytes().startswith(b"this is not a sqlite database")
