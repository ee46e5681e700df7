# tests/test_tag_store.py
import pytest

from aquaforum.models import Photo, PhotoTag, Tag, VisionStatus
from aquaforum.services.cache import JsonCache
from aquaforum.services.media import MediaService
from aquaforum.services.photo_store import PhotoStore
from aquaforum.services.results import DeleteOutcome, DeleteResult
from aquaforum.services.storage import LocalStorage
from aquaforum.services.tag_index import TagUsageIndex, normalize_tag, unique_normalized


class MemoryRedis:
    """Just enough of redis.asyncio.Redis for JsonCache."""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def setex(self, key, ttl, value):
        self.data[key] = value

    async def scan_iter(self, match=None):
        prefix = (match or "*").rstrip("*")
        for key in list(self.data):
            if key.startswith(prefix):
                yield key

    async def delete(self, key):
        self.data.pop(key, None)

    async def aclose(self):
        pass


@pytest.fixture
def index():
    return TagUsageIndex(JsonCache())


@pytest.fixture
def store(index):
    return PhotoStore(index)


async def new_photo(store, **fields):
    values = dict(user_id="u1", image_url="/uploads/images/u1/a.jpg", title="My tank")
    values.update(fields)
    return await store.create(**values)


async def usage(name):
    tag = await Tag.get_or_none(name=name)
    return tag.usage_count if tag else None


def test_normalize_tag():
    assert normalize_tag("  Betta ") == "betta"
    assert normalize_tag("") == ""
    assert normalize_tag(None) == ""
    assert normalize_tag("x" * 51) == ""
    assert unique_normalized(["Betta", "betta", " ", "Guppy"]) == ["betta", "guppy"]


async def test_create_starts_pending_with_user_tags(db_setup, store):
    photo = await new_photo(store, tags=["Betta", "betta", "Planted"])
    assert photo.vision_status == VisionStatus.PENDING
    assert await store.tag_names(photo.id) == ["Betta", "Planted"]
    assert await usage("betta") == 1
    assert await usage("planted") == 1


async def test_merge_is_idempotent_and_case_insensitive(db_setup, store):
    photo = await new_photo(store, tags=["Betta"])

    added = await store.merge_tags(photo.id, ["betta", "Freshwater", "freshwater"])
    assert added == ["freshwater"]
    again = await store.merge_tags(photo.id, ["BETTA", "freshwater"])
    assert again == []

    # first writer's casing is kept
    assert await store.tag_names(photo.id) == ["Betta", "Freshwater"]
    assert await usage("betta") == 1
    assert await usage("freshwater") == 1


async def test_set_tags_releases_removed_tags(db_setup, store):
    photo = await new_photo(store, tags=["betta", "plants"])
    names = await store.set_tags(photo.id, ["rocks", "betta"])
    assert names == ["rocks", "betta"]
    assert await usage("plants") == 0
    assert await usage("rocks") == 1
    assert await usage("betta") == 1


async def test_decrement_never_goes_negative(db_setup, index):
    await index.increment(["snail"])
    await index.decrement(["snail"])
    await index.decrement(["snail", "never-seen"])
    assert await usage("snail") == 0
    assert await usage("never-seen") is None


async def test_status_transitions(db_setup, store):
    photo = await new_photo(store)
    assert await store.mark_processing(photo.id)
    await photo.refresh_from_db()
    assert photo.vision_status == VisionStatus.PROCESSING
    assert photo.vision_started_at is not None

    await store.mark_completed(
        photo.id,
        model="llava",
        processing_ms=120,
        vision_tags=[{"tag": "betta", "confidence": 0.9, "auto_generated": True}],
    )
    await photo.refresh_from_db()
    assert photo.vision_status == VisionStatus.COMPLETED
    assert photo.vision_model == "llava"
    assert photo.vision_tags[0]["tag"] == "betta"
    assert photo.vision_error is None

    # re-running clears the previous outcome
    await store.mark_processing(photo.id)
    await store.mark_failed(photo.id, "")
    await photo.refresh_from_db()
    assert photo.vision_status == VisionStatus.FAILED
    assert photo.vision_error == "Unknown error"


async def test_status_updates_on_missing_photo(db_setup, store):
    missing = "00000000-0000-0000-0000-000000000000"
    assert not await store.mark_processing(missing)
    assert not await store.exists(missing)


async def test_toggle_like(db_setup, store):
    photo = await new_photo(store)
    assert await store.toggle_like(photo.id, "u2") == (True, 1)
    assert await store.toggle_like(photo.id, "u3") == (True, 2)
    assert await store.toggle_like(photo.id, "u2") == (False, 1)


async def test_views_counter(db_setup, store):
    photo = await new_photo(store)
    await store.increment_views(photo.id)
    await store.increment_views(photo.id)
    await photo.refresh_from_db()
    assert photo.views == 2


async def test_delete_releases_tags(db_setup, store, tmp_path):
    local = LocalStorage(str(tmp_path / "uploads"))
    photo = await new_photo(store, tags=["betta", "guppy"])

    result = await store.delete(photo, MediaService(local, local))

    assert result.outcome == DeleteOutcome.NOT_FOUND
    assert result.success
    assert not await Photo.filter(id=photo.id).exists()
    assert await PhotoTag.filter(photo_id=photo.id).count() == 0
    assert await usage("betta") == 0
    assert await usage("guppy") == 0


async def test_delete_proceeds_when_storage_fails(db_setup, store, caplog):
    class BrokenMedia:
        async def delete(self, url):
            return DeleteResult(DeleteOutcome.FAILED, "cloudinary", "timeout")

    photo = await new_photo(store, image_url="https://res.cloudinary.com/demo/image/upload/v1/a.jpg")
    result = await store.delete(photo, BrokenMedia())

    assert not result.success
    assert not await Photo.filter(id=photo.id).exists()
    assert "Storage cleanup failed" in caplog.text


async def test_remove_tag_everywhere(db_setup, store, index):
    first = await new_photo(store, tags=["algae", "betta"])
    second = await new_photo(store, tags=["Algae"])

    assert await store.remove_tag_everywhere("ALGAE") == 2
    assert await index.delete("algae")
    assert await store.tag_names(first.id) == ["betta"]
    assert await store.tag_names(second.id) == []
    assert await index.get("algae") is None


async def test_tags_by_photo(db_setup, store):
    first = await new_photo(store, tags=["a1", "a2"])
    second = await new_photo(store)
    grouped = await store.tags_by_photo([first.id, second.id])
    assert grouped == {str(first.id): ["a1", "a2"], str(second.id): []}


async def test_list_and_suggestions(db_setup, store, index):
    await new_photo(store, tags=["betta", "bettas-in-planted", "guppy"])
    await new_photo(store, tags=["betta"])

    tags, total = await index.list_tags(page=1, limit=2)
    assert total == 3
    assert [t.name for t in tags] == ["betta", "bettas-in-planted"]

    assert [t.name for t in await index.suggestions("BET")] == ["betta", "bettas-in-planted"]
    assert await index.suggestions("b") == []
    assert await index.suggestions(None) == []


async def test_popular_is_cached_and_invalidated(db_setup):
    redis = MemoryRedis()
    index = TagUsageIndex(JsonCache(redis))
    store = PhotoStore(index)
    await new_photo(store, tags=["betta", "guppy"])
    await new_photo(store, tags=["betta"])

    first = await index.popular(limit=5)
    assert first == [{"name": "betta", "usage_count": 2}, {"name": "guppy", "usage_count": 1}]
    assert "tags:popular:5" in redis.data

    # served from cache until a delete invalidates it
    await new_photo(store, tags=["guppy", "molly"])
    assert await index.popular(limit=5) == first

    await store.remove_tag_everywhere("molly")
    await index.delete("molly")
    assert "tags:popular:5" not in redis.data
    refreshed = await index.popular(limit=5)
    assert {t["name"]: t["usage_count"] for t in refreshed} == {"betta": 2, "guppy": 2}
