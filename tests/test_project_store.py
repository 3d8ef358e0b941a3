"""
Tests for directory-backed project persistence.
"""

import json
import shutil
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from config_manager import StorageConfig
from data_models import ArchivedStoryRecord, AssetBuffer, AssetKind, Episode, SEOData, Story
from key_value_store import KeyValueStore
from narration import pcm_to_wav
from project_store import (
    DENIED,
    HANDLE_KEY,
    SCHEMA_VERSION,
    DirectoryHandle,
    ProjectStore,
    StaleHandleError,
    StorageError,
    StoragePermissionError,
    numeric_sort_key,
)


def image(data: bytes) -> AssetBuffer:
    return AssetBuffer(AssetKind.IMAGE, "image/png", data=data)


def make_record(story_id="1700000000000-abcd1234", created_at=None) -> ArchivedStoryRecord:
    first = Episode(
        text="Episode one text",
        seo=SEOData("Title one", "Description", ["tag1", "tag2"]),
        image_scene_prompts=["s1", "s2", "s3"],
    ).with_images([image(b"img-1"), image(b"img-2"), image(b"img-3")])
    first = first.with_narration([
        AssetBuffer(AssetKind.AUDIO, "audio/wav", data=pcm_to_wav(b"\x01\x00" * 4, 24000)),
        AssetBuffer(AssetKind.AUDIO, "audio/wav", data=pcm_to_wav(b"\x02\x00" * 2, 24000)),
    ])
    second = Episode(text="Episode two text")
    return ArchivedStoryRecord(
        id=story_id,
        title="Title one",
        created_at=created_at or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        data=Story(prompt="A lighthouse keeper finds a map", episodes=[first, second]),
    )


@pytest.fixture
def kv_store(tmp_path):
    return KeyValueStore(tmp_path / "state" / "state.json")


@pytest.fixture
def root(tmp_path):
    path = tmp_path / "stories"
    path.mkdir()
    return path


@pytest.fixture
def store(kv_store):
    return ProjectStore(kv_store, StorageConfig())


class TestSaveLoad:
    """Round-trip through the directory layout"""

    @pytest.mark.asyncio
    async def test_round_trip(self, store, root):
        handle = DirectoryHandle(root)
        record = make_record()

        await store.save(handle, record)
        loaded = await store.load_all(handle)

        assert len(loaded) == 1
        story = loaded[0].data
        assert loaded[0].id == record.id
        assert loaded[0].created_at == record.created_at
        assert story.prompt == record.data.prompt
        assert [e.text for e in story.episodes] == ["Episode one text", "Episode two text"]
        assert story.episodes[0].seo == record.data.episodes[0].seo
        assert story.episodes[1].seo is None
        assert [a.read() for a in story.episodes[0].image_assets] == [b"img-1", b"img-2", b"img-3"]
        assert story.episodes[1].image_assets == []

    @pytest.mark.asyncio
    async def test_layout_on_disk(self, store, root):
        record = make_record()
        await store.save(DirectoryHandle(root), record)

        story_dir = root / record.id
        metadata = json.loads((story_dir / "story.json").read_text(encoding="utf-8"))
        assert metadata["schemaVersion"] == SCHEMA_VERSION
        assert metadata["data"]["storyPrompt"] == record.data.prompt
        assert metadata["data"]["episodes"][1]["seo"] is None
        assert (story_dir / "episode_1" / "images" / "image_3.png").read_bytes() == b"img-3"
        assert not (story_dir / "episode_2" / "images").exists()

        # narration chunks are joined into one file
        voiceover = (story_dir / "episode_1" / "voiceover.wav").read_bytes()
        assert voiceover[44:] == b"\x01\x00" * 4 + b"\x02\x00" * 2

    @pytest.mark.asyncio
    async def test_image_order_is_numeric(self, store, root):
        episode = Episode(text="t").with_images([image(f"img-{i}".encode()) for i in range(1, 12)])
        record = make_record()
        record.data.episodes = [episode]

        await store.save(DirectoryHandle(root), record)
        loaded = await store.load(DirectoryHandle(root), record.id)

        assert [a.read() for a in loaded.data.episodes[0].image_assets] == [
            f"img-{i}".encode() for i in range(1, 12)
        ]

    @pytest.mark.asyncio
    async def test_image_gap_restored_as_placeholder(self, store, root):
        episode = Episode(text="t", image_scene_prompts=["a", "b", "c"]).with_images(
            [image(b"one"), None, image(b"three")]
        )
        record = make_record()
        record.data.episodes = [episode]

        await store.save(DirectoryHandle(root), record)
        loaded = await store.load(DirectoryHandle(root), record.id)

        assets = loaded.data.episodes[0].image_assets
        assert assets[0].read() == b"one"
        assert assets[1] is None
        assert assets[2].read() == b"three"

    @pytest.mark.asyncio
    async def test_unreadable_asset_folder_gives_empty_slots(self, store, root):
        handle = DirectoryHandle(root)
        first = make_record("1-a", datetime(2024, 5, 1, tzinfo=timezone.utc))
        second = make_record("2-b", datetime(2024, 5, 2, tzinfo=timezone.utc))
        await store.save(handle, first)
        await store.save(handle, second)
        locked = root / "1-a" / "episode_1" / "images"
        original_entries = DirectoryHandle.entries

        def entries(self):
            if self.path == locked:
                raise PermissionError(13, "Permission denied", str(locked))
            return original_entries(self)

        with patch.object(DirectoryHandle, "entries", entries):
            loaded = await store.load_all(handle)

        assert [r.id for r in loaded] == ["2-b", "1-a"]
        locked_episode = loaded[1].data.episodes[0]
        assert locked_episode.image_assets == [None, None, None]
        assert len(locked_episode.narration_assets) == 1
        assert [a.read() for a in loaded[0].data.episodes[0].image_assets] == [b"img-1", b"img-2", b"img-3"]

    @pytest.mark.asyncio
    async def test_resave_replaces_assets(self, store, root):
        handle = DirectoryHandle(root)
        record = make_record()
        await store.save(handle, record)

        loaded = await store.load(handle, record.id)
        first = loaded.data.episodes[0]
        loaded.data.episodes[0] = first.with_images(first.image_assets[:1])
        await store.save(handle, loaded)

        reloaded = await store.load(handle, record.id)
        assert [a.read() for a in reloaded.data.episodes[0].image_assets if a] == [b"img-1"]
        assert not (root / record.id / "episode_1" / "images" / "image_2.png").exists()

    @pytest.mark.asyncio
    async def test_version_one_metadata_loads(self, store, root):
        story_dir = root / "legacy"
        story_dir.mkdir()
        (story_dir / "story.json").write_text(json.dumps({
            "id": "legacy",
            "title": "Old story",
            "createdAt": "2023-01-02T03:04:05.000Z",
            "data": {"storyPrompt": "old", "episodes": [{"text": "only text", "seo": None}]},
        }), encoding="utf-8")

        records = await store.load_all(DirectoryHandle(root))

        episode = records[0].data.episodes[0]
        assert episode.text == "only text"
        assert episode.storyboard_prompts == [] and episode.video_prompt == ""
        assert records[0].created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_listing_newest_first_and_skips_broken(self, store, root):
        handle = DirectoryHandle(root)
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for offset, story_id in enumerate(["a", "b", "c"]):
            await store.save(handle, make_record(story_id, base + timedelta(days=offset)))
        (root / "broken").mkdir()
        (root / "broken" / "story.json").write_text("{not json", encoding="utf-8")

        records = await store.load_all(handle)

        assert [r.id for r in records] == ["c", "b", "a"]

    @pytest.mark.asyncio
    async def test_failed_asset_is_skipped(self, store, root):
        record = make_record()
        record.data.episodes[0].image_assets[1].release()

        await store.save(DirectoryHandle(root), record)

        images_dir = root / record.id / "episode_1" / "images"
        assert sorted(p.name for p in images_dir.iterdir()) == ["image_1.png", "image_3.png"]

    @pytest.mark.asyncio
    async def test_delete(self, store, root):
        handle = DirectoryHandle(root)
        record = make_record()
        await store.save(handle, record)

        await store.delete(handle, record.id)

        assert not (root / record.id).exists()
        with pytest.raises(StorageError):
            await store.delete(handle, record.id)


class TestHandles:
    """Capability acquisition, permission and stale-handle recovery"""

    @pytest.mark.asyncio
    async def test_no_handle_without_prompt(self, store):
        assert await store.acquire_handle() is None

    @pytest.mark.asyncio
    async def test_picker_result_is_remembered(self, kv_store, root):
        picker = AsyncMock(return_value=str(root))
        store = ProjectStore(kv_store, directory_picker=picker)

        handle = await store.acquire_handle(prompt_if_missing=True)

        assert handle.path == root
        assert kv_store.get(HANDLE_KEY) == str(root.resolve())
        assert await store.acquire_handle() == handle
        picker.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancelled_picker(self, kv_store):
        store = ProjectStore(kv_store, directory_picker=AsyncMock(return_value=None))
        assert await store.acquire_handle(prompt_if_missing=True) is None

    @pytest.mark.asyncio
    async def test_stale_handle_is_cleared(self, kv_store, tmp_path):
        moved = tmp_path / "moved"
        moved.mkdir()
        kv_store.set(HANDLE_KEY, str(moved))
        shutil.rmtree(moved)
        fresh = tmp_path / "fresh"
        fresh.mkdir()
        picker = AsyncMock(return_value=str(fresh))
        store = ProjectStore(kv_store, directory_picker=picker)

        assert await store.acquire_handle() is None
        assert kv_store.get(HANDLE_KEY) is None
        picker.assert_not_awaited()

        handle = await store.acquire_handle(prompt_if_missing=True)
        assert handle.path == fresh
        picker.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_permission_denied_raises(self, kv_store, root):
        kv_store.set(HANDLE_KEY, str(root))
        store = ProjectStore(kv_store)

        with patch.object(DirectoryHandle, "query_permission", return_value="prompt"), \
                patch.object(DirectoryHandle, "request_permission", return_value=DENIED) as request:
            with pytest.raises(StoragePermissionError):
                await store.acquire_handle()
        request.assert_called_once()
        # denial is not staleness: the capability is left for the caller to discard
        assert kv_store.get(HANDLE_KEY) == str(root)

    def test_stale_directory_operations(self, tmp_path):
        handle = DirectoryHandle(tmp_path / "missing")
        with pytest.raises(StaleHandleError):
            handle.entries()
        with pytest.raises(StaleHandleError):
            handle.query_permission()

    def test_numeric_sort_key(self):
        names = ["image_10.png", "image_2.png", "image_1.png"]
        assert sorted(names, key=numeric_sort_key) == ["image_1.png", "image_2.png", "image_10.png"]
