import pytest
from datetime import timezone

from data_models import (
    ArchivedStoryRecord,
    AssetBuffer,
    AssetKind,
    AssetReleasedError,
    Episode,
    ImageStyle,
    SEOData,
    Story,
    VoiceSettings,
    new_story_id,
)


def image(data=b"png"):
    return AssetBuffer(AssetKind.IMAGE, "image/png", data=data)


class TestAssetBuffer:

    def test_memory_locator(self):
        asset = image()
        assert asset.locator.startswith("mem:image/")
        assert asset.read() == b"png"

    def test_file_backed(self, tmp_path):
        path = tmp_path / "image_1.png"
        path.write_bytes(b"on disk")

        asset = AssetBuffer.from_file(AssetKind.IMAGE, path, "image/png")

        assert asset.locator == str(path)
        assert asset.read() == b"on disk"

    def test_release(self):
        asset = image()
        asset.release()
        assert asset.released
        with pytest.raises(AssetReleasedError):
            asset.read()

    def test_requires_content(self):
        with pytest.raises(ValueError):
            AssetBuffer(AssetKind.AUDIO, "audio/wav")


class TestEpisode:
    """Copy-on-write updates release what they replace"""

    def test_with_image_releases_previous(self):
        old, new = image(b"old"), image(b"new")
        episode = Episode(text="t", image_scene_prompts=["a", "b"]).with_image(0, old)

        updated = episode.with_image(0, new)

        assert old.released
        assert updated.image_assets == [new, None]
        assert episode.image_assets[0] is old

    def test_with_images_keeps_reused_buffers(self):
        kept, dropped = image(b"kept"), image(b"dropped")
        episode = Episode(text="t").with_images([kept, dropped])

        episode.with_images([kept, None])

        assert not kept.released
        assert dropped.released

    def test_with_video_appends(self):
        first = AssetBuffer(AssetKind.VIDEO, "video/mp4", data=b"1")
        second = AssetBuffer(AssetKind.VIDEO, "video/mp4", data=b"2")

        episode = Episode(text="t").with_video(first).with_video(second)

        assert episode.video_assets == [first, second]

    def test_metadata_excludes_assets(self):
        episode = Episode(text="t", seo=SEOData("T", "D", ["x"])).with_images([image()])
        data = episode.to_dict()

        assert set(data) == {"text", "seo", "imageScenePrompts", "storyboardPrompts", "videoPrompt"}
        assert Episode.from_dict(data).seo == episode.seo


class TestStory:

    def test_savable(self):
        assert not Story().is_savable
        assert not Story(prompt="   ").is_savable
        assert Story(prompt="idea").is_savable
        assert Story(episodes=[Episode(text="t")]).is_savable

    def test_title(self):
        assert Story(prompt="p" * 80).derive_title("Untitled") == "p" * 50
        assert Story().derive_title("Untitled") == "Untitled"
        story = Story(prompt="p", episodes=[Episode(text="t", seo=SEOData("Seo title", "d"))])
        assert story.derive_title("Untitled") == "Seo title"

    def test_record_round_trip(self):
        record = ArchivedStoryRecord.from_dict({
            "id": "1",
            "title": "T",
            "createdAt": "2024-01-01T00:00:00",
            "data": {"storyPrompt": "p", "episodes": [{"text": "t", "seo": None}]},
        })
        assert record.created_at.tzinfo is timezone.utc
        assert ArchivedStoryRecord.from_dict(record.to_dict()) == record


class TestSmallTypes:

    def test_seo_tags_are_unique(self):
        assert SEOData("t", "d", ["a", " a ", "", "b"]).tags == ["a", "b"]
        assert SEOData.from_dict(None) is None

    def test_style_prompt(self):
        assert ImageStyle(chips=["fog"]).build_prompt("a pier") == "a pier, fog, cinematic"

    def test_voice_mode(self):
        with pytest.raises(ValueError):
            VoiceSettings(mode="choir")

    def test_story_ids_unique(self):
        assert new_story_id() != new_story_id()
