"""
Data models for StoryForge.
"""

import itertools
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


class AssetKind(Enum):
    """Kinds of binary assets owned by an episode"""
    AUDIO = "audio"
    IMAGE = "image"
    VIDEO = "video"


class AssetReleasedError(ValueError):
    """Raised when reading a buffer that has already been released"""
    pass


class AssetBuffer:
    """Owned binary content behind an audio, image or video asset.

    Before persistence the bytes live in memory and the locator is a ``mem:``
    reference; after a load the buffer is backed by a file and the locator is
    its path. The owning episode must call ``release()`` when the slot is
    overwritten.
    """

    _ids = itertools.count(1)

    def __init__(self, kind: AssetKind, mime_type: str,
                 data: Optional[bytes] = None, path: Optional[Union[str, Path]] = None):
        if data is None and path is None:
            raise ValueError("AssetBuffer needs either data or a file path")
        self.kind = kind
        self.mime_type = mime_type
        self.path = Path(path) if path is not None else None
        self._data = data
        self._id = next(self._ids)
        self._released = False

    @classmethod
    def from_file(cls, kind: AssetKind, path: Union[str, Path], mime_type: str) -> 'AssetBuffer':
        return cls(kind, mime_type, path=path)

    @property
    def locator(self) -> str:
        if self.path is not None:
            return str(self.path)
        return f"mem:{self.kind.value}/{self._id}"

    @property
    def released(self) -> bool:
        return self._released

    def read(self) -> bytes:
        """Return the binary content"""
        if self._released:
            raise AssetReleasedError(f"Asset {self.locator} has been released")
        if self._data is not None:
            return self._data
        return self.path.read_bytes()

    def release(self) -> None:
        """Drop the in-memory content; reading afterwards fails"""
        self._data = None
        self._released = True

    def __repr__(self) -> str:
        state = "released" if self._released else self.mime_type
        return f"AssetBuffer({self.locator}, {state})"


def _release_superseded(old: List[Optional[AssetBuffer]], new: List[Optional[AssetBuffer]]) -> None:
    kept = {id(asset) for asset in new if asset is not None}
    for asset in old:
        if asset is not None and id(asset) not in kept:
            asset.release()


@dataclass
class SEOData:
    """Search metadata derived from an episode"""
    title: str
    description: str
    tags: List[str] = field(default_factory=list)

    def __post_init__(self):
        # set semantics, display order preserved
        self.tags = list(dict.fromkeys(tag.strip() for tag in self.tags if tag and tag.strip()))

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "description": self.description, "tags": list(self.tags)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['SEOData']:
        if not data:
            return None
        return cls(
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            tags=[str(tag) for tag in data.get("tags", [])],
        )


@dataclass
class ImageStyle:
    """Creative parameters applied to one image scene"""
    style: str = "cinematic"
    chips: List[str] = field(default_factory=list)
    negative_prompt: str = ""
    seed: Optional[int] = None

    def build_prompt(self, scene_prompt: str) -> str:
        parts = [scene_prompt, *self.chips, self.style]
        if self.negative_prompt:
            parts.append(f"avoiding: {self.negative_prompt}")
        return ", ".join(part for part in parts if part)


@dataclass
class VoiceSettings:
    """Narration voice configuration"""
    mode: str = "single"
    voice1: str = "Kore"
    voice2: Optional[str] = None
    style_instruction: str = ""

    def __post_init__(self):
        if self.mode not in ("single", "multi"):
            raise ValueError(f"mode must be 'single' or 'multi', got {self.mode}")


@dataclass
class Episode:
    """One of the five narrative segments of a story, with its assets"""
    text: str
    seo: Optional[SEOData] = None
    narration_assets: List[AssetBuffer] = field(default_factory=list)
    image_assets: List[Optional[AssetBuffer]] = field(default_factory=list)
    video_assets: List[AssetBuffer] = field(default_factory=list)
    storyboard_prompts: List[str] = field(default_factory=list)
    image_scene_prompts: List[str] = field(default_factory=list)
    image_styles: List[ImageStyle] = field(default_factory=list)
    video_prompt: str = ""

    def with_scene_prompts(self, prompts: List[str]) -> 'Episode':
        """New scene prompts invalidate every image slot"""
        _release_superseded(self.image_assets, [])
        return replace(
            self,
            image_scene_prompts=list(prompts),
            image_assets=[None] * len(prompts),
            image_styles=[ImageStyle() for _ in prompts],
        )

    def with_image(self, slot: int, asset: Optional[AssetBuffer]) -> 'Episode':
        size = max(len(self.image_scene_prompts), len(self.image_assets), slot + 1)
        images = list(self.image_assets) + [None] * (size - len(self.image_assets))
        previous = images[slot]
        images[slot] = asset
        if previous is not None and previous is not asset:
            previous.release()
        return replace(self, image_assets=images)

    def with_images(self, assets: List[Optional[AssetBuffer]]) -> 'Episode':
        _release_superseded(self.image_assets, assets)
        return replace(self, image_assets=list(assets))

    def with_narration(self, assets: List[AssetBuffer]) -> 'Episode':
        _release_superseded(self.narration_assets, assets)
        return replace(self, narration_assets=list(assets))

    def with_video(self, asset: AssetBuffer) -> 'Episode':
        return replace(self, video_assets=[*self.video_assets, asset])

    def release_assets(self) -> None:
        for asset in [*self.narration_assets, *self.image_assets, *self.video_assets]:
            if asset is not None:
                asset.release()

    def to_dict(self) -> Dict[str, Any]:
        """Metadata form; binary assets are stored beside it, not inside"""
        return {
            "text": self.text,
            "seo": self.seo.to_dict() if self.seo else None,
            "imageScenePrompts": list(self.image_scene_prompts),
            "storyboardPrompts": list(self.storyboard_prompts),
            "videoPrompt": self.video_prompt,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Episode':
        scene_prompts = [str(p) for p in data.get("imageScenePrompts") or []]
        return cls(
            text=str(data.get("text", "")),
            seo=SEOData.from_dict(data.get("seo")),
            storyboard_prompts=[str(p) for p in data.get("storyboardPrompts") or []],
            image_scene_prompts=scene_prompts,
            image_styles=[ImageStyle() for _ in scene_prompts],
            video_prompt=str(data.get("videoPrompt") or ""),
        )


@dataclass
class Story:
    """A story prompt and its ordered episodes"""
    prompt: str = ""
    episodes: List[Episode] = field(default_factory=list)

    @property
    def is_savable(self) -> bool:
        return bool(self.prompt.strip()) or bool(self.episodes)

    def derive_title(self, fallback: str) -> str:
        if self.episodes and self.episodes[0].seo and self.episodes[0].seo.title:
            return self.episodes[0].seo.title
        return self.prompt[:50] or fallback

    def to_dict(self) -> Dict[str, Any]:
        return {
            "storyPrompt": self.prompt,
            "episodes": [episode.to_dict() for episode in self.episodes],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Story':
        return cls(
            prompt=str(data.get("storyPrompt", "")),
            episodes=[Episode.from_dict(e) for e in data.get("episodes") or []],
        )


def new_story_id() -> str:
    """Time-based, collision-resistant identifier usable as a directory name"""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


@dataclass
class ArchivedStoryRecord:
    """A saved story as listed in the archive"""
    id: str
    title: str
    created_at: datetime
    data: Story

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at.isoformat(),
            "data": self.data.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ArchivedStoryRecord':
        created_at = datetime.fromisoformat(str(data["createdAt"]).replace("Z", "+00:00"))
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            created_at=created_at,
            data=Story.from_dict(data.get("data") or {}),
        )


@dataclass
class StorySuggestion:
    """A trending story concept"""
    title: str
    synopsis: str
    popularity_reasons: List[str] = field(default_factory=list)
    youtube_keywords: List[str] = field(default_factory=list)
