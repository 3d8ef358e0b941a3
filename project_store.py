"""
Directory-backed persistence for story projects.

Each story lives in ``<root>/<id>/`` with a ``story.json`` metadata file and one
``episode_<n>/`` directory per episode holding ``voiceover.wav``,
``images/image_<k>.png`` and ``videos/clip_<k>.mp4``.
"""

import asyncio
import json
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from config_manager import StorageConfig
from data_models import ArchivedStoryRecord, AssetBuffer, AssetKind, Episode
from key_value_store import KeyValueStore
from narration import concat_wav

logger = logging.getLogger(__name__)

HANDLE_KEY = "storyForgeDirHandle"
SCHEMA_VERSION = 2

GRANTED = "granted"
DENIED = "denied"
PROMPT = "prompt"

_IMAGE_NAME_RE = re.compile(r"^image_(\d+)\.png$")
_CLIP_NAME_RE = re.compile(r"^clip_(\d+)\.mp4$")


class StorageError(Exception):
    """Base exception for project storage errors"""
    pass


class StoragePermissionError(StorageError):
    """Raised when access to the chosen directory is denied"""
    pass


class StaleHandleError(StorageError):
    """Raised when the remembered directory no longer exists"""
    pass


def numeric_sort_key(name: str) -> Tuple:
    """Sort key that orders ``image_2`` before ``image_10``"""
    return tuple(int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name))


class DirectoryHandle:
    """Capability for one user-granted directory"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    @property
    def name(self) -> str:
        return self.path.name

    def _ensure_exists(self) -> None:
        if not self.path.is_dir():
            raise StaleHandleError(f"Directory {self.path} no longer exists")

    def query_permission(self, writable: bool = True) -> str:
        self._ensure_exists()
        mode = os.R_OK | os.X_OK | (os.W_OK if writable else 0)
        return GRANTED if os.access(self.path, mode) else PROMPT

    def request_permission(self, writable: bool = True) -> str:
        """Re-check access; a terminal cannot grant what the OS refuses"""
        self._ensure_exists()
        mode = os.R_OK | os.X_OK | (os.W_OK if writable else 0)
        return GRANTED if os.access(self.path, mode) else DENIED

    def get_directory(self, name: str, create: bool = False) -> 'DirectoryHandle':
        self._ensure_exists()
        child = self.path / name
        if create:
            child.mkdir(exist_ok=True)
        elif not child.is_dir():
            raise FileNotFoundError(f"No directory {name} in {self.path}")
        return DirectoryHandle(child)

    def has_entry(self, name: str) -> bool:
        return (self.path / name).exists()

    def write_file(self, name: str, data: bytes) -> Path:
        """Write atomically via a temp file"""
        self._ensure_exists()
        target = self.path / name
        temp_path = target.with_name(f".{name}.tmp")
        temp_path.write_bytes(data)
        temp_path.replace(target)
        return target

    def read_file(self, name: str) -> bytes:
        self._ensure_exists()
        return (self.path / name).read_bytes()

    def entries(self) -> List[Path]:
        self._ensure_exists()
        return sorted(self.path.iterdir(), key=lambda p: numeric_sort_key(p.name))

    def remove_entry(self, name: str, recursive: bool = False) -> None:
        self._ensure_exists()
        target = self.path / name
        if target.is_dir():
            if recursive:
                shutil.rmtree(target)
            else:
                target.rmdir()
        else:
            target.unlink()

    def __eq__(self, other) -> bool:
        return isinstance(other, DirectoryHandle) and self.path == other.path

    def __repr__(self) -> str:
        return f"DirectoryHandle({self.path})"


DirectoryPicker = Callable[[], Awaitable[Optional[Union[str, Path]]]]


class ProjectStore:
    """Saves, loads and deletes story projects under a directory capability"""

    def __init__(self, kv_store: KeyValueStore, config: Optional[StorageConfig] = None,
                 directory_picker: Optional[DirectoryPicker] = None):
        self.kv_store = kv_store
        self.config = config or StorageConfig()
        self.directory_picker = directory_picker

    # ------------------------------------------------------------ capability

    def verify_permission(self, handle: DirectoryHandle) -> None:
        """Query, then request; raises StoragePermissionError when denied"""
        if handle.query_permission() == GRANTED:
            return
        if handle.request_permission() == GRANTED:
            return
        raise StoragePermissionError(f"Permission denied for {handle.path}")

    async def acquire_handle(self, prompt_if_missing: bool = False) -> Optional[DirectoryHandle]:
        """Remembered directory, or a freshly picked one when allowed.

        A remembered directory that no longer exists is forgotten and, unless
        ``prompt_if_missing`` is set, ``None`` is returned.
        """
        token = self.kv_store.get(HANDLE_KEY)
        if token:
            handle = DirectoryHandle(token)
            try:
                self.verify_permission(handle)
                return handle
            except StaleHandleError as e:
                logger.warning(f"Stored directory handle is stale, clearing it: {e}")
                self.clear_handle()

        if not prompt_if_missing or self.directory_picker is None:
            return None

        picked = await self.directory_picker()
        if not picked:
            logger.info("User cancelled directory picker.")
            return None

        handle = DirectoryHandle(picked)
        self.verify_permission(handle)
        self.kv_store.set(HANDLE_KEY, str(handle.path.resolve()))
        logger.info(f"Using story folder {handle.path}")
        return handle

    def clear_handle(self) -> None:
        self.kv_store.delete(HANDLE_KEY)

    # ------------------------------------------------------------ save

    async def save(self, handle: DirectoryHandle, record: ArchivedStoryRecord) -> None:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._save_sync, handle, record)
        logger.info(f"Story {record.id} saved to {handle.path / record.id}")

    def _save_sync(self, handle: DirectoryHandle, record: ArchivedStoryRecord) -> None:
        story_dir = handle.get_directory(record.id, create=True)
        metadata = {"schemaVersion": SCHEMA_VERSION, **record.to_dict()}
        story_dir.write_file(
            self.config.metadata_filename,
            json.dumps(metadata, indent=2, ensure_ascii=False).encode("utf-8"),
        )

        for number, episode in enumerate(record.data.episodes, start=1):
            episode_dir = story_dir.get_directory(f"episode_{number}", create=True)
            self._save_narration(episode_dir, episode, number)
            self._save_numbered(episode_dir, "images", "image_{}.png", episode.image_assets, number)
            self._save_numbered(episode_dir, "videos", "clip_{}.mp4", episode.video_assets, number)

    def _save_narration(self, episode_dir: DirectoryHandle, episode: Episode, number: int) -> None:
        filename = self.config.narration_filename
        if not episode.narration_assets:
            if episode_dir.has_entry(filename):
                episode_dir.remove_entry(filename)
            return
        try:
            segments = [asset.read() for asset in episode.narration_assets]
            audio = segments[0] if len(segments) == 1 else concat_wav(segments)
            episode_dir.write_file(filename, audio)
        except Exception as e:
            logger.error(f"Failed to save audio for episode {number}: {e}")

    def _save_numbered(self, episode_dir: DirectoryHandle, subdir: str, pattern: str,
                       assets: List[Optional[AssetBuffer]], number: int) -> None:
        # read first: on re-save the buffers may point into the directory being replaced
        contents: Dict[int, bytes] = {}
        for slot, asset in enumerate(assets, start=1):
            if asset is None:
                continue
            try:
                contents[slot] = asset.read()
            except Exception as e:
                logger.error(f"Failed to read {subdir} {slot} for episode {number}: {e}")

        if episode_dir.has_entry(subdir):
            episode_dir.remove_entry(subdir, recursive=True)
        if not contents:
            return

        target = episode_dir.get_directory(subdir, create=True)
        for slot, data in contents.items():
            try:
                target.write_file(pattern.format(slot), data)
            except Exception as e:
                logger.error(f"Failed to save {subdir} {slot} for episode {number}: {e}")

    # ------------------------------------------------------------ load

    async def load_all(self, handle: DirectoryHandle) -> List[ArchivedStoryRecord]:
        """Every readable story under the handle, newest first"""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._load_all_sync, handle)

    def _load_all_sync(self, handle: DirectoryHandle) -> List[ArchivedStoryRecord]:
        records = []
        for entry in handle.entries():
            if not entry.is_dir():
                continue
            record = self._load_story(DirectoryHandle(entry))
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def load(self, handle: DirectoryHandle, story_id: str) -> Optional[ArchivedStoryRecord]:
        loop = asyncio.get_event_loop()
        try:
            story_dir = handle.get_directory(story_id)
        except FileNotFoundError:
            return None
        return await loop.run_in_executor(None, self._load_story, story_dir)

    def _load_story(self, story_dir: DirectoryHandle) -> Optional[ArchivedStoryRecord]:
        try:
            metadata = json.loads(story_dir.read_file(self.config.metadata_filename).decode("utf-8"))
            version = metadata.get("schemaVersion", 1)
            if version > SCHEMA_VERSION:
                logger.warning(f"Story {story_dir.name} has newer schema {version}; loading known fields")
            record = ArchivedStoryRecord.from_dict(metadata)
        except StaleHandleError:
            raise
        except Exception as e:
            logger.error(f"Failed to load story from directory {story_dir.name}: {e}")
            return None

        episodes = record.data.episodes
        for index, episode in enumerate(episodes):
            try:
                episode_dir = story_dir.get_directory(f"episode_{index + 1}")
            except FileNotFoundError:
                logger.warning(f"Could not find asset directory for episode {index + 1} in story {story_dir.name}")
                continue
            except OSError as e:
                logger.warning(f"Could not open assets for episode {index + 1} in story {story_dir.name}: {e}")
                continue
            episodes[index] = self._load_assets(episode_dir, episode)
        return record

    def _load_assets(self, episode_dir: DirectoryHandle, episode: Episode) -> Episode:
        narration = []
        voiceover = episode_dir.path / self.config.narration_filename
        try:
            if voiceover.is_file():
                narration = [AssetBuffer.from_file(AssetKind.AUDIO, voiceover, "audio/wav")]
        except OSError as e:
            logger.warning(f"Could not read narration in {episode_dir.name}: {e}")

        images = self._load_numbered(episode_dir, "images", _IMAGE_NAME_RE, ".png",
                                     AssetKind.IMAGE, "image/png")
        if episode.image_scene_prompts and len(images) < len(episode.image_scene_prompts):
            images += [None] * (len(episode.image_scene_prompts) - len(images))
        videos = [
            asset for asset in self._load_numbered(episode_dir, "videos", _CLIP_NAME_RE, ".mp4",
                                                   AssetKind.VIDEO, "video/mp4")
            if asset is not None
        ]

        episode.narration_assets = narration
        episode.image_assets = images
        episode.video_assets = videos
        return episode

    @staticmethod
    def _load_numbered(episode_dir: DirectoryHandle, subdir: str, pattern: re.Pattern,
                       suffix: str, kind: AssetKind, mime_type: str) -> List[Optional[AssetBuffer]]:
        """Files ordered by their number; a numbering gap becomes ``None``"""
        try:
            directory = episode_dir.get_directory(subdir)
            files = [p for p in directory.entries() if p.is_file() and p.name.endswith(suffix)]
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(f"Could not read {subdir} in {episode_dir.name}: {e}")
            return []

        numbered: Dict[int, Path] = {}
        unnumbered: List[Path] = []
        for path in files:
            match = pattern.match(path.name)
            if match and int(match.group(1)) > 0:
                numbered[int(match.group(1))] = path
            else:
                unnumbered.append(path)

        slots: List[Optional[AssetBuffer]] = [None] * (max(numbered) if numbered else 0)
        for slot, path in numbered.items():
            slots[slot - 1] = AssetBuffer.from_file(kind, path, mime_type)
        slots.extend(AssetBuffer.from_file(kind, path, mime_type) for path in unnumbered)
        return slots

    # ------------------------------------------------------------ delete

    async def delete(self, handle: DirectoryHandle, story_id: str) -> None:
        """Remove a story directory and everything in it"""
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, lambda: handle.remove_entry(story_id, recursive=True))
        except FileNotFoundError as e:
            raise StorageError(f"Story {story_id} not found in {handle.path}") from e
        logger.info(f"Deleted story {story_id}")
