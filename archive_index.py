"""
Archive of saved stories: the story folder when one is granted, otherwise a
text-only list kept in the key-value store.
"""

import logging
from typing import List, Optional

from data_models import ArchivedStoryRecord
from key_value_store import KeyValueStore
from project_store import DirectoryHandle, ProjectStore

logger = logging.getLogger(__name__)

ARCHIVE_KEY = "storyforge_stories"


class ArchiveIndex:
    """Lists and deletes archived stories, newest first"""

    def __init__(self, project_store: ProjectStore, kv_store: KeyValueStore):
        self.project_store = project_store
        self.kv_store = kv_store

    async def list(self, handle: Optional[DirectoryHandle]) -> List[ArchivedStoryRecord]:
        if handle is not None:
            return await self.project_store.load_all(handle)
        return self._fallback_records()

    async def remove(self, handle: Optional[DirectoryHandle], story_id: str) -> None:
        """Delete a story permanently"""
        if handle is not None:
            await self.project_store.delete(handle, story_id)
            return
        records = [r for r in self._fallback_records() if r.id != story_id]
        self._store_fallback(records)
        logger.info(f"Removed story {story_id} from the local archive")

    async def save_fallback(self, record: ArchivedStoryRecord) -> None:
        """Insert or replace a record in the text-only archive"""
        records = [r for r in self._fallback_records() if r.id != record.id]
        records.append(record)
        self._store_fallback(records)
        logger.info(f"Story {record.id} saved to the local archive (text only)")

    def _fallback_records(self) -> List[ArchivedStoryRecord]:
        records = []
        for raw in self.kv_store.get(ARCHIVE_KEY) or []:
            try:
                records.append(ArchivedStoryRecord.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable archived story: {e}")
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def _store_fallback(self, records: List[ArchivedStoryRecord]) -> None:
        ordered = sorted(records, key=lambda r: r.created_at, reverse=True)
        self.kv_store.set(ARCHIVE_KEY, [record.to_dict() for record in ordered])
