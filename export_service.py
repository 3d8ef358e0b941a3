"""
Zip export of a story project.
"""

import asyncio
import logging
import re
import zipfile
from pathlib import Path
from typing import Optional, Union

from data_models import Episode, SEOData, Story
from localization import DEFAULT_LANGUAGE, get_message
from narration import concat_wav

logger = logging.getLogger(__name__)


def safe_filename(title: str, limit: int = 50) -> str:
    return re.sub(r"[^a-zA-Z0-9_ -]", "_", title)[:limit]


def format_seo(seo: Optional[SEOData], language: str = DEFAULT_LANGUAGE) -> str:
    if not seo:
        return get_message("no_seo", language)
    return get_message(
        "seo_block", language,
        title=seo.title, description=seo.description, tags=", ".join(seo.tags),
    )


def _write_episode(archive: zipfile.ZipFile, number: int, episode: Episode, language: str) -> None:
    root = f"episode_{number}"
    archive.writestr(f"{root}/text/episode_script.txt", episode.text or "")
    archive.writestr(f"{root}/text/seo_and_metadata.txt", format_seo(episode.seo, language))
    # keep the folder layout even when empty
    for folder in ("audio", "images", "videos"):
        archive.writestr(f"{root}/{folder}/", "")

    if episode.narration_assets:
        try:
            segments = [asset.read() for asset in episode.narration_assets]
            audio = segments[0] if len(segments) == 1 else concat_wav(segments)
            archive.writestr(f"{root}/audio/voiceover.wav", audio)
        except Exception as e:
            logger.error(f"Skipping audio of episode {number}: {e}")

    for slot, asset in enumerate(episode.image_assets, start=1):
        if asset is None:
            continue
        try:
            archive.writestr(f"{root}/images/image_{slot:02d}.png", asset.read())
        except Exception as e:
            logger.error(f"Skipping image {slot} of episode {number}: {e}")

    for slot, asset in enumerate(episode.video_assets, start=1):
        try:
            archive.writestr(f"{root}/videos/clip_{slot:02d}.mp4", asset.read())
        except Exception as e:
            logger.error(f"Skipping video {slot} of episode {number}: {e}")


def export_story_zip(story: Story, output_dir: Union[str, Path],
                     language: str = DEFAULT_LANGUAGE) -> Path:
    """Write ``<title>.zip`` into ``output_dir`` and return its path"""
    episodes = story.episodes
    title = (episodes[0].seo.title if episodes and episodes[0].seo else "") \
        or story.prompt[:30] or "story_project"
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    target = output_dir / f"{safe_filename(title)}.zip"

    with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for number, episode in enumerate(episodes, start=1):
            _write_episode(archive, number, episode, language)

    logger.info(f"Exported {len(episodes)} episodes to {target}")
    return target


async def export_story(story: Story, output_dir: Union[str, Path],
                       language: str = DEFAULT_LANGUAGE) -> Path:
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, export_story_zip, story, output_dir, language)


def export_episode_text(episode: Episode, number: int, output_dir: Union[str, Path]) -> Path:
    """Save one episode's script as ``Episode_<title>.txt``"""
    title = episode.seo.title if episode.seo and episode.seo.title else f"episode_{number}"
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    target = output_dir / f"Episode_{safe_filename(title)}.txt"
    target.write_text(episode.text, encoding="utf-8")
    return target
