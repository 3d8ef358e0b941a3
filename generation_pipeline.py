"""
Staged generation pipeline for StoryForge.

Outline, then the episodes one after another (each enriched with SEO), then
per-episode assets on demand: scene prompts, images, narration, storyboard
prompts and video clips. Every AI call runs through the session's RetryExecutor
and reports progress on the session's channel.
"""

import asyncio
import logging
import math
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

from config_manager import AppConfig
from data_models import (
    AssetBuffer,
    AssetKind,
    Episode,
    ImageStyle,
    SEOData,
    StorySuggestion,
    VoiceSettings,
)
from gemini_service import (
    InvalidApiKeyError,
    MalformedResponseError,
    QuotaExceededError,
    VideoGenerationError,
    VideoTimeoutError,
)
from localization import get_language_specific_prompts, get_message, get_system_instruction
from narration import build_speech_request, pcm_to_wav, split_text_into_chunks
from retry_executor import RetryPolicy
from session import GenerationSession

logger = logging.getLogger(__name__)

CHAPTERS_PER_EPISODE = 4
SEO_EXCERPT_CHARS = 2000
SCENE_EXCERPT_CHARS = 8000
STORYBOARD_EXCERPT_CHARS = 12000
VIDEO_PROMPT_EXCERPT_CHARS = 8000

BATCH_FATAL_ERRORS = (QuotaExceededError, InvalidApiKeyError)

SEO_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "description": {"type": "string"},
        "tags": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["title", "description", "tags"],
}

PROMPT_LIST_SCHEMA = {
    "type": "object",
    "properties": {
        "prompts": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["prompts"],
}

SUGGESTIONS_SCHEMA = {
    "type": "object",
    "properties": {
        "suggestions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "synopsis": {"type": "string"},
                    "popularity_reasons": {"type": "array", "items": {"type": "string"}},
                    "youtube_keywords": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["title", "synopsis", "popularity_reasons", "youtube_keywords"],
            },
        }
    },
    "required": ["suggestions"],
}


def storyboard_scene_count(total_seconds: float, seconds_per_scene: int = 8) -> int:
    """Number of clips needed to cover ``total_seconds``"""
    if seconds_per_scene <= 0:
        raise ValueError(f"seconds_per_scene must be positive, got {seconds_per_scene}")
    if total_seconds <= 0:
        raise ValueError(f"total_seconds must be positive, got {total_seconds}")
    return math.ceil(total_seconds / seconds_per_scene)


def _prompt_list(payload: Any) -> List[str]:
    prompts = payload.get("prompts") if isinstance(payload, dict) else None
    if not isinstance(prompts, list):
        raise MalformedResponseError("AI did not return the expected array of prompts.")
    return [str(prompt).strip() for prompt in prompts if str(prompt).strip()]


class GenerationPipeline:
    """Sequences the AI calls that build a story and its assets"""

    def __init__(self, session: GenerationSession, config: Optional[AppConfig] = None,
                 language: Optional[str] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.session = session
        self.config = config or session.config
        self.language = language or self.config.ui.language
        self.service = session.service
        self.executor = session.executor
        self.progress = session.progress
        self.outline: Optional[str] = None
        self._sleep = sleep
        self._prompts = get_language_specific_prompts(self.language)

    def _message(self, key: str, **kwargs) -> str:
        return get_message(key, self.language, **kwargs)

    def _emit(self, stage: str, key: str, episode_index: Optional[int] = None, **kwargs) -> None:
        self.progress.emit(stage, self._message(key, **kwargs), episode_index=episode_index)

    def _policy(self, on_retry_message: Optional[Callable[[str], None]] = None) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.config.api.max_retries,
            initial_delay=self.config.api.retry_delay,
            on_retry_message=on_retry_message,
        )

    async def _run(self, stage: str, call: Callable[[], Awaitable[Any]],
                   on_retry_message: Optional[Callable[[str], None]] = None) -> Any:
        return await self.executor.execute(call, self._policy(on_retry_message), stage=stage)

    # ------------------------------------------------------------ story text

    async def generate_outline(self, prompt: str,
                               on_retry_message: Optional[Callable[[str], None]] = None) -> str:
        """Outline for the whole story; an outline failure aborts the build"""
        self._emit("outline", "outline_started")
        text = self._prompts["outline"].format(
            episode_count=self.config.pipeline.episode_count, prompt=prompt
        )
        outline = await self._run(
            "outline",
            lambda: self.service.generate_text(
                text,
                system_instruction=get_system_instruction(self.language),
                temperature=self.config.api.outline_temperature,
            ),
            on_retry_message,
        )
        self.outline = outline
        logger.info(f"Generated outline ({len(outline)} characters)")
        return outline

    async def generate_episode_seo(self, episode_text: str, prompt: str,
                                   number: int) -> Optional[SEOData]:
        """SEO enrichment; failures are logged and leave the SEO absent"""
        text = self._prompts["seo"].format(
            number=number, prompt=prompt, excerpt=episode_text[:SEO_EXCERPT_CHARS]
        )
        try:
            payload = await self._run(
                "seo", lambda: self.service.generate_json(text, SEO_SCHEMA)
            )
            if not isinstance(payload, dict):
                raise MalformedResponseError("SEO response is not an object")
            return SEOData.from_dict(payload)
        except Exception as e:
            logger.error(f"Failed to generate SEO content for episode {number}: {e}")
            return None

    async def generate_episode(self, outline: str, number: int, prompt: str,
                               on_retry_message: Optional[Callable[[str], None]] = None) -> Episode:
        """Write episode ``number`` (1-based) and enrich it with SEO"""
        total = self.config.pipeline.episode_count
        index = number - 1
        self._emit("episode", "episode_started", episode_index=index, number=number, total=total)

        text = self._prompts["episode"].format(
            prompt=prompt,
            outline=outline,
            number=number,
            chapter_start=index * CHAPTERS_PER_EPISODE + 1,
            chapter_end=number * CHAPTERS_PER_EPISODE,
        )
        episode_text = await self._run(
            "episode",
            lambda: self.service.generate_text(
                text,
                system_instruction=get_system_instruction(self.language),
                temperature=self.config.api.episode_temperature,
            ),
            on_retry_message,
        )

        self._emit("seo", "seo_started", episode_index=index, number=number, total=total)
        seo = await self.generate_episode_seo(episode_text, prompt, number)

        self._emit("episode", "episode_completed", episode_index=index, number=number, total=total)
        return Episode(text=episode_text, seo=seo)

    async def generate_episodes(self, prompt: str,
                                on_retry_message: Optional[Callable[[str], None]] = None
                                ) -> AsyncIterator[Episode]:
        """Outline then each episode in order, yielded as soon as it is written"""
        outline = await self.generate_outline(prompt, on_retry_message)
        total = self.config.pipeline.episode_count
        for number in range(1, total + 1):
            yield await self.generate_episode(outline, number, prompt, on_retry_message)
            if number < total:
                await self._sleep(self.config.pipeline.episode_pacing_delay)

    async def find_trending_stories(self, genre: str, sub_category: str) -> List[StorySuggestion]:
        text = self._prompts["trending"].format(genre=genre, sub_category=sub_category)
        payload = await self._run("trending", lambda: self.service.generate_json(text, SUGGESTIONS_SCHEMA))
        try:
            return [
                StorySuggestion(
                    title=str(item["title"]),
                    synopsis=str(item["synopsis"]),
                    popularity_reasons=[str(r) for r in item.get("popularity_reasons", [])],
                    youtube_keywords=[str(k) for k in item.get("youtube_keywords", [])],
                )
                for item in payload.get("suggestions") or []
            ]
        except (AttributeError, KeyError, TypeError) as e:
            raise MalformedResponseError(f"Failed to get story suggestions from AI: {e}") from e

    # ------------------------------------------------------------ prompts

    async def generate_scene_prompts(self, episode_text: str, count: Optional[int] = None,
                                     episode_index: Optional[int] = None) -> List[str]:
        count = count or self.config.pipeline.scene_prompt_count
        number = episode_index + 1 if episode_index is not None else 1
        self._emit("scene_prompts", "scene_prompts_started", episode_index=episode_index, number=number)

        text = self._prompts["scene_prompts"].format(count=count, excerpt=episode_text[:SCENE_EXCERPT_CHARS])
        payload = await self._run(
            "scene_prompts",
            lambda: self.service.generate_json(text, PROMPT_LIST_SCHEMA, temperature=0.8),
        )
        prompts = _prompt_list(payload)
        if not prompts:
            raise MalformedResponseError("AI returned no scene prompts")
        return prompts[:count]

    def storyboard_scene_count(self, total_seconds: float) -> int:
        return storyboard_scene_count(total_seconds, self.config.pipeline.seconds_per_scene)

    async def generate_storyboard_prompts(self, episode_text: str, count: int,
                                          episode_index: Optional[int] = None) -> List[str]:
        """Exactly ``count`` scene prompts; any other count is a failure"""
        if count < 1:
            raise ValueError(f"count must be positive, got {count}")
        self._emit("storyboard", "storyboard_started", episode_index=episode_index, count=count)

        text = self._prompts["storyboard"].format(
            seconds=self.config.pipeline.seconds_per_scene,
            count=count,
            excerpt=episode_text[:STORYBOARD_EXCERPT_CHARS],
        )
        payload = await self._run(
            "storyboard",
            lambda: self.service.generate_json(text, PROMPT_LIST_SCHEMA, temperature=0.9),
        )
        prompts = _prompt_list(payload)
        if len(prompts) != count:
            raise MalformedResponseError(
                f"Expected exactly {count} storyboard prompts, got {len(prompts)}"
            )
        return prompts

    async def generate_video_prompt(self, episode_text: str) -> str:
        text = self._prompts["video_prompt"].format(excerpt=episode_text[:VIDEO_PROMPT_EXCERPT_CHARS])
        prompt = await self._run(
            "video_prompt", lambda: self.service.generate_text(text, temperature=0.8)
        )
        prompt = prompt.strip()
        if not prompt:
            raise MalformedResponseError("AI returned an empty video prompt")
        return prompt

    # ------------------------------------------------------------ images

    async def generate_image(self, scene_prompt: str, style: Optional[ImageStyle] = None,
                             seed: Optional[int] = None) -> AssetBuffer:
        """One image for one scene prompt"""
        style = style or ImageStyle()
        pipeline = self.config.pipeline
        images = await self._run(
            "image",
            lambda: self.service.generate_images(
                style.build_prompt(scene_prompt),
                count=1,
                mime_type=pipeline.image_mime_type,
                aspect_ratio=pipeline.image_aspect_ratio,
                seed=seed if seed is not None else style.seed,
            ),
        )
        return AssetBuffer(AssetKind.IMAGE, pipeline.image_mime_type, data=images[0])

    async def generate_images(self, scene_prompts: Sequence[str],
                              styles: Optional[Sequence[ImageStyle]] = None,
                              base_seed: Optional[int] = None,
                              episode_index: Optional[int] = None) -> List[Optional[AssetBuffer]]:
        """Generate every slot concurrently; slot i always belongs to prompt i.

        A seed (``base_seed`` or the slot's own) is offset by the slot index.
        A slot that fails after its retries is ``None``. Quota and credential
        errors abort the whole batch and cancel the slots still running.
        """
        styles = list(styles) if styles is not None else []
        total = len(scene_prompts)

        async def one(slot: int, prompt: str) -> Optional[AssetBuffer]:
            style = styles[slot] if slot < len(styles) else ImageStyle()
            seed = base_seed if base_seed is not None else style.seed
            if seed is not None:
                seed += slot
            self._emit("image", "image_started", episode_index=episode_index, slot=slot + 1, total=total)
            try:
                return await self.generate_image(prompt, style, seed)
            except BATCH_FATAL_ERRORS:
                raise
            except Exception as e:
                logger.error(f"Image slot {slot + 1}/{total} failed: {e}")
                self._emit("image", "image_failed", episode_index=episode_index, slot=slot + 1, total=total)
                return None

        tasks = [asyncio.ensure_future(one(i, p)) for i, p in enumerate(scene_prompts)]
        try:
            return list(await asyncio.gather(*tasks))
        except BATCH_FATAL_ERRORS as e:
            logger.error(f"Image batch aborted: {e}")
            for task in tasks:
                task.cancel()
            raise

    # ------------------------------------------------------------ narration

    async def stream_narration(self, text: str, voice: Optional[VoiceSettings] = None,
                               episode_index: Optional[int] = None) -> AsyncIterator[AssetBuffer]:
        """Synthesize chunk by chunk, yielding each WAV as it completes"""
        voice = voice or VoiceSettings()
        chunks = split_text_into_chunks(text, self.config.pipeline.max_narration_chars)
        for index, chunk in enumerate(chunks, start=1):
            self._emit("narration", "narration_chunk", episode_index=episode_index,
                       index=index, total=len(chunks))
            prompt_text, speech_config = build_speech_request(chunk, voice)
            pcm, sample_rate = await self._run(
                "narration",
                lambda: self.service.synthesize_speech(prompt_text, speech_config),
            )
            yield AssetBuffer(AssetKind.AUDIO, "audio/wav", data=pcm_to_wav(pcm, sample_rate))

    async def generate_narration(self, text: str, voice: Optional[VoiceSettings] = None,
                                 episode_index: Optional[int] = None) -> List[AssetBuffer]:
        return [asset async for asset in self.stream_narration(text, voice, episode_index)]

    # ------------------------------------------------------------ video

    async def generate_video(self, prompt: str, seed_image: Optional[AssetBuffer] = None,
                             model: Optional[str] = None, resolution: str = "720p",
                             aspect_ratio: str = "16:9",
                             episode_index: Optional[int] = None) -> AssetBuffer:
        """Submit a video job, poll it to completion and download the clip"""
        pipeline = self.config.pipeline
        image = (seed_image.read(), seed_image.mime_type) if seed_image is not None else None

        job = await self._run(
            "video",
            lambda: self.service.submit_video(
                prompt, model=model, image=image, resolution=resolution, aspect_ratio=aspect_ratio
            ),
        )
        self._emit("video", "video_submitted", episode_index=episode_index)

        attempt = 0
        while not job.done:
            if attempt >= pipeline.video_max_poll_attempts:
                raise VideoTimeoutError(
                    f"Video job {job.name} not finished after {attempt} polls"
                )
            attempt += 1
            self._emit("video", "video_polling", episode_index=episode_index,
                       attempt=attempt, max_attempts=pipeline.video_max_poll_attempts)
            await self._sleep(pipeline.video_poll_interval)
            job = await self._run("video", lambda: self.service.poll_video(job))

        if job.error:
            raise VideoGenerationError(f"Video generation failed: {job.error}")
        if not job.video_uri:
            raise VideoGenerationError("Failed to get video download link.")

        self._emit("video", "video_downloading", episode_index=episode_index)
        data = await self._run("video", lambda: self.service.download_video(job.video_uri))
        self._emit("video", "video_done", episode_index=episode_index)
        return AssetBuffer(AssetKind.VIDEO, "video/mp4", data=data)
