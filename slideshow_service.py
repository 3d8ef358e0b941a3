"""
Client for the JSON2Video rendering API, used to turn an episode's images into
an animated slideshow.
"""

import asyncio
import base64
import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from config_manager import StorageConfig
from data_models import AssetBuffer
from localization import DEFAULT_LANGUAGE, get_message
from progress_events import ProgressChannel

logger = logging.getLogger(__name__)

ANIMATION_STYLES = ("ken_burns", "static")
TRANSITION_STYLES = ("fade", "wipe_right", "cube_spin")
TRANSITION_SECONDS = 1
MAX_POLL_DELAY = 30.0


class SlideshowError(Exception):
    """Raised when the rendering service rejects or fails a job"""
    pass


class SlideshowTimeoutError(SlideshowError):
    """Raised when a render does not finish within the poll budget"""
    pass


@dataclass
class SlideshowOptions:
    animation_style: str = "ken_burns"
    transition_style: str = "fade"
    slide_duration_sec: int = 5
    total_duration_minutes: int = 10

    def __post_init__(self):
        if self.animation_style not in ANIMATION_STYLES:
            raise ValueError(f"animation_style must be one of {ANIMATION_STYLES}")
        if self.transition_style not in TRANSITION_STYLES:
            raise ValueError(f"transition_style must be one of {TRANSITION_STYLES}")
        if self.slide_duration_sec < 1:
            raise ValueError("slide_duration_sec must be positive")
        if self.total_duration_minutes < 1:
            raise ValueError("total_duration_minutes must be positive")


def image_source(asset: AssetBuffer) -> str:
    """Data URL for an image buffer"""
    encoded = base64.b64encode(asset.read()).decode("ascii")
    return f"data:{asset.mime_type};base64,{encoded}"


def build_payload(sources: Sequence[str], options: SlideshowOptions, episode_title: str,
                  now_ms: Optional[int] = None) -> Dict[str, Any]:
    """Scene list looping the images until the target duration is covered"""
    if not sources:
        raise ValueError("No images to build a slideshow from")

    loop_seconds = len(sources) * (options.slide_duration_sec + TRANSITION_SECONDS)
    loops = math.ceil(options.total_duration_minutes * 60 / loop_seconds)

    element: Dict[str, Any] = {"type": "image", "duration": options.slide_duration_sec}
    if options.animation_style == "ken_burns":
        element["pan"] = "zoom-in"
        element["pan-distance"] = 0.05

    # each image travels once as a movie variable; scenes reference it by name
    variables = {f"image_{slot}": src for slot, src in enumerate(sources, start=1)}
    scenes: List[Dict[str, Any]] = []
    for _ in range(loops):
        for name in variables:
            scenes.append({
                "transition-effect": options.transition_style,
                "transition-duration": TRANSITION_SECONDS,
                "elements": [{**element, "src": f"{{{{{name}}}}}"}],
            })
    # nothing follows the last scene
    scenes[-1].pop("transition-effect")
    scenes[-1].pop("transition-duration")

    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    project_id = f"{re.sub(r'[^a-z0-9]', '_', episode_title.lower())}_{now_ms}"
    return {
        "project_id": project_id,
        "resolution": "full-hd",
        "quality": "high",
        "draft": False,
        "variables": variables,
        "scenes": scenes,
    }


class SlideshowService:
    """Submits a slideshow render and polls it with capped exponential backoff"""

    def __init__(self, api_key: str, config: Optional[StorageConfig] = None,
                 progress: Optional[ProgressChannel] = None,
                 http_client: Optional[httpx.AsyncClient] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 language: str = DEFAULT_LANGUAGE):
        if not api_key:
            raise ValueError("A JSON2Video API key is required.")
        self.api_key = api_key
        self.config = config or StorageConfig()
        self.progress = progress
        self.language = language
        self._http = http_client or httpx.AsyncClient(timeout=60)
        self._sleep = sleep

    def _report(self, key: str, **kwargs) -> None:
        message = get_message(key, self.language, **kwargs)
        logger.info(message)
        if self.progress is not None:
            self.progress.emit("slideshow", message)

    async def render(self, images: Sequence[Optional[AssetBuffer]], options: SlideshowOptions,
                     episode_title: str) -> str:
        """Render and return the finished movie URL"""
        available = [asset for asset in images if asset is not None]
        if not available:
            raise ValueError("No images to build a slideshow from")

        self._report("slideshow_payload")
        payload = build_payload([image_source(a) for a in available], options, episode_title)
        project_id = await self._submit(payload)
        return await self._poll(project_id)

    async def _submit(self, payload: Dict[str, Any]) -> str:
        response = await self._http.post(
            self.config.slideshow_base_url,
            headers={"Content-Type": "application/json", "x-api-key": self.api_key},
            json=payload,
        )
        try:
            result = response.json()
        except ValueError:
            result = {}
        if response.status_code >= 400 or not result.get("success"):
            raise SlideshowError(f"API error: {result.get('message') or response.reason_phrase}")
        logger.info(f"Slideshow render started for project {result.get('project')}")
        return result["project"]

    async def _poll(self, project_id: str) -> str:
        max_attempts = self.config.slideshow_max_poll_attempts
        for attempt in range(max_attempts):
            await self._sleep(min(2 ** attempt, MAX_POLL_DELAY))
            try:
                response = await self._http.get(
                    self.config.slideshow_base_url,
                    params={"project": project_id},
                    headers={"x-api-key": self.api_key},
                )
                response.raise_for_status()
                movie = response.json()["movie"]
            except (httpx.HTTPError, ValueError, KeyError) as e:
                self._report("slideshow_retry", error=e)
                continue

            status = str(movie.get("status", "")).lower()
            self._report("slideshow_status", attempt=attempt + 1, status=status.upper())
            if status == "done" and movie.get("url"):
                self._report("slideshow_done")
                return movie["url"]
            if status == "error" or movie.get("success") is False:
                raise SlideshowError(f"Render failed: {movie.get('message') or 'unknown error'}")

        raise SlideshowTimeoutError(f"Render {project_id} not finished after {max_attempts} checks")

    async def aclose(self) -> None:
        await self._http.aclose()
