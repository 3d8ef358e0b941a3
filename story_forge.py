#!/usr/bin/env python3
"""
StoryForge: cinematic five-episode stories with art, narration and video,
driven from the terminal.
"""

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from archive_index import ArchiveIndex
from config_manager import AppConfig, config_manager
from data_models import (
    ArchivedStoryRecord,
    AssetBuffer,
    Episode,
    ImageStyle,
    SEOData,
    Story,
    StorySuggestion,
    VoiceSettings,
    new_story_id,
)
from export_service import export_episode_text, export_story
from gemini_service import (
    GeminiService,
    InvalidApiKeyError,
    MalformedResponseError,
    QuotaExceededError,
    RateLimitError,
    VideoTimeoutError,
)
from generation_pipeline import GenerationPipeline
from key_value_store import KeyValueStore
from localization import get_message, get_supported_languages
from project_store import DirectoryHandle, ProjectStore, StaleHandleError, StoragePermissionError
from retry_executor import ErrorKind, classify_failure
from session import GenerationSession
from slideshow_service import SlideshowOptions, SlideshowService

logger = logging.getLogger(__name__)

API_KEY_STATE_KEY = "gemini_api_key"


class StoryForgeError(Exception):
    """Base exception for application-level errors"""
    pass


class NoCredentialError(StoryForgeError):
    """Raised when generation is requested without an API key"""
    pass


class NothingToSaveError(StoryForgeError):
    """Raised when saving or exporting an empty workspace"""
    pass


class SaveInProgressError(StoryForgeError):
    """Raised when a save is requested while another is running"""
    pass


def describe_error(error: Exception, language: str) -> str:
    """Localized, user-facing text for any error"""
    if isinstance(error, InvalidApiKeyError) or "api key not valid" in str(error).lower():
        key = "invalid_api_key"
    elif isinstance(error, StaleHandleError):
        key = "stale_folder"
    elif isinstance(error, StoragePermissionError):
        key = "storage_permission"
    elif isinstance(error, NothingToSaveError):
        key = "nothing_to_save"
    elif isinstance(error, SaveInProgressError):
        key = "save_in_progress"
    elif isinstance(error, VideoTimeoutError):
        key = "video_timeout"
    elif isinstance(error, MalformedResponseError):
        key = "malformed_response"
    elif isinstance(error, QuotaExceededError) or classify_failure(error) is ErrorKind.QUOTA_EXHAUSTED:
        key = "quota_exceeded"
    elif isinstance(error, RateLimitError) or classify_failure(error) is ErrorKind.RATE_LIMITED:
        key = "rate_limited"
    else:
        return get_message("generic_error", language, detail=error)
    return get_message(key, language)


class StoryForgeApp:
    """Holds the working story and wires user actions to generation and storage"""

    def __init__(self, config: AppConfig, kv_store: Optional[KeyValueStore] = None,
                 console: Optional[Console] = None,
                 directory_picker=None,
                 session_factory: Optional[Callable[[str], GenerationSession]] = None):
        self.config = config
        self.language = config.ui.language
        self.console = console or Console(no_color=not config.ui.color_output)
        self.kv_store = kv_store or KeyValueStore(config.storage.state_path)
        self.project_store = ProjectStore(
            self.kv_store, config.storage, directory_picker or self._prompt_for_folder
        )
        self.archive = ArchiveIndex(self.project_store, self.kv_store)
        self._session_factory = session_factory or (lambda key: GenerationSession(key, config))

        self.session: Optional[GenerationSession] = None
        self.pipeline: Optional[GenerationPipeline] = None

        self.prompt = ""
        self.episodes: Tuple[Episode, ...] = ()
        self.active_story_id: Optional[str] = None
        self.active_created_at: Optional[datetime] = None
        self.outline: Optional[str] = None
        self._saving = False

    # ------------------------------------------------------------ credential

    async def set_api_key(self, api_key: str, validate: bool = True, remember: bool = True) -> None:
        """Start a new session for ``api_key``, closing any previous one"""
        api_key = api_key.strip()
        if validate:
            await GeminiService.validate_api_key(api_key, self.config.api)

        await self.close_session()
        self.session = self._session_factory(api_key)
        self.session.start()
        self.pipeline = GenerationPipeline(self.session, self.config)
        if remember:
            self.kv_store.set(API_KEY_STATE_KEY, api_key)
        logger.info("API key set, generation session ready")

    async def restore_api_key(self, explicit_key: Optional[str] = None) -> bool:
        """Use an explicit, environment or remembered key; False when there is none"""
        api_key = explicit_key or os.getenv("GEMINI_API_KEY") or self.kv_store.get(API_KEY_STATE_KEY)
        if not api_key:
            return False
        await self.set_api_key(api_key, validate=False, remember=False)
        return True

    async def clear_api_key(self) -> None:
        self.kv_store.delete(API_KEY_STATE_KEY)
        await self.close_session()

    async def close_session(self) -> None:
        if self.session is not None:
            await self.session.close()
        self.session = None
        self.pipeline = None

    def _require_pipeline(self) -> GenerationPipeline:
        if self.pipeline is None:
            raise NoCredentialError("No API key configured. Run 'storyforge set-key' first.")
        return self.pipeline

    # ------------------------------------------------------------ state

    @property
    def story(self) -> Story:
        return Story(prompt=self.prompt, episodes=list(self.episodes))

    def episode(self, index: int) -> Episode:
        if not 0 <= index < len(self.episodes):
            raise IndexError(f"No episode {index + 1}; the story has {len(self.episodes)}")
        return self.episodes[index]

    def _replace_episode(self, index: int, episode: Episode) -> None:
        episodes = list(self.episodes)
        episodes[index] = episode
        self.episodes = tuple(episodes)

    def clear_workspace(self) -> None:
        for episode in self.episodes:
            episode.release_assets()
        self.prompt = ""
        self.episodes = ()
        self.active_story_id = None
        self.active_created_at = None
        self.outline = None

    def _show_status(self, message: str) -> None:
        self.console.print(f"[yellow]{message}[/yellow]")

    # ------------------------------------------------------------ story text

    async def generate_story(self, prompt: str,
                             on_episode: Optional[Callable[[int, Episode], None]] = None
                             ) -> Tuple[Episode, ...]:
        """Build a new story; episodes written before a failure are kept"""
        if not prompt or not prompt.strip():
            raise StoryForgeError(get_message("prompt_required", self.language))
        pipeline = self._require_pipeline()

        self.clear_workspace()
        self.prompt = prompt.strip()
        pipeline.outline = None
        try:
            async for episode in pipeline.generate_episodes(self.prompt, on_retry_message=self._show_status):
                self.episodes = self.episodes + (episode,)
                if on_episode is not None:
                    on_episode(len(self.episodes) - 1, episode)
        finally:
            self.outline = pipeline.outline
        return self.episodes

    async def regenerate_episode(self, index: int) -> Episode:
        """Rewrite one episode from this story's outline, outlining again if it has none"""
        pipeline = self._require_pipeline()
        old = self.episode(index)
        if self.outline is None:
            self.outline = await pipeline.generate_outline(self.prompt, self._show_status)
        episode = await pipeline.generate_episode(self.outline, index + 1, self.prompt, self._show_status)
        old.release_assets()
        self._replace_episode(index, episode)
        return episode

    async def regenerate_seo(self, index: int) -> Optional[SEOData]:
        """Re-run SEO; on failure the current SEO is kept"""
        pipeline = self._require_pipeline()
        episode = self.episode(index)
        seo = await pipeline.generate_episode_seo(episode.text, self.prompt, index + 1)
        if seo is not None:
            self._replace_episode(index, replace(self.episode(index), seo=seo))
        return seo

    async def find_trending_stories(self, genre: str, sub_category: str) -> List[StorySuggestion]:
        return await self._require_pipeline().find_trending_stories(genre, sub_category)

    # ------------------------------------------------------------ assets

    async def generate_scene_prompts(self, index: int, count: Optional[int] = None) -> List[str]:
        prompts = await self._require_pipeline().generate_scene_prompts(
            self.episode(index).text, count, episode_index=index
        )
        self._replace_episode(index, self.episode(index).with_scene_prompts(prompts))
        return prompts

    async def generate_image(self, index: int, slot: int, style: Optional[ImageStyle] = None,
                             seed: Optional[int] = None) -> AssetBuffer:
        episode = self.episode(index)
        if not 0 <= slot < len(episode.image_scene_prompts):
            raise IndexError(f"Episode {index + 1} has no scene prompt {slot + 1}")
        styles = list(episode.image_styles)
        styles += [ImageStyle() for _ in range(len(episode.image_scene_prompts) - len(styles))]
        style = style or styles[slot]
        asset = await self._require_pipeline().generate_image(episode.image_scene_prompts[slot], style, seed)

        updated = self.episode(index).with_image(slot, asset)
        styles[slot] = style
        self._replace_episode(index, replace(updated, image_styles=styles))
        return asset

    async def generate_all_images(self, index: int,
                                  base_seed: Optional[int] = None) -> List[Optional[AssetBuffer]]:
        """Every slot at once; a failed slot keeps its previous image, if any"""
        if not self.episode(index).image_scene_prompts:
            await self.generate_scene_prompts(index)
        episode = self.episode(index)
        results = await self._require_pipeline().generate_images(
            episode.image_scene_prompts, episode.image_styles, base_seed, episode_index=index
        )
        current = self.episode(index).image_assets
        merged = [
            new if new is not None else (current[slot] if slot < len(current) else None)
            for slot, new in enumerate(results)
        ]
        self._replace_episode(index, self.episode(index).with_images(merged))
        return merged

    async def generate_narration(self, index: int,
                                 voice: Optional[VoiceSettings] = None) -> List[AssetBuffer]:
        """Narration chunks are committed one by one as they complete"""
        pipeline = self._require_pipeline()
        completed: List[AssetBuffer] = []
        async for asset in pipeline.stream_narration(self.episode(index).text, voice, episode_index=index):
            completed.append(asset)
            self._replace_episode(index, self.episode(index).with_narration(completed))
        return completed

    async def generate_storyboard(self, index: int, minutes: float) -> List[str]:
        pipeline = self._require_pipeline()
        count = pipeline.storyboard_scene_count(minutes * 60)
        prompts = await pipeline.generate_storyboard_prompts(self.episode(index).text, count, episode_index=index)
        self._replace_episode(index, replace(self.episode(index), storyboard_prompts=prompts))
        return prompts

    async def generate_video_prompt(self, index: int) -> str:
        prompt = await self._require_pipeline().generate_video_prompt(self.episode(index).text)
        self._replace_episode(index, replace(self.episode(index), video_prompt=prompt))
        return prompt

    async def generate_video(self, index: int, prompt: Optional[str] = None,
                             seed_image_slot: Optional[int] = None, model: Optional[str] = None,
                             resolution: str = "720p", aspect_ratio: str = "16:9") -> AssetBuffer:
        episode = self.episode(index)
        prompt = prompt or episode.video_prompt
        if not prompt:
            raise StoryForgeError(f"Episode {index + 1} has no video prompt")
        seed_image = None
        if seed_image_slot is not None:
            if not 0 <= seed_image_slot < len(episode.image_assets) or episode.image_assets[seed_image_slot] is None:
                raise StoryForgeError(f"Episode {index + 1} has no image in slot {seed_image_slot + 1}")
            seed_image = episode.image_assets[seed_image_slot]

        asset = await self._require_pipeline().generate_video(
            prompt, seed_image, model=model, resolution=resolution,
            aspect_ratio=aspect_ratio, episode_index=index,
        )
        self._replace_episode(index, self.episode(index).with_video(asset))
        return asset

    async def render_slideshow(self, index: int, options: Optional[SlideshowOptions] = None,
                               api_key: Optional[str] = None) -> str:
        episode = self.episode(index)
        title = episode.seo.title if episode.seo else f"episode_{index + 1}"
        service = SlideshowService(
            api_key or os.getenv("JSON2VIDEO_API_KEY", ""),
            self.config.storage,
            progress=self.session.progress if self.session else None,
            language=self.language,
        )
        try:
            return await service.render(episode.image_assets, options or SlideshowOptions(), title)
        finally:
            await service.aclose()

    # ------------------------------------------------------------ persistence

    async def _prompt_for_folder(self) -> Optional[str]:
        loop = asyncio.get_event_loop()
        answer = await loop.run_in_executor(
            None, self.console.input, "[cyan]Folder to keep your stories in: [/cyan]"
        )
        return answer.strip() or None

    async def _acquire_handle(self, prompt_if_missing: bool) -> Optional[DirectoryHandle]:
        try:
            return await self.project_store.acquire_handle(prompt_if_missing)
        except StoragePermissionError:
            logger.warning("Permission to the story folder was denied; forgetting it")
            self.project_store.clear_handle()
            if not prompt_if_missing:
                return None
            self.console.print(f"[red]{get_message('storage_permission', self.language)}[/red]")
            return await self.project_store.acquire_handle(True)

    async def save_story(self, prompt_for_folder: bool = True) -> ArchivedStoryRecord:
        """Save to the story folder, or text-only to the local archive without one"""
        if self._saving:
            raise SaveInProgressError("Another save is already in progress")
        story = self.story
        if not story.is_savable:
            raise NothingToSaveError("There is no story to save")

        self._saving = True
        try:
            record = ArchivedStoryRecord(
                id=self.active_story_id or new_story_id(),
                title=story.derive_title(get_message("untitled_story", self.language)),
                created_at=self.active_created_at or datetime.now(timezone.utc),
                data=story,
            )
            handle = await self._acquire_handle(prompt_for_folder)
            if handle is not None:
                await self.project_store.save(handle, record)
            else:
                await self.archive.save_fallback(record)
            self.active_story_id = record.id
            self.active_created_at = record.created_at
            return record
        finally:
            self._saving = False

    async def list_stories(self) -> List[ArchivedStoryRecord]:
        return await self.archive.list(await self._acquire_handle(False))

    async def load_story(self, story_id: str) -> ArchivedStoryRecord:
        for record in await self.list_stories():
            if record.id == story_id:
                self.clear_workspace()
                self.prompt = record.data.prompt
                self.episodes = tuple(record.data.episodes)
                self.active_story_id = record.id
                self.active_created_at = record.created_at
                return record
        raise StoryForgeError(f"No saved story with id {story_id}")

    async def delete_story(self, story_id: str) -> None:
        await self.archive.remove(await self._acquire_handle(False), story_id)
        if self.active_story_id == story_id:
            self.clear_workspace()

    async def export_story(self, output_dir) -> Path:
        if not self.episodes:
            raise NothingToSaveError("There is no story to export")
        return await export_story(self.story, output_dir, self.language)

    def export_episode_text(self, index: int, output_dir) -> Path:
        return export_episode_text(self.episode(index), index + 1, output_dir)

    async def close(self) -> None:
        await self.close_session()

    # ------------------------------------------------------------ display

    async def run_with_spinner(self, description: str, coro):
        """Await ``coro`` while progress events drive a spinner"""
        if not self.config.ui.show_progress or self.session is None:
            return await coro
        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                      console=self.console, transient=True) as progress:
            task = progress.add_task(description, total=None)

            def listener(event):
                progress.update(task, description=event.message)

            self.session.progress.add_listener(listener)
            try:
                return await coro
            finally:
                self.session.progress.remove_listener(listener)

    async def generate_story_with_progress(self, prompt: str) -> Tuple[Episode, ...]:
        if not self.config.ui.show_progress or self.session is None:
            return await self.generate_story(prompt)
        total = self.config.pipeline.episode_count
        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                      BarColumn(), MofNCompleteColumn(), console=self.console) as progress:
            task = progress.add_task(get_message("outline_started", self.language), total=total)

            def listener(event):
                progress.update(task, description=event.message)

            self.session.progress.add_listener(listener)
            try:
                return await self.generate_story(prompt, lambda i, e: progress.advance(task))
            finally:
                self.session.progress.remove_listener(listener)

    def display_episode(self, index: int) -> None:
        episode = self.episode(index)
        title = episode.seo.title if episode.seo else f"Episode {index + 1}"
        self.console.print(Panel(episode.text, title=f"[bold]{index + 1}. {title}[/bold]", border_style="blue"))
        if episode.seo:
            self.console.print(f"[cyan]Tags:[/cyan] {', '.join(episode.seo.tags)}")
        images = sum(1 for asset in episode.image_assets if asset is not None)
        self.console.print(
            f"[dim]images {images}/{len(episode.image_scene_prompts)} · "
            f"narration parts {len(episode.narration_assets)} · videos {len(episode.video_assets)} · "
            f"storyboard scenes {len(episode.storyboard_prompts)}[/dim]"
        )

    def display_archive(self, records: List[ArchivedStoryRecord]) -> None:
        table = Table(title="Saved stories", show_header=True)
        table.add_column("ID", style="cyan")
        table.add_column("Title", style="green")
        table.add_column("Created", style="magenta")
        table.add_column("Episodes", justify="right")
        for record in records:
            table.add_row(record.id, record.title, record.created_at.strftime("%Y-%m-%d %H:%M"),
                          str(len(record.data.episodes)))
        self.console.print(table)

    def display_suggestions(self, suggestions: List[StorySuggestion]) -> None:
        for i, suggestion in enumerate(suggestions, 1):
            reasons = "\n".join(f"• {reason}" for reason in suggestion.popularity_reasons)
            self.console.print(Panel(
                f"{suggestion.synopsis}\n\n{reasons}\n\n[cyan]{', '.join(suggestion.youtube_keywords)}[/cyan]",
                title=f"[bold]{i}. {suggestion.title}[/bold]",
                border_style="green",
            ))

    def display_rate_usage(self) -> None:
        if self.session is None:
            return
        budget = self.config.api.max_requests_per_minute
        count = self.session.requests_last_minute()
        style = "red" if count >= budget else "green"
        self.console.print(f"[{style}]API requests in the last minute: {count}/{budget}[/{style}]")


def configure_logging(verbose: bool = False, log_file: str = "storyforge.log") -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="StoryForge: AI story pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s set-key YOUR_KEY                      # Validate and remember a Gemini API key
  %(prog)s generate "A lighthouse keeper..." --images --narration --save
  %(prog)s list                                  # Saved stories, newest first
  %(prog)s export STORY_ID --output exports/     # Zip a saved story
  %(prog)s trending "History" "Ancient empires"  # Story ideas that perform well
        """
    )
    parser.add_argument("--config", "-c", default="config.json",
                        help="Path to configuration file (default: config.json)")
    parser.add_argument("--api-key", help="Google Gemini API key (or set GEMINI_API_KEY env var)")
    parser.add_argument("--language", choices=sorted(get_supported_languages()),
                        help="Language for prompts and messages")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    commands = parser.add_subparsers(dest="command", required=True)

    generate = commands.add_parser("generate", help="Generate a new five-episode story")
    generate.add_argument("prompt", help="Story idea")
    generate.add_argument("--images", action="store_true", help="Generate scene images for every episode")
    generate.add_argument("--seed", type=int, help="Base seed for image batches")
    generate.add_argument("--narration", action="store_true", help="Generate voice narration")
    generate.add_argument("--voice", default="Kore", help="Narration voice")
    generate.add_argument("--storyboard", type=float, metavar="MINUTES",
                          help="Create storyboard prompts for a video of this length")
    generate.add_argument("--video", action="store_true", help="Generate one video clip per episode")
    generate.add_argument("--save", action="store_true", help="Save the story when done")
    generate.add_argument("--export", metavar="DIR", help="Export the story as a zip into DIR")

    commands.add_parser("list", help="List saved stories")

    show = commands.add_parser("show", help="Print a saved story")
    show.add_argument("story_id")

    delete = commands.add_parser("delete", help="Delete a saved story")
    delete.add_argument("story_id")

    export = commands.add_parser("export", help="Export a saved story as a zip")
    export.add_argument("story_id")
    export.add_argument("--output", "-o", default=".", help="Output directory")

    slideshow = commands.add_parser("slideshow", help="Render an episode's images as a slideshow")
    slideshow.add_argument("story_id")
    slideshow.add_argument("episode", type=int, help="Episode number (1-based)")
    slideshow.add_argument("--minutes", type=int, default=10, choices=(10, 15))
    slideshow.add_argument("--animation", default="ken_burns", choices=("ken_burns", "static"))
    slideshow.add_argument("--transition", default="fade", choices=("fade", "wipe_right", "cube_spin"))

    trending = commands.add_parser("trending", help="Find trending story ideas")
    trending.add_argument("genre")
    trending.add_argument("sub_category")

    set_key = commands.add_parser("set-key", help="Validate and remember a Gemini API key")
    set_key.add_argument("key")

    commands.add_parser("clear-key", help="Forget the remembered API key")
    return parser


async def run_command(app: StoryForgeApp, args) -> None:
    console = app.console
    lang = app.language

    if args.command == "set-key":
        await app.set_api_key(args.key)
        console.print("[green]API key saved.[/green]")
        return
    if args.command == "clear-key":
        await app.clear_api_key()
        console.print("[green]API key cleared.[/green]")
        return
    if args.command == "list":
        app.display_archive(await app.list_stories())
        return
    if args.command == "delete":
        await app.delete_story(args.story_id)
        console.print(f"[green]Deleted {args.story_id}[/green]")
        return

    if args.command in ("show", "export", "slideshow"):
        await app.load_story(args.story_id)
        if args.command == "show":
            for index in range(len(app.episodes)):
                app.display_episode(index)
        elif args.command == "export":
            console.print(f"[green]Exported to {await app.export_story(args.output)}[/green]")
        else:
            options = SlideshowOptions(args.animation, args.transition,
                                       total_duration_minutes=args.minutes)
            url = await app.run_with_spinner("Rendering", app.render_slideshow(args.episode - 1, options))
            console.print(f"[green]{url}[/green]")
        return

    if not await app.restore_api_key(args.api_key):
        raise NoCredentialError("No API key configured. Run 'storyforge set-key' first.")

    if args.command == "trending":
        app.display_suggestions(await app.run_with_spinner(
            "Searching", app.find_trending_stories(args.genre, args.sub_category)
        ))
        return

    # generate
    await app.generate_story_with_progress(args.prompt)
    for index in range(len(app.episodes)):
        try:
            if args.images:
                await app.run_with_spinner("Images", app.generate_all_images(index, args.seed))
            if args.narration:
                await app.run_with_spinner(
                    "Narration", app.generate_narration(index, VoiceSettings(voice1=args.voice))
                )
            if args.storyboard:
                await app.run_with_spinner("Storyboard", app.generate_storyboard(index, args.storyboard))
            if args.video:
                await app.run_with_spinner("Video prompt", app.generate_video_prompt(index))
                await app.run_with_spinner("Video", app.generate_video(index))
        except Exception as e:
            logger.exception(f"Asset generation failed for episode {index + 1}")
            console.print(f"[red]{describe_error(e, lang)}[/red]")
        app.display_episode(index)

    app.display_rate_usage()
    if args.save:
        await app.save_story()
        console.print(f"[green]{get_message('story_saved', lang)}[/green]")
    if args.export:
        console.print(f"[green]Exported to {await app.export_story(args.export)}[/green]")


def main():
    """Command-line entry point"""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args()

    configure_logging(args.verbose)
    console = Console()

    try:
        config = config_manager.load_config(args.config)
    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)
    if args.language:
        config.ui.language = args.language

    app = StoryForgeApp(config, console=console)

    async def run_async():
        try:
            await run_command(app, args)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted by user[/yellow]")
        except Exception as e:
            logger.exception("Command failed")
            console.print(f"[red]{describe_error(e, app.language)}[/red]")
            if app.episodes and args.command == "generate":
                try:
                    record = await app.save_story(prompt_for_folder=False)
                    console.print(f"[green]Progress saved as {record.id}[/green]")
                except Exception as save_error:
                    logger.error(f"Failed to create emergency save: {save_error}")
            sys.exit(1)
        finally:
            await app.close()

    asyncio.run(run_async())


if __name__ == "__main__":
    main()
