"""
Service for interacting with the Google Gemini family of APIs.

Text and structured JSON generation go through the ``google.generativeai`` SDK;
image (Imagen), speech (Gemini TTS) and video (Veo) use the REST endpoints of the
same API through ``httpx``. Retrying and rate accounting are not done here; they
belong to the caller's ``RetryExecutor``.
"""

import asyncio
import base64
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import google.generativeai as genai
import httpx

from config_manager import ApiConfig
from narration import parse_sample_rate

logger = logging.getLogger(__name__)

RATE_LIMIT_SIGNATURES = ("429", "resource_exhausted", "resource has been exhausted", "rate limit")
QUOTA_SIGNATURES = ("quota exceeded", "exceeded your current quota", "billing")
INVALID_KEY_SIGNATURES = ("api key not valid", "api_key_invalid")


class GeminiServiceError(Exception):
    """Base exception for Gemini service errors"""
    pass


class RateLimitError(GeminiServiceError):
    """Raised when rate limit is exceeded"""
    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class QuotaExceededError(GeminiServiceError):
    """Raised when API quota is exceeded"""
    pass


class InvalidApiKeyError(GeminiServiceError):
    """Raised when the API key is rejected"""
    pass


class InvalidRequestError(GeminiServiceError):
    """Raised for invalid requests"""
    pass


class MalformedResponseError(GeminiServiceError):
    """Raised when a response does not have the requested shape"""
    pass


class VideoGenerationError(GeminiServiceError):
    """Raised when a video job ends in an error state"""
    pass


class VideoTimeoutError(VideoGenerationError):
    """Raised when a video job does not finish within the poll budget"""
    pass


def _extract_retry_after(error_message: str) -> Optional[int]:
    match = re.search(r'retry.*?(\d+)', error_message, re.IGNORECASE)
    return int(match.group(1)) if match else None


def classify_error(error: Exception) -> GeminiServiceError:
    """Convert an arbitrary SDK or transport error to the service taxonomy"""
    if isinstance(error, GeminiServiceError):
        return error

    message = str(error)
    lowered = message.lower()

    if any(signature in lowered for signature in QUOTA_SIGNATURES):
        return QuotaExceededError(message)
    if any(signature in lowered for signature in RATE_LIMIT_SIGNATURES):
        return RateLimitError(message, _extract_retry_after(message))
    if any(signature in lowered for signature in INVALID_KEY_SIGNATURES):
        return InvalidApiKeyError(message)
    if "invalid" in lowered or "bad request" in lowered:
        return InvalidRequestError(message)
    return GeminiServiceError(message)


def _error_from_response(response: httpx.Response) -> GeminiServiceError:
    try:
        body = response.json().get("error", {})
        detail = f"{response.status_code} {body.get('status', '')}: {body.get('message', '')}"
    except (ValueError, AttributeError):
        detail = f"{response.status_code}: {response.text[:300]}"
    return classify_error(Exception(detail))


@dataclass
class VideoJob:
    """Handle to a long-running video generation operation"""
    name: str
    done: bool = False
    video_uri: Optional[str] = None
    error: Optional[str] = None


class GeminiService:
    """Client for text, image, speech and video generation"""

    def __init__(self, api_key: str, api_config: ApiConfig,
                 http_client: Optional[httpx.AsyncClient] = None):
        if not api_key:
            raise GeminiServiceError("API key is required to initialize the Gemini service.")
        self._api_key = api_key
        self._api_config = api_config
        self._http = http_client or httpx.AsyncClient(timeout=api_config.timeout)

        try:
            genai.configure(api_key=api_key)
            logger.info(f"Initialized Gemini API with model: {api_config.text_model}")
        except Exception as e:
            raise GeminiServiceError(f"Failed to initialize Gemini API: {e}") from e

    # ------------------------------------------------------------------ text

    def _sync_generate_content(self, prompt: str, system_instruction: Optional[str],
                               generation_config: Dict[str, Any]) -> str:
        model = genai.GenerativeModel(
            self._api_config.text_model,
            system_instruction=system_instruction,
        )
        response = model.generate_content(
            prompt,
            generation_config=genai.types.GenerationConfig(**generation_config),
        )

        if not response or not response.parts:
            raise MalformedResponseError("API returned empty response")

        return response.text

    async def _generate(self, prompt: str, system_instruction: Optional[str],
                        generation_config: Dict[str, Any]) -> str:
        timeout = self._api_config.timeout
        loop = asyncio.get_event_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(
                    None, self._sync_generate_content, prompt, system_instruction, generation_config
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise GeminiServiceError(f"Request timed out after {timeout} seconds")
        except Exception as e:
            raise classify_error(e) from e

    async def generate_text(self, prompt: str, system_instruction: Optional[str] = None,
                            temperature: Optional[float] = None) -> str:
        """Generate free-form text"""
        config = {}
        if temperature is not None:
            config["temperature"] = temperature
        text = await self._generate(prompt, system_instruction, config)
        logger.debug(f"Generated {len(text)} characters")
        return text

    async def generate_json(self, prompt: str, schema: Dict[str, Any],
                            temperature: Optional[float] = None,
                            system_instruction: Optional[str] = None) -> Any:
        """Generate schema-constrained JSON and parse it"""
        config: Dict[str, Any] = {
            "response_mime_type": "application/json",
            "response_schema": schema,
        }
        if temperature is not None:
            config["temperature"] = temperature
        raw = await self._generate(prompt, system_instruction, config)
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse JSON response: {raw[:300]}")
            raise MalformedResponseError(f"Response is not valid JSON: {e}") from e

    # ------------------------------------------------------------------ REST

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self._api_key, "Content-Type": "application/json"}

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._api_config.base_url}/{path}"
        try:
            response = await self._http.post(url, headers=self._headers(), json=payload)
        except httpx.HTTPError as e:
            raise GeminiServiceError(f"Network error calling {path}: {e}") from e
        if response.status_code >= 400:
            raise _error_from_response(response)
        return response.json()

    async def generate_images(self, prompt: str, count: int = 1, mime_type: str = "image/png",
                              aspect_ratio: str = "16:9", seed: Optional[int] = None) -> List[bytes]:
        """Generate ``count`` images for one prompt"""
        parameters: Dict[str, Any] = {
            "sampleCount": count,
            "aspectRatio": aspect_ratio,
            "outputOptions": {"mimeType": mime_type},
        }
        if seed is not None:
            parameters["seed"] = seed
            parameters["addWatermark"] = False

        body = await self._post(
            f"models/{self._api_config.image_model}:predict",
            {"instances": [{"prompt": prompt}], "parameters": parameters},
        )
        images = [
            base64.b64decode(prediction["bytesBase64Encoded"])
            for prediction in body.get("predictions") or []
            if prediction.get("bytesBase64Encoded")
        ]
        if not images:
            raise MalformedResponseError("Image generation returned no images")
        return images

    async def synthesize_speech(self, prompt_text: str,
                                speech_config: Dict[str, Any]) -> Tuple[bytes, int]:
        """Synthesize speech; returns raw 16-bit PCM and its sample rate"""
        body = await self._post(
            f"models/{self._api_config.speech_model}:generateContent",
            {
                "contents": [{"parts": [{"text": prompt_text}]}],
                "generationConfig": {
                    "responseModalities": ["AUDIO"],
                    "speechConfig": speech_config,
                },
            },
        )
        try:
            inline = body["candidates"][0]["content"]["parts"][0]["inlineData"]
            data, mime_type = inline["data"], inline["mimeType"]
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedResponseError("Invalid or missing audio data in API response.") from e

        if not data or not mime_type.startswith("audio/L16"):
            raise MalformedResponseError(f"Unexpected audio format: {mime_type}")
        return base64.b64decode(data), parse_sample_rate(mime_type)

    async def submit_video(self, prompt: str, model: Optional[str] = None,
                           image: Optional[Tuple[bytes, str]] = None,
                           resolution: str = "720p", aspect_ratio: str = "16:9") -> VideoJob:
        """Start a video generation job"""
        instance: Dict[str, Any] = {"prompt": prompt}
        if image is not None:
            image_bytes, image_mime = image
            instance["image"] = {
                "bytesBase64Encoded": base64.b64encode(image_bytes).decode("ascii"),
                "mimeType": image_mime,
            }
        model = model or self._api_config.video_model
        body = await self._post(
            f"models/{model}:predictLongRunning",
            {
                "instances": [instance],
                "parameters": {"aspectRatio": aspect_ratio, "resolution": resolution},
            },
        )
        if not body.get("name"):
            raise MalformedResponseError("Video submission returned no operation name")
        logger.info(f"Submitted video job {body['name']} with model {model}")
        return self._parse_video_job(body)

    async def poll_video(self, job: VideoJob) -> VideoJob:
        """Fetch the current state of a video job"""
        url = f"{self._api_config.base_url}/{job.name}"
        try:
            response = await self._http.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            raise GeminiServiceError(f"Network error polling {job.name}: {e}") from e
        if response.status_code >= 400:
            raise _error_from_response(response)
        return self._parse_video_job(response.json())

    @staticmethod
    def _parse_video_job(body: Dict[str, Any]) -> VideoJob:
        job = VideoJob(name=body.get("name", ""), done=bool(body.get("done")))
        if body.get("error"):
            job.error = body["error"].get("message") or str(body["error"])
        samples = (
            (body.get("response") or {})
            .get("generateVideoResponse", {})
            .get("generatedSamples") or []
        )
        if samples:
            job.video_uri = (samples[0].get("video") or {}).get("uri")
        return job

    async def download_video(self, uri: str) -> bytes:
        """Download a finished video; the URI needs the key appended"""
        separator = "&" if "?" in uri else "?"
        try:
            response = await self._http.get(f"{uri}{separator}key={self._api_key}", follow_redirects=True)
        except httpx.HTTPError as e:
            raise GeminiServiceError(f"Network error downloading video: {e}") from e
        if response.status_code >= 400:
            raise GeminiServiceError(f"Failed to download video. Status: {response.status_code}")
        return response.content

    async def aclose(self) -> None:
        await self._http.aclose()

    @staticmethod
    async def validate_api_key(api_key: str, api_config: ApiConfig,
                               http_client: Optional[httpx.AsyncClient] = None) -> None:
        """Check a key with a minimal request; raises InvalidApiKeyError if rejected"""
        if not api_key or not api_key.strip():
            raise InvalidApiKeyError("API key cannot be empty.")
        if not api_key.isascii():
            raise InvalidApiKeyError("Invalid characters in API key.")

        client = http_client or httpx.AsyncClient(timeout=30)
        try:
            response = await client.post(
                f"{api_config.base_url}/models/{api_config.text_model}:generateContent",
                headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
                json={"contents": [{"parts": [{"text": "test"}]}]},
            )
        except httpx.HTTPError as e:
            raise GeminiServiceError(
                "Failed to validate the API key. Please check the key and your network connection."
            ) from e
        finally:
            if http_client is None:
                await client.aclose()

        if response.status_code >= 400:
            error = _error_from_response(response)
            logger.error(f"API key validation failed: {error}")
            if isinstance(error, (InvalidApiKeyError, InvalidRequestError)):
                raise InvalidApiKeyError("The provided API key is not valid.") from error
            raise error
