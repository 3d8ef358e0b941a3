"""
Narration helpers: text chunking for the speech model, speaker-line parsing
and WAV container construction.
"""

import io
import logging
import re
import struct
import wave
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from data_models import VoiceSettings

logger = logging.getLogger(__name__)

MAX_CHUNK_CHARS = 4800
CHUNK_SEPARATORS = ("\n", ". ", "، ", "? ", "! ", "؟ ")
DEFAULT_SAMPLE_RATE = 24000

_SAMPLE_RATE_RE = re.compile(r"rate=(\d+)")
_SPEAKER_RE = re.compile(r"^\s*([^:\n]{1,40}?)\s*:\s*(.*)$")

# RIFF header for mono 16-bit PCM
_WAV_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


def split_text_into_chunks(text: str, max_chars: int = MAX_CHUNK_CHARS) -> List[str]:
    """Split text into trimmed chunks of at most ``max_chars`` characters.

    Each cut goes right after the furthest sentence separator inside the budget,
    else at the last space, else at ``max_chars`` exactly.
    """
    if max_chars < 1:
        raise ValueError(f"max_chars must be positive, got {max_chars}")

    chunks = []
    remaining = text
    while remaining:
        if len(remaining) <= max_chars:
            chunks.append(remaining)
            break

        window = remaining[:max_chars]
        split_at = -1
        for separator in CHUNK_SEPARATORS:
            index = window.rfind(separator)
            if index != -1:
                split_at = max(split_at, index + len(separator))

        if split_at <= 0:
            space = window.rfind(" ")
            split_at = space if space > 0 else max_chars

        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:]

    return [chunk.strip() for chunk in chunks if chunk.strip()]


@dataclass(frozen=True)
class SpeakerLine:
    """One line of a dialogue script"""
    speaker: str
    text: str


def parse_speaker_lines(text: str) -> List[SpeakerLine]:
    """Parse ``speaker: line`` pairs; unlabeled lines continue the previous speaker"""
    lines: List[SpeakerLine] = []
    for raw in text.splitlines():
        if not raw.strip():
            continue
        match = _SPEAKER_RE.match(raw)
        if match:
            lines.append(SpeakerLine(match.group(1).strip(), match.group(2).strip()))
        elif lines:
            previous = lines[-1]
            lines[-1] = SpeakerLine(previous.speaker, f"{previous.text} {raw.strip()}".strip())
        else:
            lines.append(SpeakerLine("", raw.strip()))
    return lines


def distinct_speakers(lines: Sequence[SpeakerLine]) -> List[str]:
    return list(dict.fromkeys(line.speaker for line in lines if line.speaker))


def _prebuilt_voice(name: str) -> Dict[str, Any]:
    return {"prebuiltVoiceConfig": {"voiceName": name}}


def build_speech_request(text: str, settings: VoiceSettings) -> Tuple[str, Dict[str, Any]]:
    """Prompt text and speech config for one chunk.

    Multi-speaker synthesis needs two distinct speakers and a second voice;
    anything less falls back to the single ``voice1`` voice.
    """
    prompt_text = text
    speech_config: Dict[str, Any] = {"voiceConfig": _prebuilt_voice(settings.voice1)}

    if settings.mode == "multi":
        speakers = distinct_speakers(parse_speaker_lines(text))
        if len(speakers) >= 2 and settings.voice2:
            first, second = speakers[0], speakers[1]
            prompt_text = f"TTS the following conversation between {first} and {second}:\n{text}"
            speech_config = {
                "multiSpeakerVoiceConfig": {
                    "speakerVoiceConfigs": [
                        {"speaker": first, "voiceConfig": _prebuilt_voice(settings.voice1)},
                        {"speaker": second, "voiceConfig": _prebuilt_voice(settings.voice2)},
                    ]
                }
            }
        else:
            logger.info(
                f"Multi-speaker mode needs 2 speakers and a second voice, found {len(speakers)}; "
                f"using single voice {settings.voice1}"
            )

    style = settings.style_instruction.strip()
    if style:
        prompt_text = f"{style}: {prompt_text}"
    return prompt_text, speech_config


def parse_sample_rate(mime_type: str) -> int:
    """Sample rate from an ``audio/L16;rate=N`` MIME type"""
    match = _SAMPLE_RATE_RE.search(mime_type or "")
    return int(match.group(1)) if match else DEFAULT_SAMPLE_RATE


def pcm_to_wav(pcm: bytes, sample_rate: int) -> bytes:
    """Wrap little-endian 16-bit mono PCM in a 44-byte WAV header"""
    if len(pcm) % 2:
        pcm = pcm[:-1]
    channels, bytes_per_sample = 1, 2
    header = _WAV_HEADER.pack(
        b"RIFF", 36 + len(pcm), b"WAVE",
        b"fmt ", 16, 1, channels, sample_rate,
        sample_rate * channels * bytes_per_sample,
        channels * bytes_per_sample, 16,
        b"data", len(pcm),
    )
    return header + pcm


def concat_wav(segments: Sequence[bytes]) -> bytes:
    """Join WAV files of the same format into one"""
    if not segments:
        raise ValueError("No WAV segments to concatenate")

    frames = []
    sample_rate = None
    for segment in segments:
        with wave.open(io.BytesIO(segment), "rb") as wf:
            if wf.getnchannels() != 1 or wf.getsampwidth() != 2:
                raise ValueError("Only mono 16-bit WAV segments can be concatenated")
            if sample_rate is None:
                sample_rate = wf.getframerate()
            elif wf.getframerate() != sample_rate:
                raise ValueError(
                    f"Sample rate mismatch: {wf.getframerate()} != {sample_rate}"
                )
            frames.append(wf.readframes(wf.getnframes()))

    return pcm_to_wav(b"".join(frames), sample_rate)
