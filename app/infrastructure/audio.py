"""Audio transcoding for voice-note replies."""

import asyncio
import logging
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path

from app.domain.errors import TranscodeError
from app.settings import settings

logger = logging.getLogger(__name__)

VOICE_NOTE_MIMETYPE = "audio/ogg; codecs=opus"


class AudioTranscoder(ABC):
    """Converts an audio file to the network's voice-note codec."""

    @abstractmethod
    async def to_voice_note(self, path: Path) -> bytes:
        """Transcode a file to OGG/Opus.

        Raises:
            TranscodeError: If the file cannot be converted
        """
        pass


class FfmpegTranscoder(AudioTranscoder):
    """Transcodes with an ``ffmpeg`` subprocess (OGG/Opus, 48 kHz, mono)."""

    def __init__(self, ffmpeg_path: str | None = None, timeout: float = 60.0) -> None:
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.timeout = timeout

    async def to_voice_note(self, path: Path) -> bytes:
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-i", str(path),
            "-vn",
            "-c:a", "libopus",
            "-b:a", "64k",
            "-ar", "48000",
            "-ac", "1",
            "-f", "ogg",
            "pipe:1",
        ]
        logger.debug("Invoking ffmpeg: %s", " ".join(cmd))

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodeError(f"Could not start ffmpeg: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise TranscodeError(f"ffmpeg timed out after {self.timeout}s on {path.name}") from e

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip() or f"exit code {proc.returncode}"
            raise TranscodeError(f"ffmpeg failed on {path.name}: {detail}")
        if not stdout:
            raise TranscodeError(f"ffmpeg produced no output for {path.name}")
        return stdout


def guess_audio_mimetype(path: Path) -> str:
    """Guess a mimetype for sending an untranscoded file."""
    mimetype, _ = mimetypes.guess_type(path.name)
    if mimetype and mimetype.startswith("audio/"):
        return mimetype
    if path.suffix.lower() == ".ogg":
        return "audio/ogg"
    return "audio/mpeg"
