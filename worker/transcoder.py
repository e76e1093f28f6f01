"""
Transcoder engine - produces one mp4 rendition per call with ffmpeg.

The engine has no internal timeout: a transcode runs for as long as the
hosting request allows. When the calling task is cancelled (request aborted,
worker shutting down) the ffmpeg child process is killed before the
cancellation propagates.
"""

import asyncio
import collections
import logging
from pathlib import Path
from typing import List, Protocol

from api.errors import TranscodeFailure
from config import AUDIO_CODEC, FFMPEG_BINARY, VIDEO_CODEC, VIDEO_CRF, VIDEO_PRESET

logger = logging.getLogger(__name__)

# Number of ffmpeg stderr lines kept for failure messages
STDERR_TAIL_LINES = 5


class TranscoderEngine(Protocol):
    """Collaborator contract used by the worker."""

    async def transcode(self, input_path: Path, height: int, output_path: Path) -> None: ...


def build_ffmpeg_command(
    input_path: Path,
    height: int,
    output_path: Path,
    ffmpeg_binary: str = FFMPEG_BINARY,
    video_codec: str = VIDEO_CODEC,
    audio_codec: str = AUDIO_CODEC,
    preset: str = VIDEO_PRESET,
    crf: int = VIDEO_CRF,
) -> List[str]:
    """
    Build the ffmpeg command for a single rendition.

    Scales to the target height keeping the aspect ratio (width rounded to an
    even number) and moves the moov atom to the front for progressive playback.
    """
    return [
        ffmpeg_binary,
        "-hide_banner",
        "-nostdin",
        "-y",
        "-i",
        str(input_path),
        "-vf",
        f"scale=-2:{height}",
        "-c:v",
        video_codec,
        "-preset",
        preset,
        "-crf",
        str(crf),
        "-c:a",
        audio_codec,
        "-movflags",
        "+faststart",
        str(output_path),
    ]


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """
    Kill an FFmpeg subprocess if it is still running, handling the race where
    it exits between checking returncode and calling kill().
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            # Process already terminated
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


class FFmpegTranscoder:
    """TranscoderEngine running ffmpeg as a child process."""

    def __init__(
        self,
        ffmpeg_binary: str = FFMPEG_BINARY,
        video_codec: str = VIDEO_CODEC,
        audio_codec: str = AUDIO_CODEC,
        preset: str = VIDEO_PRESET,
        crf: int = VIDEO_CRF,
    ):
        self.ffmpeg_binary = ffmpeg_binary
        self.video_codec = video_codec
        self.audio_codec = audio_codec
        self.preset = preset
        self.crf = crf

    async def transcode(self, input_path: Path, height: int, output_path: Path) -> None:
        """
        Transcode input_path into an mp4 of the given height.

        Raises:
            TranscodeFailure: If ffmpeg cannot be started or exits non-zero
        """
        cmd = build_ffmpeg_command(
            input_path,
            height,
            output_path,
            ffmpeg_binary=self.ffmpeg_binary,
            video_codec=self.video_codec,
            audio_codec=self.audio_codec,
            preset=self.preset,
            crf=self.crf,
        )
        context = f"FFmpeg {height}p"
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodeFailure(f"Could not start {self.ffmpeg_binary}: {e.strerror or e.__class__.__name__}")

        # Drain stderr continuously so a chatty ffmpeg never blocks on a full pipe
        tail = collections.deque(maxlen=STDERR_TAIL_LINES)
        try:
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="ignore").strip()
                # Keep local paths out of messages that end up on the record
                text = text.replace(str(input_path), input_path.name).replace(str(output_path), output_path.name)
                if text:
                    tail.append(text)
            await process.wait()
        finally:
            await cleanup_ffmpeg_process(process, context)

        if process.returncode != 0:
            detail = " | ".join(tail) if tail else "no output"
            logger.error(f"{context} exited with code {process.returncode}: {detail}")
            raise TranscodeFailure(f"{context} exited with code {process.returncode}: {detail}")

        logger.info(f"{context} finished: {output_path.name}")
