"""Fake collaborators and shared constants for the test suite."""

from pathlib import Path
from typing import List, Optional, Set

from api.errors import TranscodeFailure

RAW_BUCKET = "raw-videos"
PROCESSED_BUCKET = "processed-videos"
TOPIC = "video-processing"
SIGNING_SECRET = "test-signing-secret"
BASE_URL = "http://testserver"


class FakePublisher:
    """JobPublisher recording every publish; set fail to make publishing raise."""

    def __init__(self):
        self.published: List[tuple] = []
        self.fail: Optional[Exception] = None

    async def publish(self, topic: str, payload: dict) -> str:
        if self.fail is not None:
            raise self.fail
        self.published.append((topic, payload))
        return f"{len(self.published)}-0"


class FakeTranscoder:
    """TranscoderEngine writing a small marker file per rendition."""

    def __init__(self, fail_heights: Optional[Set[int]] = None):
        self.calls: List[tuple] = []
        self.fail_heights = fail_heights or set()

    async def transcode(self, input_path: Path, height: int, output_path: Path) -> None:
        self.calls.append((input_path, height, output_path))
        assert input_path.is_file(), "source must be downloaded before transcoding"
        if height in self.fail_heights:
            raise TranscodeFailure(f"FFmpeg {height}p exited with code 1: Invalid data found")
        output_path.write_bytes(f"rendition {height}p of {input_path.read_bytes()[:16]!r}".encode())
