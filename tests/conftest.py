"""
Pytest Configuration and Fixtures

Shared fixtures for all tests. Nothing here talks to the network: the
generation client is replaced by FakeGAIC.
"""

import io
import struct
import threading
import time
import zlib
from typing import Callable, Dict, List, Optional

import pytest
from PIL import Image

from comic_engine import ComicConfig, ComicGenerator, GenerationCallbacks, StoryPage


def make_story_pages(n: int) -> List[Dict[str, str]]:
    return [
        {"pageText": f"Page {i + 1} text", "imagePrompt": f"prompt for page {i + 1}"}
        for i in range(n)
    ]


def png_bytes(size=(8, 8), color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def png_header_only(width: int, height: int) -> bytes:
    """A PNG that declares the given size but carries almost no pixel data."""
    def chunk(kind: bytes, data: bytes) -> bytes:
        return (struct.pack(">I", len(data)) + kind + data
                + struct.pack(">I", zlib.crc32(kind + data) & 0xFFFFFFFF))

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr)
            + chunk(b"IDAT", zlib.compress(b"\x00")) + chunk(b"IEND", b""))


class FakeGAIC:
    """Stands in for GAIC; records every call it receives."""

    def __init__(self, page_count: int = 10, story=None,
                 image_hook: Optional[Callable[[str], None]] = None,
                 description: str = "A red-haired pilot in a leather jacket."):
        self.config = ComicConfig(api_key="test-key", page_count=page_count)
        self.story = make_story_pages(page_count) if story is None else story
        self.image_hook = image_hook
        self.description = description
        self.describe_calls = []
        self.structured_prompts: List[str] = []
        self.schemas = []
        self.image_prompts: List[str] = []
        self._lock = threading.Lock()

    def describe_image(self, image, instruction: str) -> str:
        self.describe_calls.append((image, instruction))
        return self.description

    def generate_structured(self, prompt: str, response_schema):
        self.structured_prompts.append(prompt)
        self.schemas.append(response_schema)
        if isinstance(self.story, Exception):
            raise self.story
        if isinstance(self.story, list):
            return [StoryPage(**p) if isinstance(p, dict) else p for p in self.story]
        return self.story

    def generate_image(self, prompt: str):
        with self._lock:
            self.image_prompts.append(prompt)
        if self.image_hook:
            self.image_hook(prompt)
        return prompt.encode("utf-8"), "image/jpeg"


class Recorder:
    """Collects callback invocations in order."""

    def __init__(self):
        self.calls = []
        self.done = threading.Event()

    def on_progress(self, message):
        self.calls.append(("progress", message))

    def on_complete(self, document):
        self.calls.append(("complete", document))
        self.done.set()

    def on_error(self, error):
        self.calls.append(("error", error))
        self.done.set()

    def on_event(self, event):
        self.calls.append(("event", event))

    def of(self, kind):
        return [payload for k, payload in self.calls if k == kind]

    def callbacks(self):
        return GenerationCallbacks(
            on_progress=self.on_progress,
            on_complete=self.on_complete,
            on_error=self.on_error,
            on_event=self.on_event,
        )


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def fake_client():
    return FakeGAIC()


@pytest.fixture
def generator(fake_client):
    return ComicGenerator(fake_client)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def sample_png() -> bytes:
    return png_bytes()
