from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Tuple

import pytest
from PIL import Image

PROJECT_ROOT = Path(__file__).resolve().parents[1]
PACKAGE_ROOT = PROJECT_ROOT / "gemstudio"
if str(PACKAGE_ROOT) not in sys.path:
    sys.path.insert(0, str(PACKAGE_ROOT))

from gemstudio import retry  # noqa: E402
from gemstudio.errors import RemoteServiceError  # noqa: E402

# 1x1 transparent PNG
PNG_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="


@pytest.fixture
def image_factory(tmp_path) -> "ImageFactory":
    """Return helper that writes a PNG image at the requested path."""

    def _make(path: Path, size: Tuple[int, int] = (12, 8), color: Tuple[int, int, int] = (10, 200, 30)) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        img = Image.new("RGB", size, color)
        img.save(path, format="PNG")
        return path

    return _make


ImageFactory = Callable[[Path, Tuple[int, int], Tuple[int, int, int]], Path]


@pytest.fixture
def recorded_sleeps(monkeypatch):
    """Replace the retry backoff sleep with one that records delays and only yields."""

    import asyncio

    delays = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay):
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(retry, "_sleep", fake_sleep)
    return delays


def image_response(data: str = PNG_B64, mime: str = "image/png") -> dict:
    return {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": mime, "data": data}}]}}]}


def unavailable(message: str = "The model is overloaded. Please try again later.") -> RemoteServiceError:
    return RemoteServiceError(503, message, reason="UNAVAILABLE")


class FakeClient:
    """Stands in for ``GenAIClient``; replies from a script or with an image."""

    def __init__(self, *args, script=None, **kwargs):
        self.calls = []
        self.script = list(script or [])

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_exc):
        return False

    async def generate_content(self, model, parts, generation_config=None, system_instruction=None):
        self.calls.append(
            {"model": model, "parts": parts, "config": generation_config, "system": system_instruction}
        )
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return image_response()
