"""Writer for persisting generated images plus a JSONL manifest."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from .images import EXT_BY_MIME, file_meta, split_data_url

MANIFEST_NAME = "manifest.jsonl"


class ImageWriter:
    """Context-managed writer that decodes data URLs into numbered image files.

    Each saved image gets one manifest line with its metadata and whatever
    request details the caller passes along (prompt, mode, size).
    """
    def __init__(self, out_dir: Path, prefix: str = "image"):
        self.out_dir = out_dir
        self.prefix = prefix
        self.manifest_path = out_dir / MANIFEST_NAME
        self.saved: List[Path] = []
        self._fp = None

    def __enter__(self):
        self.out_dir.mkdir(parents=True, exist_ok=True)
        self._fp = self.manifest_path.open("a", encoding="utf-8")
        return self

    def _next_path(self, ext: str) -> Path:
        index = len(self.saved) + 1
        path = self.out_dir / f"{self.prefix}_{index:03d}.{ext}"
        while path.exists():
            index += 1
            path = self.out_dir / f"{self.prefix}_{index:03d}.{ext}"
        return path

    def write_image(self, data_url: str, index: int, request: Optional[Dict[str, Any]] = None) -> Path:
        """Decode and save one generated image.

        Args:
            data_url (str): ``data:`` URL returned by the generation workflow.
            index (int): Position of the image in its batch.
            request (Optional[Dict[str, Any]]): Request details copied into the manifest.

        Returns:
            Path: Location of the written file.
        """
        mime, data = split_data_url(data_url)
        path = self._next_path(EXT_BY_MIME.get(mime, "png"))
        path.write_bytes(data)
        record = {"index": index, "meta": file_meta(path, data, mime), "request": request or {}}
        self._fp.write(json.dumps(record, ensure_ascii=False) + "\n")
        self.saved.append(path)
        return path

    def write_batch(self, data_urls: List[str], request: Optional[Dict[str, Any]] = None) -> List[Path]:
        return [self.write_image(url, i, request) for i, url in enumerate(data_urls)]

    def __exit__(self, exc_type, exc, tb):
        if self._fp:
            self._fp.close()
            self._fp = None
