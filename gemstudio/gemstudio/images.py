"""Utilities for reading, transforming, and encoding studio image assets."""

import base64
import binascii
import hashlib
import mimetypes
from io import BytesIO
from pathlib import Path
from typing import List, Optional, Dict, Any, Tuple, Union

from PIL import Image, ImageOps, UnidentifiedImageError

PathLike = Union[str, Path]

DEFAULT_PATTERNS = ["*.png", "*.jpg", "*.jpeg", "*.webp"]
EXT_BY_MIME = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}


def guess_mime(path: PathLike) -> str:
    """Guess the MIME type of a file based on its extension.

    Args:
        path (PathLike): File path or name to analyze.

    Returns:
        str: Guessed MIME type, defaulting to ``application/octet-stream``.
    """
    mime, _ = mimetypes.guess_type(str(path))
    return mime or "application/octet-stream"

def sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()

def load_image_bytes(path: Path) -> bytes:
    with open(path, "rb") as f:
        return f.read()

def autorotate_and_resize(path: Path, max_side: Optional[int]) -> Optional[bytes]:
    """Rotate the image via EXIF and shrink it so its longest side is ``max_side``.

    Args:
        path (Path): Original image path for EXIF and MIME guessing.
        max_side (Optional[int]): Maximum width/height in pixels; ignored if ``None``.

    Returns:
        Optional[bytes]: Re-encoded image contents, or ``None`` if Pillow cannot read it.
    """
    try:
        img = Image.open(path)
        img = ImageOps.exif_transpose(img)
    except (OSError, UnidentifiedImageError):
        return None
    if max_side and max(img.size) > max_side:
        ratio = max_side / float(max(img.size))
        new_size = (int(img.size[0] * ratio), int(img.size[1] * ratio))
        img = img.resize(new_size, Image.LANCZOS)
    mime = guess_mime(path)
    fmt = "PNG"
    if mime in ("image/jpeg", "image/jpg"):
        fmt = "JPEG"
        img = img.convert("RGB")
    elif mime == "image/webp":
        fmt = "WEBP"
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()

def to_base64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")

def to_data_url(mime: str, data: bytes) -> str:
    """Encode bytes into a Base64 data URL.

    Args:
        mime (str): MIME type for the provided bytes.
        data (bytes): File contents.

    Returns:
        str: ``data:{mime};base64,...`` URL.
    """
    return f"data:{mime};base64,{to_base64(data)}"

def split_data_url(url: str) -> Tuple[str, bytes]:
    """Decode a ``data:{mime};base64,...`` URL.

    Raises:
        ValueError: If ``url`` is not a base64 data URL.
    """
    header, sep, payload = url.partition(",")
    if not sep or not header.startswith("data:") or not header.endswith(";base64"):
        raise ValueError("not a base64 data URL")
    mime = header[len("data:"):-len(";base64")] or "application/octet-stream"
    try:
        return mime, base64.b64decode(payload, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 payload: {exc}") from exc

def file_meta(path: PathLike, data: bytes, mime: Optional[str] = None) -> Dict[str, Any]:
    """Compose metadata for a given image payload.

    Args:
        path (PathLike): Original or destination file path.
        data (bytes): Raw image bytes.
        mime (Optional[str]): Known MIME type; guessed from ``path`` when omitted.

    Returns:
        Dict[str, Any]: Metadata including size, MIME, SHA-256, and dimensions when readable.
    """
    meta: Dict[str, Any] = {
        "file": str(path),
        "size_bytes": len(data),
        "mime": mime or guess_mime(path),
        "sha256": sha256_bytes(data),
    }
    try:
        with Image.open(BytesIO(data)) as im:
            meta["width"], meta["height"] = im.size
            meta["mode"] = im.mode
    except (OSError, UnidentifiedImageError):
        pass
    return meta

def find_images(root: Path, recursive: bool, patterns: Optional[List[str]]) -> List[Path]:
    """Discover image files under a root directory using glob patterns.

    Args:
        root (Path): Directory to scan.
        recursive (bool): Whether to walk subdirectories.
        patterns (Optional[List[str]]): Patterns to match, defaults to common image extensions.

    Returns:
        List[Path]: Sorted, unique file paths.
    """
    globs = patterns or DEFAULT_PATTERNS
    paths = []
    for pat in globs:
        paths.extend(root.rglob(pat) if recursive else root.glob(pat))
    return sorted({p.resolve() for p in paths if p.is_file()})

def encode_image_file(path: Path, max_side: Optional[int] = None, autorotate: bool = False) -> Tuple[str, str]:
    """Read an input image and return ``(base64, mime)`` ready for an inline part."""

    raw = load_image_bytes(path)
    if autorotate or max_side:
        maybe = autorotate_and_resize(path, max_side)
        if maybe:
            raw = maybe
    return to_base64(raw), guess_mime(path)
