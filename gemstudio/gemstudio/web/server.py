"""FastAPI server exposing gemstudio generation to the web client."""

from __future__ import annotations

import logging
import os
from typing import List, Optional

from fastapi import FastAPI, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from ..api import DEFAULT_API_BASE, GenAIClient
from ..errors import GemStudioError, PermissionDeniedError
from ..images import guess_mime, to_base64
from ..studio import APP_MODES, DEFAULT_FREEDOM_LEVEL, InputImage, analyze_images, generate_remix_images

logger = logging.getLogger(__name__)

MAX_UPLOADS = 16

app = FastAPI(
    title="gemstudio",
    description="AI jewelry photo studio backend.",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


def _api_key(form_value: Optional[str]) -> str:
    key = form_value or os.environ.get("GEMINI_API_KEY")
    if not key:
        raise HTTPException(status_code=400, detail="Missing API key.")
    return key


async def _read_uploads(files: List[UploadFile]) -> List[InputImage]:
    if len(files) > MAX_UPLOADS:
        raise HTTPException(status_code=413, detail=f"Limit {MAX_UPLOADS} images per request.")
    images = []
    for upload in files:
        blob = await upload.read()
        if not blob:
            continue
        mime = upload.content_type or guess_mime(upload.filename or "upload")
        images.append(InputImage(to_base64(blob), mime))
    return images


def _remote_failure(exc: GemStudioError) -> HTTPException:
    if isinstance(exc, PermissionDeniedError) or getattr(exc, "status", None) == 403:
        return HTTPException(status_code=403, detail=exc.message)
    return HTTPException(status_code=502, detail=str(exc))


@app.post("/api/generate")
async def generate(
    products: List[UploadFile],
    reference: Optional[UploadFile] = None,
    prompt: str = Form(...),
    count: int = Form(1),
    image_size: str = Form("1K"),
    aspect_ratio: str = Form("3:4"),
    mode: str = Form("remix"),
    strict: bool = Form(False),
    api_key: Optional[str] = Form(None),
    api_base: str = Form(DEFAULT_API_BASE),
):
    """Generate ``count`` images from uploaded products as one all-or-nothing batch.

    Returns:
        dict: ``images`` as data URLs in request order, plus ``count``.

    Raises:
        HTTPException: 400 for bad input, 403 when the key is rejected,
            502 for any other remote failure.
    """
    key = _api_key(api_key)
    if count < 1:
        raise HTTPException(status_code=400, detail="count must be >= 1")
    product_images = await _read_uploads(products)
    if not product_images:
        raise HTTPException(status_code=400, detail="Upload at least one product image.")
    reference_image = None
    if reference is not None:
        ref = await _read_uploads([reference])
        reference_image = ref[0] if ref else None

    try:
        async with GenAIClient(key, api_base=api_base) as client:
            images = await generate_remix_images(
                client, prompt, product_images, image_size, aspect_ratio, count,
                reference_image=reference_image, strict=strict, mode=mode,
            )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except GemStudioError as exc:
        logger.exception("Generation batch failed")
        raise _remote_failure(exc) from exc
    return {"images": images, "count": len(images)}


@app.post("/api/analyze")
async def analyze(
    reference: UploadFile,
    products: Optional[List[UploadFile]] = None,
    system_prompt: str = Form(...),
    instruction: str = Form(""),
    mode: str = Form("remix"),
    freedom_level: int = Form(DEFAULT_FREEDOM_LEVEL),
    api_key: Optional[str] = Form(None),
    api_base: str = Form(DEFAULT_API_BASE),
    timeout: float = Form(120.0),
):
    """Return the parsed JSON creative plan for the uploaded images."""

    key = _api_key(api_key)
    if mode not in APP_MODES:
        raise HTTPException(status_code=400, detail=f"Unknown mode: {mode}")
    ref = await _read_uploads([reference])
    if not ref:
        raise HTTPException(status_code=400, detail="Reference image is empty.")
    product_images = await _read_uploads(products or [])
    if not 0 <= freedom_level <= 10:
        raise HTTPException(status_code=400, detail="freedom_level must be between 0 and 10")

    try:
        async with GenAIClient(key, api_base=api_base, timeout=float(timeout)) as client:
            plan = await analyze_images(
                client, system_prompt, ref[0], product_images, instruction, mode, freedom_level=freedom_level,
            )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except GemStudioError as exc:
        logger.exception("Analysis call failed")
        raise _remote_failure(exc) from exc
    return {"plan": plan}


def run(host: str = "0.0.0.0", port: int = 8000, reload: bool = True) -> None:
    """Start the FastAPI server.

    Args:
        host (str): Host/IP to bind to.
        port (int): Port number for incoming connections.
        reload (bool): Whether to enable auto-reload for development.
    """
    import uvicorn

    uvicorn.run("gemstudio.web.server:app", host=host, port=port, reload=reload)
