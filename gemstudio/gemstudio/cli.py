"""Command-line interface for gemstudio (batch jewelry photo generation)."""

import argparse
import asyncio
import json
import logging
import os
from contextlib import nullcontext
from pathlib import Path
from typing import List

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

from .api import DEFAULT_API_BASE, IMAGE_MODEL, TEXT_MODEL, GenAIClient
from .errors import GemStudioError, PermissionDeniedError
from .images import encode_image_file, find_images
from .studio import (
    APP_MODES, ASPECT_RATIOS, DEFAULT_FREEDOM_LEVEL, IMAGE_SIZES, STUDIO_CONCURRENCY, InputImage, RetryPolicy,
    StudioConcept, analyze_images, generate_remix_images, generate_studio_photos,
)
from .writer import ImageWriter

_console = Console(theme=Theme({"ok": "green", "warn": "yellow", "err": "bold red"}))

def info(msg): _console.log(msg, style="ok")
def warn(msg): _console.log(msg, style="warn")
def err(msg):  _console.log(msg, style="err")

API_KEY_ENV = "GEMINI_API_KEY"


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=_console, show_path=False)],
        force=True,
    )

def _collect_inputs(paths: List[Path], args) -> List[InputImage]:
    """Expand directories and encode every input image.

    Args:
        paths (List[Path]): Files or directories given on the command line.
        args: Parsed CLI arguments controlling rotation and resizing.

    Returns:
        List[InputImage]: Base64 payloads in command-line order.
    """
    files: List[Path] = []
    for p in paths:
        if p.is_dir():
            found = find_images(p, recursive=False, patterns=None)
            if not found:
                warn(f"No images found in {p}.")
            files.extend(found)
        else:
            files.append(p)
    inputs = []
    for f in files:
        data, mime = encode_image_file(f, max_side=args.max_side, autorotate=args.autorotate)
        inputs.append(InputImage(data, mime))
    return inputs

async def _generate(args, progress) -> List[str]:
    policy = RetryPolicy(max_retries=args.retries, initial_delay=args.initial_delay)
    async with GenAIClient(args.api_key, api_base=args.api_base, timeout=args.timeout) as client:
        if args.command == "remix":
            products = _collect_inputs(args.products, args)
            if not products:
                raise ValueError("no product images to send")
            reference = _collect_inputs([args.reference], args)[0] if args.reference else None
            return await generate_remix_images(
                client, args.prompt, products, args.size, args.aspect_ratio, args.count,
                progress, reference_image=reference, strict=args.strict, mode=args.mode,
                model=args.model, policy=policy, limit=args.concurrency,
            )
        product = _collect_inputs([args.product], args)[0]
        concepts = [StudioConcept.from_dict(c) for c in json.loads(args.concepts.read_text(encoding="utf-8"))]
        return await generate_studio_photos(
            client, concepts, product, args.size, args.aspect_ratio, args.per_concept,
            progress, model=args.model, policy=policy, limit=args.concurrency,
        )

def _run_generation(args) -> int:
    """Dispatch one generation batch and save its images.

    Returns:
        int: 0 on success, 1 when the batch failed.
    """
    status_cm = _console.status("Generating (0%)", spinner="dots")
    with status_cm as status:
        def progress(percent: int) -> None:
            status.update(f"Generating ({percent}%)")

        try:
            images = asyncio.run(_generate(args, progress))
        except PermissionDeniedError as e:
            err(f"{e.message} ({API_KEY_ENV} / --api-key)")
            return 1
        except GemStudioError as e:
            err(f"Generation failed, no images were kept: {e}")
            return 1

    request = {"command": args.command, "model": args.model, "size": args.size, "aspect_ratio": args.aspect_ratio}
    if args.command == "remix":
        request.update(prompt=args.prompt, mode=args.mode, strict=args.strict)
    with ImageWriter(args.out_dir, prefix=args.command) as writer:
        paths = writer.write_batch(images, request)
    info(f"✅ Done. {len(paths)} image(s) → {args.out_dir}")
    return 0

async def _analyze(args) -> dict:
    system_prompt = args.system_prompt_file.read_text(encoding="utf-8")
    reference = _collect_inputs([args.reference], args)[0]
    products = _collect_inputs(args.products, args)
    policy = RetryPolicy(max_retries=args.retries, initial_delay=args.initial_delay)
    async with GenAIClient(args.api_key, api_base=args.api_base, timeout=args.timeout) as client:
        return await analyze_images(
            client, system_prompt, reference, products, args.instruction, args.mode,
            freedom_level=args.freedom, model=args.model or TEXT_MODEL, policy=policy,
        )

def _run_analysis(args) -> int:
    """Request a creative plan and print or save it.

    Returns:
        int: 0 on success, 1 when the remote call or the plan failed.
    """
    with nullcontext() if args.quiet else _console.status("Analyzing", spinner="dots"):
        try:
            plan = asyncio.run(_analyze(args))
        except PermissionDeniedError as e:
            err(f"{e.message} ({API_KEY_ENV} / --api-key)")
            return 1
        except GemStudioError as e:
            err(f"Analysis failed: {e}")
            return 1
    text = json.dumps(plan, ensure_ascii=False, indent=2)
    if args.out:
        args.out.parent.mkdir(parents=True, exist_ok=True)
        args.out.write_text(text + "\n", encoding="utf-8")
        info(f"✅ Plan → {args.out}")
    else:
        _console.print_json(text)
    return 0

def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--api-key", default=os.environ.get(API_KEY_ENV),
                        help=f"Service API key (default: ${API_KEY_ENV}).")
    common.add_argument("--api-base", default=DEFAULT_API_BASE, help="Service base URL (no /v1beta).")
    common.add_argument("--model", default=None, help="Model id override.")
    common.add_argument("--timeout", type=float, default=120.0, help="HTTP timeout seconds.")
    common.add_argument("--retries", type=int, default=10, help="Retries on overload/internal errors.")
    common.add_argument("--initial-delay", type=float, default=3.0, help="First retry delay in seconds.")
    common.add_argument("--autorotate", action="store_true", help="Autorotate inputs via EXIF.")
    common.add_argument("--max-side", type=int, default=None,
                        help="If set, resize inputs so max(width,height) <= this.")
    common.add_argument("-v", "--verbose", action="store_true", help="Show debug logging.")

    gen = argparse.ArgumentParser(add_help=False)
    gen.add_argument("--size", choices=IMAGE_SIZES, default="1K", help="Output resolution.")
    gen.add_argument("--aspect-ratio", choices=ASPECT_RATIOS, default="3:4", help="Output aspect ratio.")
    gen.add_argument("--concurrency", type=int, default=STUDIO_CONCURRENCY, help="Concurrent generation calls.")
    gen.add_argument("--out-dir", type=Path, default=Path("outputs"), help="Where generated images go.")

    ap = argparse.ArgumentParser(
        prog="gemstudio",
        description="AI jewelry photo studio: parallel, ordered, retrying image generation.",
    )
    sub = ap.add_subparsers(dest="command", required=True)

    remix = sub.add_parser("remix", parents=[common, gen], help="Place products into a scene or onto a model.")
    remix.add_argument("products", nargs="+", type=Path, help="Product images or directories.")
    remix.add_argument("--prompt", required=True, help="Scene description.")
    remix.add_argument("--reference", type=Path, default=None, help="Reference/background image.")
    remix.add_argument("--strict", action="store_true", help="Keep the reference image as the base.")
    remix.add_argument("--mode", choices=["remix", "tryon"], default="remix", help="Remix or try-on.")
    remix.add_argument("--count", type=int, default=1, help="Number of images to generate.")

    studio = sub.add_parser("studio", parents=[common, gen], help="Shoot a product across studio concepts.")
    studio.add_argument("product", type=Path, help="Product image.")
    studio.add_argument("--concepts", type=Path, required=True, help="JSON list of studio concepts.")
    studio.add_argument("--per-concept", type=int, default=1, help="Images per concept.")

    analyze = sub.add_parser("analyze", parents=[common], help="Ask for a JSON creative plan.")
    analyze.add_argument("reference", type=Path, help="Reference image.")
    analyze.add_argument("products", nargs="*", type=Path, help="Product images.")
    analyze.add_argument("--system-prompt-file", type=Path, required=True, help="System prompt text file.")
    analyze.add_argument("--instruction", default="", help="User instruction.")
    analyze.add_argument("--mode", choices=APP_MODES, default="remix", help="Studio mode.")
    analyze.add_argument("--freedom", type=int, choices=range(0, 11), default=DEFAULT_FREEDOM_LEVEL,
                         metavar="0-10", help="Creative freedom (0 keeps the reference face).")
    analyze.add_argument("--out", type=Path, default=None, help="Write the plan here instead of stdout.")
    analyze.add_argument("--quiet", action="store_true", help="No spinner.")
    return ap

def main(argv=None):
    """Parse CLI arguments and run the requested workflow.

    Args:
        argv (Sequence[str] | None): Override for CLI arguments passed from ``sys.argv``.

    Returns:
        int: Exit code; 0 success, 1 remote failure, 2 user-facing errors.
    """
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose)

    if not args.api_key:
        err(f"No API key: pass --api-key or set {API_KEY_ENV}.")
        return 2

    if args.command == "analyze":
        try:
            return _run_analysis(args)
        except (OSError, ValueError) as e:
            err(f"Invalid input: {e}")
            return 2

    if args.model is None:
        args.model = IMAGE_MODEL
    if args.concurrency < 1:
        err("--concurrency must be >= 1")
        return 2
    try:
        return _run_generation(args)
    except (OSError, ValueError) as e:
        err(f"Invalid input: {e}")
        return 2

if __name__ == "__main__":
    raise SystemExit(main())
