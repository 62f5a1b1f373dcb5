"""Generation workflows: build one retrying job per output image and run the batch.

Every workflow follows the same shape. Job builders turn domain parameters
(prompts, base64 images, size, aspect ratio) into zero-argument coroutine
functions, each performing exactly one ``generateContent`` call wrapped in
:func:`gemstudio.retry.with_retry`. The batch then goes through
:func:`gemstudio.scheduler.run_with_concurrency` with ``STUDIO_CONCURRENCY``
slots, so results come back in request order or the whole batch fails.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from .api import IMAGE_MODEL, TEXT_MODEL, extract_image, extract_text, image_config, inline_part, text_part
from .errors import InvalidPlanError, NoImageGeneratedError, PermissionDeniedError, RemoteServiceError
from .retry import DEFAULT_INITIAL_DELAY, DEFAULT_MAX_RETRIES, with_retry
from .scheduler import Job, ProgressCallback, run_with_concurrency

logger = logging.getLogger(__name__)

STUDIO_CONCURRENCY = 3

IMAGE_SIZES = ("1K", "2K", "4K")
ASPECT_RATIOS = ("3:4", "1:1", "9:16")
APP_MODES = ("remix", "tryon", "custom_model", "studio")
DEFAULT_FREEDOM_LEVEL = 5
TRYON_KEEP_LOOK = "MODE B - Sub-Mode 1: KEEP_LOOK (Preserve Facial Identity)"
TRYON_DIGITAL_REMIX = "MODE B - Sub-Mode 2: DIGITAL_REMIX (Generate Copyright-Free Lookalike/Vibe Twin)"

STUDIO_NEGATIVE_PROMPT = "blurry, low quality, distorted, bad geometry, watermark, text."
MODEL_NEGATIVE_PROMPT = (
    "shoes, socks, jewelry, earrings, necklace, accessories, heavy makeup, fancy dress, "
    "complex background, distorted face, low quality, bad anatomy, blur, merged bodies, missing limbs"
)
FRONTAL_VIEW = {
    "prompt": "VIEW: FULL BODY FRONT (0 degrees). The model is facing the camera directly. "
              "Symmetrical pose. Eyes looking at camera.",
    "negative": "side view, looking away, profile, asymmetric, turned head",
}


@dataclass(frozen=True)
class InputImage:
    """A base64 image payload plus its MIME type."""

    data: str
    mime: str = "image/jpeg"

    def part(self) -> dict:
        return inline_part(self.data, self.mime)


@dataclass
class RetryPolicy:
    max_retries: int = DEFAULT_MAX_RETRIES
    initial_delay: float = DEFAULT_INITIAL_DELAY


@dataclass(frozen=True)
class StudioConcept:
    id: str
    prompt: str
    lighting_setup: str = ""
    title: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StudioConcept":
        return cls(
            id=str(data.get("id", "")),
            prompt=data.get("full_prompt_for_nano_banana") or data.get("prompt") or "",
            lighting_setup=data.get("lighting_setup", ""),
            title=data.get("title") or data.get("ui_title") or "",
        )


def validate_output_options(image_size: str, aspect_ratio: str) -> None:
    if image_size not in IMAGE_SIZES:
        raise ValueError(f"image size must be one of {', '.join(IMAGE_SIZES)}")
    if aspect_ratio not in ASPECT_RATIOS:
        raise ValueError(f"aspect ratio must be one of {', '.join(ASPECT_RATIOS)}")


def variance_instruction(index: int, count: int) -> str:
    if count <= 1:
        return ""
    return (
        f"\n\n[Generation {index + 1} of {count}]: Create a distinct variation. Change the camera "
        "angle, lighting nuance, or composition slightly so it is NOT identical to other versions."
    )


def fidelity_instruction(level: int) -> str:
    """Map the 0-10 freedom slider to how closely the reference face is kept."""

    if level == 0:
        return ("CRITICAL: STRICTLY preserve the exact identity, facial structure, and pixel details "
                "of the reference image. Do not change the person.")
    if level <= 2:
        return ("Maintain strong resemblance to the reference image. You may optimize lighting and "
                "skin texture, but the person must look like the reference.")
    if level <= 4:
        return ("Create a 'Cousin' or 'Sister' look. Use the reference for bone structure, but noticeably "
                "CHANGE the specific facial features (eyes, nose, mouth) to create a distinct new face. "
                "It should NOT look like the exact same person.")
    if level <= 7:
        return ("Use the reference image ONLY for lighting and general vibe. Create a completely new "
                "face based on the DNA text description.")
    return "Ignore the reference image person entirely. Create a new model based ONLY on the text DNA."


def clean_json_string(text: str) -> str:
    return text.replace("```json", "").replace("```", "").strip()


def _image_job(client, parts: List[dict], config: dict, model: str, policy: RetryPolicy, failure: str) -> Job:
    async def call_once() -> str:
        resp = await client.generate_content(model, parts, generation_config=config)
        image = extract_image(resp)
        if image is None:
            raise NoImageGeneratedError(failure)
        return image

    async def job() -> str:
        return await with_retry(call_once, policy.max_retries, policy.initial_delay)

    return job


def build_remix_jobs(
    client,
    prompt: Union[str, Sequence[str]],
    product_images: Sequence[InputImage],
    image_size: str,
    aspect_ratio: str,
    count: int,
    reference_image: Optional[InputImage] = None,
    strict: bool = False,
    mode: str = "remix",
    model: str = IMAGE_MODEL,
    policy: Optional[RetryPolicy] = None,
) -> List[Job]:
    """Build ``count`` remix / try-on jobs.

    A list of prompts is cycled across the jobs; a single prompt gets a
    per-job variation hint instead. In strict mode the reference image
    leads the request and the mode decides how the products are placed.
    """
    validate_output_options(image_size, aspect_ratio)
    if mode not in ("remix", "tryon"):
        raise ValueError(f"unsupported remix mode: {mode}")
    policy = policy or RetryPolicy()
    config = image_config(image_size, aspect_ratio)
    prompts = [prompt] if isinstance(prompt, str) else list(prompt)
    if not prompts:
        raise ValueError("at least one prompt is required")

    jobs = []
    for i in range(count):
        current = prompts[i % len(prompts)]
        variance = variance_instruction(i, count) if isinstance(prompt, str) else ""
        parts: List[dict] = []
        if strict and reference_image is not None:
            parts.append(reference_image.part())
            if mode == "tryon":
                parts.append(text_part("Background/Model Reference:"))
                parts.append(text_part("Jewelry Objects to Wear:"))
                parts.extend(img.part() for img in product_images)
                parts.append(text_part(
                    "Task: Remove any existing jewelry on the model. Wear ALL provided jewelry objects "
                    "on the model. CRITICAL: Keep the model's face and skin tone EXACTLY as in the "
                    f"reference image. {current} {variance}"
                ))
            else:
                parts.append(text_part("Background/Reference:"))
                parts.extend(img.part() for img in product_images)
                parts.append(text_part("Object to Insert:"))
                parts.append(text_part(f"{current} {variance}"))
        else:
            parts.extend(img.part() for img in product_images)
            parts.append(text_part(f"{current} {variance}"))
        jobs.append(_image_job(client, parts, config, model, policy, "No image generated for remix request."))
    return jobs


def build_studio_jobs(
    client,
    concepts: Sequence[StudioConcept],
    product_image: InputImage,
    image_size: str,
    aspect_ratio: str,
    count_per_concept: int,
    model: str = IMAGE_MODEL,
    policy: Optional[RetryPolicy] = None,
) -> List[Job]:
    validate_output_options(image_size, aspect_ratio)
    policy = policy or RetryPolicy()
    config = image_config(image_size, aspect_ratio)
    jobs = []
    for concept in concepts:
        for i in range(count_per_concept):
            variance = ""
            if count_per_concept > 1:
                variance = (f"\n\nVariation {i + 1}: Ensure this shot is slightly different in angle "
                            "or composition from other shots of the same style.")
            parts = [
                product_image.part(),
                text_part(
                    f"{concept.prompt} {variance}\n\nLighting: {concept.lighting_setup}.\n"
                    f"Negative Prompt: {STUDIO_NEGATIVE_PROMPT}"
                ),
            ]
            jobs.append(_image_job(client, parts, config, model, policy, "Failed to generate studio shot."))
    return jobs


def build_virtual_model_jobs(
    client,
    dna: Dict[str, Any],
    reference_image: Optional[InputImage],
    freedom_level: int,
    image_size: str,
    aspect_ratio: str,
    model: str = IMAGE_MODEL,
    policy: Optional[RetryPolicy] = None,
) -> List[Job]:
    """Build the virtual-model job from an incubation DNA analysis.

    The reference image is only sent while the freedom level still asks for
    resemblance (level 8 and below).
    """
    validate_output_options(image_size, aspect_ratio)
    policy = policy or RetryPolicy()
    demo = dna.get("demographics", {})
    feat = dna.get("visual_features", {})
    vibe = dna.get("vibe_and_style", {})
    base_prompt = (
        f"Subject DNA: {demo.get('race_ethnicity', '')} {demo.get('gender', '')}, {demo.get('age_vibe', '')}.\n"
        f"Facial Features: {feat.get('face_shape', '')}, {feat.get('eye_characteristics', '')}, "
        f"{feat.get('skin_texture', '')}.\n"
        f"Hair: {feat.get('hair_style', '')}, {vibe.get('hair_vibe_keywords', '')}.\n"
        f"Vibe & Expression: {vibe.get('personality_tag', '')}.\n"
        "Uniform: tight black sleeveless sports tank top and black fitted shorts. Barefoot.\n"
        "Background: Pure white studio background (#FFFFFF).\n"
        "Lighting: Soft, even studio casting lighting."
    )
    parts: List[dict] = []
    if reference_image is not None and freedom_level <= 8:
        parts.append(reference_image.part())
    parts.append(text_part(
        f"{FRONTAL_VIEW['prompt']}\n{fidelity_instruction(freedom_level)}\n\n{base_prompt}\n\n"
        f"Negative Prompt: {MODEL_NEGATIVE_PROMPT}, {FRONTAL_VIEW['negative']}"
    ))
    config = image_config(image_size, aspect_ratio)
    return [_image_job(client, parts, config, model, policy, "Failed to generate virtual model.")]


def _raise_if_forbidden(exc: RemoteServiceError, target: str) -> None:
    if exc.status == 403 and not isinstance(exc, PermissionDeniedError):
        raise PermissionDeniedError(
            403,
            f"Permission denied. Select an API key with access to {target}.",
            reason=exc.reason,
            body=exc.body,
        ) from exc


async def run_generation(
    jobs: Sequence[Job],
    on_progress: Optional[ProgressCallback] = None,
    limit: int = STUDIO_CONCURRENCY,
) -> List[str]:
    """Run image jobs as one all-or-nothing batch.

    Raises:
        PermissionDeniedError: When the service rejects the key (HTTP 403).
    """
    try:
        return await run_with_concurrency(jobs, limit, on_progress)
    except RemoteServiceError as exc:
        logger.error("Image generation failed: %s", exc)
        _raise_if_forbidden(exc, "the image model")
        raise


async def generate_remix_images(client, prompt, product_images, image_size, aspect_ratio, count,
                                on_progress: Optional[ProgressCallback] = None, **options) -> List[str]:
    limit = options.pop("limit", STUDIO_CONCURRENCY)
    jobs = build_remix_jobs(client, prompt, product_images, image_size, aspect_ratio, count, **options)
    return await run_generation(jobs, on_progress, limit)


async def generate_studio_photos(client, concepts, product_image, image_size, aspect_ratio, count_per_concept,
                                 on_progress: Optional[ProgressCallback] = None, **options) -> List[str]:
    limit = options.pop("limit", STUDIO_CONCURRENCY)
    jobs = build_studio_jobs(client, concepts, product_image, image_size, aspect_ratio, count_per_concept,
                             **options)
    return await run_generation(jobs, on_progress, limit)


async def generate_virtual_model(client, dna, reference_image, freedom_level, image_size, aspect_ratio,
                                 on_progress: Optional[ProgressCallback] = None, **options) -> List[str]:
    limit = options.pop("limit", STUDIO_CONCURRENCY)
    jobs = build_virtual_model_jobs(client, dna, reference_image, freedom_level, image_size, aspect_ratio,
                                    **options)
    return await run_generation(jobs, on_progress, limit)


def analysis_parts(
    reference_image: InputImage,
    product_images: Sequence[InputImage],
    instruction: str,
    mode: str,
    freedom_level: int = DEFAULT_FREEDOM_LEVEL,
) -> List[dict]:
    """Lay out the analysis request.

    Remix and try-on send the products, the instruction and the freedom
    level (try-on turns it into a keep-look or lookalike sub-mode).
    Custom-model and studio modes send only the first image plus a task line.
    """

    if mode not in APP_MODES:
        raise ValueError(f"unknown mode: {mode}")
    if mode == "tryon":
        label = "Model Reference Image:"
    elif mode == "studio":
        label = "Product Image to Analyze:"
    else:
        label = "Reference Image:"
    parts = [text_part(label), reference_image.part()]
    if mode not in ("custom_model", "studio"):
        parts.append(text_part(
            "Product Images (Jewelry to wear):" if mode == "tryon" else "Product Images (Object to insert):"
        ))
        parts.extend(img.part() for img in product_images)
        parts.append(text_part(f"User Instruction: {instruction}"))
        if mode == "tryon":
            keep_look = freedom_level == 0
            sub_mode = TRYON_KEEP_LOOK if keep_look else TRYON_DIGITAL_REMIX
            constraint = (
                "Strictly preserve model's FACE identity. Design styling/outfit/pose to suit jewelry."
                if keep_look else "Generate a new person with similar vibe."
            )
            parts.append(text_part(f"Try-On Mode Selection: {sub_mode}"))
            parts.append(text_part(f"Constraint: {constraint}"))
        else:
            parts.append(text_part(f"User Freedom Level (0-10): {freedom_level}."))
    elif mode == "custom_model":
        parts.append(text_part("Task: Extract Model DNA as per system instructions."))
    else:
        parts.append(text_part(f"User Requirements / Special Requests: \"{instruction}\""))
        parts.append(text_part(
            "Task: Identify jewelry material and design 3 specific studio concepts based on User Requirements."
        ))
    return parts


def parse_plan(resp: dict) -> Dict[str, Any]:
    text = clean_json_string(extract_text(resp))
    if not text:
        raise InvalidPlanError("The analysis returned an empty plan.")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidPlanError(f"The analysis returned an invalid plan: {exc}") from exc


async def analyze_images(
    client,
    system_prompt: str,
    reference_image: InputImage,
    product_images: Sequence[InputImage] = (),
    instruction: str = "",
    mode: str = "remix",
    freedom_level: int = DEFAULT_FREEDOM_LEVEL,
    model: str = TEXT_MODEL,
    policy: Optional[RetryPolicy] = None,
) -> Dict[str, Any]:
    """Ask the text model for a JSON creative plan for the given images.

    Raises:
        PermissionDeniedError: When the service rejects the key (HTTP 403).
        InvalidPlanError: When the reply is not valid JSON.
    """

    policy = policy or RetryPolicy()
    parts = analysis_parts(reference_image, product_images, instruction, mode, freedom_level)
    try:
        resp = await with_retry(
            lambda: client.generate_content(
                model,
                parts,
                generation_config={"responseMimeType": "application/json"},
                system_instruction=system_prompt,
            ),
            policy.max_retries,
            policy.initial_delay,
        )
    except RemoteServiceError as exc:
        logger.error("Image analysis failed: %s", exc)
        _raise_if_forbidden(exc, "the analysis model")
        raise
    return parse_plan(resp)
