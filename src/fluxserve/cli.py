"""Command-line image generation without the HTTP server.

Runs the same generation path as the API jobs (engine session, per-step
forcing, latent unpacking, PNG encoding) synchronously in the foreground.

Usage::

    fluxserve-generate --prompt "A cat is sitting on a tree" --steps 4
    fluxserve-generate --model dev --steps 30 --output portrait.png
    fluxserve-generate --init-image-path sketch.png --init-image-strength 0.4

An existing output file is never overwritten: ``output_image.png`` becomes
``output_image_1.png``, ``output_image_2.png`` and so on (a trailing
``_<number>`` in the requested name is replaced rather than extended).
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from fluxserve.core.codec import save_image
from fluxserve.core.config import config
from fluxserve.core.dispatcher import generate_image
from fluxserve.core.engine import MODEL_VARIANTS, DiffusersFluxEngine, InferenceEngine
from fluxserve.core.errors import FluxServeError
from fluxserve.core.request import GenerationRequest

logger = logging.getLogger(__name__)


def unique_output_path(path: Path) -> Path:
    """Return ``path``, or the first ``<stem>_<n><suffix>`` that does not exist."""
    stem, suffix = path.stem, path.suffix
    head, separator, tail = stem.rpartition("_")
    base = head if separator and head and tail.isdigit() else stem

    candidate = path
    counter = 1
    while candidate.exists():
        candidate = path.with_name(f"{base}_{counter}{suffix}")
        counter += 1
    return candidate


def _model_help() -> str:
    variants = "; ".join(f"{v.name}: {v.description}" for v in MODEL_VARIANTS.values())
    return f"FLUX model variant ({variants})"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fluxserve-generate",
        description="Generate an image with FLUX.",
    )
    parser.add_argument("--prompt", default="A cat is sitting on a tree", help="Text prompt")
    parser.add_argument("--width", type=int, default=512, help="Image width in pixels")
    parser.add_argument("--height", type=int, default=512, help="Image height in pixels")
    parser.add_argument("--steps", type=int, default=4, help="Number of inference steps")
    parser.add_argument("--guidance", type=float, default=3.5, help="Guidance scale")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument("--output", default="output_image.png", help="Output image path")
    parser.add_argument(
        "--model",
        default="schnell",
        choices=sorted(MODEL_VARIANTS),
        type=str.lower,
        help=_model_help(),
    )
    parser.add_argument("-q", "--quantize", action="store_true", help="Quantize transformer weights")
    parser.add_argument(
        "--float16",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Half precision inference",
    )
    parser.add_argument("--hf-token", default=None, help="HuggingFace token (dev model)")
    parser.add_argument("--lora-path", default=None, help="LoRA weights file or Hub repo id")
    parser.add_argument("--init-image-path", default=None, help="Source image for image-to-image")
    parser.add_argument(
        "--init-image-strength",
        type=float,
        default=None,
        help="Source image strength, 0.0 to 1.0 (default 0.3)",
    )
    return parser


def main(argv: list[str] | None = None, engine: InferenceEngine | None = None) -> int:
    """Entry point of ``fluxserve-generate``.  Returns the exit status."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    request = GenerationRequest(
        prompt=args.prompt,
        width=args.width,
        height=args.height,
        steps=args.steps,
        guidance=args.guidance,
        seed=args.seed,
        model=args.model,
        quantize=args.quantize,
        float16=args.float16,
        hf_token=args.hf_token,
        lora_path=args.lora_path,
        init_image_path=args.init_image_path,
        init_image_strength=args.init_image_strength,
    )

    print("Starting image generation with parameters:")
    print(f"- Prompt: {request.final_prompt}")
    print(f"- Dimensions: {request.final_width}x{request.final_height}")
    print(f"- Steps: {request.final_steps}")
    print(f"- Guidance: {request.final_guidance}")
    print(f"- Model: {request.final_model}")
    if request.seed is not None:
        print(f"- Seed: {request.seed}")
    print(f"- Float16: {request.final_float16}")
    print(f"- Quantize: {request.final_quantize}")
    if request.lora_path:
        print(f"- LoRA: {request.lora_path}")
    if request.init_image_path:
        print(f"- Init Image: {request.init_image_path}")
        print(f"- Init Image Strength: {request.final_image_strength}")

    if engine is None:
        config.models_dir.mkdir(parents=True, exist_ok=True)
        engine = DiffusersFluxEngine(config)

    def report(step: int, total: int) -> None:
        print(f"Step {step}/{total}")

    try:
        image = generate_image(engine, request, config, on_step=report)
        output = save_image(image, unique_output_path(Path(args.output)))
    except FluxServeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Image saved successfully at: {output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
