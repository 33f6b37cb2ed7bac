"""End-to-end texture generation flows.

Each flow drives a :class:`~sdtexture.core.client.StableDiffusionClient`
through one complete generation and returns a :class:`TextureResult`:

- :func:`generate_image`: text-to-image, e.g. for UI images and sprites.
- :func:`generate_material`: text-to-image plus a normal map derived from the
  first generated image, ready to be used as albedo + bump textures.
- :func:`transform_image`: image-to-image from an existing picture.

Presentation (assigning textures to materials or UI elements) is left to the
caller; :mod:`sdtexture.outputs` can write results to disk.

Example:

    >>> async with StableDiffusionClient(config) as client:
    ...     result = await generate_material(
    ...         client,
    ...         GenerationRequest(prompt="rusty metal plates", tiling=True),
    ...         model_name="v1-5-pruned-emaonly",
    ...     )
    >>> result.seed, len(result.normal_map)
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Any

from PIL import Image

from sdtexture.core.client import StableDiffusionClient
from sdtexture.core.errors import InvalidParameter
from sdtexture.core.models import GenerationRequest, GenerationResponse, Img2ImgRequest
from sdtexture.core.normal_map import EdgeMode, check_filter_parameters, normal_map_png
from sdtexture.core.progress import ProgressCallback

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextureResult:
    """Outcome of one texture flow.

    Attributes:
        kind: ``"image"``, ``"material"`` or ``"img2img"``.
        request: The request as submitted (before clamping).
        response: Decoded server response.
        model_name: Checkpoint selected for the generation, if any.
        normal_map: PNG bytes of the normal map (materials only).
        normal_strength: Strength the normal map was built with.
    """

    kind: str
    request: GenerationRequest
    response: GenerationResponse
    model_name: str | None = None
    normal_map: bytes | None = None
    normal_strength: float | None = None

    @property
    def image(self) -> bytes:
        """PNG bytes of the first generated image."""
        return self.response.images[0]

    @property
    def seed(self) -> int:
        return self.response.seed

    def metadata(self) -> dict[str, Any]:
        """Generation parameters worth recording next to the image."""
        params = self.request.clamped()
        info = self.response.info
        return {
            "kind": self.kind,
            "prompt": self.request.prompt,
            "negative_prompt": self.request.negative_prompt,
            "seed": self.seed,
            "all_seeds": info.all_seeds,
            "width": params.width,
            "height": params.height,
            "steps": params.steps,
            "cfg_scale": params.cfg_scale,
            "sampler_name": params.sampler_name,
            "model_name": self.model_name or info.sd_model_name,
            "tiling": params.tiling,
            "normal_strength": self.normal_strength,
            "image_count": len(self.response.images),
        }


def _require_prompt(request: GenerationRequest) -> None:
    if not request.prompt or not request.prompt.strip():
        raise InvalidParameter("A prompt is required to generate an image")


async def generate_image(
    client: StableDiffusionClient,
    request: GenerationRequest,
    model_name: str | None = None,
    on_progress: ProgressCallback | None = None,
) -> TextureResult:
    """Generate an image from a text prompt.

    Raises:
        InvalidParameter: If the prompt is empty.
        SDTextureError: Any client failure, unchanged.
    """
    _require_prompt(request)
    response = await client.generate(request, model_name=model_name, on_progress=on_progress)
    return TextureResult(kind="image", request=request, response=response, model_name=model_name)


async def generate_material(
    client: StableDiffusionClient,
    request: GenerationRequest,
    model_name: str | None = None,
    normal_map: bool = True,
    normal_strength: float | None = None,
    edge_mode: EdgeMode = "wrap",
    on_progress: ProgressCallback | None = None,
) -> TextureResult:
    """Generate a material texture and, optionally, its normal map.

    Args:
        client: Connected client.
        request: txt2img request; ``tiling=True`` gives seamless materials.
        model_name: Checkpoint to select first.
        normal_map: Derive a normal map from the first image.
        normal_strength: Normal map strength (0-10); defaults to
            ``client.config.normal_map_strength``.
        edge_mode: Border addressing for the normal map filter.
        on_progress: Progress callback passed to the client.

    Raises:
        InvalidParameter: If the prompt is empty, or the normal map strength
            or edge mode is invalid. Nothing is sent to the server then.
    """
    _require_prompt(request)
    strength = normal_strength if normal_strength is not None else client.config.normal_map_strength
    if normal_map:
        check_filter_parameters(strength, edge_mode)

    response = await client.generate(request, model_name=model_name, on_progress=on_progress)

    normal_bytes = None
    if normal_map:
        # CPU-bound filter; keep the event loop responsive.
        normal_bytes = await asyncio.to_thread(
            normal_map_png, response.images[0], strength, edge_mode
        )
        logger.info(f"Built normal map (strength={strength}, edges={edge_mode}).")

    return TextureResult(
        kind="material",
        request=request,
        response=response,
        model_name=model_name,
        normal_map=normal_bytes,
        normal_strength=strength if normal_map else None,
    )


async def transform_image(
    client: StableDiffusionClient,
    source: Image.Image | bytes,
    request: GenerationRequest,
    denoising_strength: float = 0.75,
    model_name: str | None = None,
    on_progress: ProgressCallback | None = None,
) -> TextureResult:
    """Generate a variation of ``source`` guided by the request's prompt.

    Args:
        client: Connected client.
        source: PIL image or encoded image bytes.
        request: Prompt and sampling settings.  An ``Img2ImgRequest`` is
            used as-is apart from its source image; a plain request is
            converted.
        denoising_strength: How far the result may drift from the source,
            used when ``request`` is a plain txt2img request.
        model_name: Checkpoint to select first.
        on_progress: Progress callback passed to the client.
    """
    _require_prompt(request)

    if isinstance(source, Image.Image):
        buffer = io.BytesIO()
        source.save(buffer, format="PNG")
        init_image = buffer.getvalue()
    else:
        init_image = source

    if isinstance(request, Img2ImgRequest):
        img2img = request.model_copy(update={"init_image": init_image})
    else:
        fields = request.model_dump(exclude={"highres"})
        img2img = Img2ImgRequest(
            **fields, init_image=init_image, denoising_strength=denoising_strength
        )

    response = await client.generate(img2img, model_name=model_name, on_progress=on_progress)
    return TextureResult(kind="img2img", request=img2img, response=response, model_name=model_name)
