"""Integration tests for the texture flows.

These tests run complete image, material and img2img flows against the
fake AUTOMATIC1111 backend and save the results, exercising the client,
the normal map filter and the output helpers together.
"""

from __future__ import annotations

import asyncio
import base64
import io
import json

import numpy as np
import pytest
from PIL import Image

from sdtexture.core.errors import EmptyResult, InvalidParameter
from sdtexture.core.models import GenerationRequest, Img2ImgRequest
from sdtexture.outputs import MATERIALS_FOLDER, save_result
from sdtexture.workflows.texture import generate_image, generate_material, transform_image

pytestmark = pytest.mark.integration


def _stripe_png() -> bytes:
    """A 4x4 image with a dark left half and a bright right half."""
    pixels = np.zeros((4, 4, 3), dtype=np.uint8)
    pixels[:, 2:] = 255
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format="PNG")
    return buffer.getvalue()


class TestGenerateImage:
    """Text-to-image flow."""

    @pytest.mark.asyncio
    async def test_image_flow(self, test_config, backend):
        """The flow returns the image and the seed the server used."""
        async with backend.client(test_config) as client:
            result = await generate_image(
                client, GenerationRequest(prompt="health potion icon"), model_name="dreamshaper_8"
            )

        assert result.kind == "image"
        assert result.seed == backend.server_seed
        assert result.normal_map is None
        assert result.metadata()["model_name"] == "dreamshaper_8"

    @pytest.mark.asyncio
    async def test_empty_prompt_rejected_without_io(self, test_config, backend):
        """An empty prompt fails before contacting the server."""
        async with backend.client(test_config) as client:
            with pytest.raises(InvalidParameter):
                await generate_image(client, GenerationRequest(prompt="   "))

        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_empty_result_propagates(self, test_config, backend):
        """EmptyResult reaches the caller unchanged and the client is reusable."""
        backend.images = []
        async with backend.client(test_config) as client:
            with pytest.raises(EmptyResult):
                await generate_image(client, GenerationRequest(prompt="x"))

            backend.images = [base64.b64encode(_stripe_png()).decode("ascii")]
            result = await generate_image(client, GenerationRequest(prompt="x", seed=2))

        assert result.seed == 2


class TestGenerateMaterial:
    """Material flow: texture plus normal map."""

    @pytest.mark.asyncio
    async def test_material_with_normal_map(self, test_config, backend, temp_dir):
        """The normal map is derived from the first image and saved alongside it."""
        backend.images = [base64.b64encode(_stripe_png()).decode("ascii")]
        async with backend.client(test_config) as client:
            result = await generate_material(
                client,
                GenerationRequest(prompt="cobblestone", tiling=True, seed=5),
                normal_strength=0.5,
                edge_mode="clamp",
            )

        assert result.kind == "material"
        assert result.normal_strength == 0.5
        with Image.open(io.BytesIO(result.normal_map)) as normal:
            row = [normal.getpixel((x, 0)) for x in range(4)]
        assert row == [(128, 128, 255), (70, 128, 242), (70, 128, 242), (128, 128, 255)]

        saved = save_result(result, temp_dir, name="cobble")
        assert saved.image.parent.name == MATERIALS_FOLDER
        assert saved.normal_map.read_bytes() == result.normal_map
        metadata = json.loads(saved.metadata.read_text(encoding="utf-8"))
        assert metadata["seed"] == 5
        assert metadata["tiling"] is True

    @pytest.mark.asyncio
    async def test_default_strength_from_config(self, test_config, backend):
        """Without an explicit strength the configured one is used."""
        test_config.normal_map_strength = 2.0
        async with backend.client(test_config) as client:
            result = await generate_material(client, GenerationRequest(prompt="sand"))

        assert result.normal_strength == 2.0
        assert result.normal_map is not None

    @pytest.mark.asyncio
    async def test_without_normal_map(self, test_config, backend):
        """The normal map can be skipped."""
        async with backend.client(test_config) as client:
            result = await generate_material(
                client, GenerationRequest(prompt="sand"), normal_map=False
            )

        assert result.normal_map is None
        assert result.normal_strength is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strength", [20.0, -1.0, float("nan")])
    async def test_invalid_strength_rejected_without_io(self, test_config, backend, strength):
        """A bad normal map strength fails before txt2img is sent."""
        async with backend.client(test_config) as client:
            with pytest.raises(InvalidParameter):
                await generate_material(
                    client, GenerationRequest(prompt="lava"), normal_strength=strength
                )

        assert backend.paths() == []

    @pytest.mark.asyncio
    async def test_invalid_edge_mode_rejected_without_io(self, test_config, backend):
        """An unknown edge mode fails before txt2img is sent."""
        async with backend.client(test_config) as client:
            with pytest.raises(InvalidParameter):
                await generate_material(
                    client, GenerationRequest(prompt="lava"), edge_mode="mirror"
                )

        assert backend.paths() == []

    @pytest.mark.asyncio
    async def test_strength_ignored_without_normal_map(self, test_config, backend):
        """Normal map settings are not checked when no normal map is built."""
        async with backend.client(test_config) as client:
            result = await generate_material(
                client, GenerationRequest(prompt="lava"), normal_map=False, normal_strength=20.0
            )

        assert result.normal_map is None
        assert [p for p in backend.paths() if p != "/sdapi/v1/progress"] == ["/sdapi/v1/txt2img"]

    @pytest.mark.asyncio
    async def test_progress_forwarded(self, test_config, backend):
        """Progress callbacks reach the caller during a material generation."""
        backend.generation_gate = asyncio.Event()
        backend.progress_values = [0.6]
        seen = []

        async with backend.client(test_config) as client:
            task = asyncio.create_task(
                generate_material(client, GenerationRequest(prompt="ice"), on_progress=seen.append)
            )
            await asyncio.sleep(0.2)
            backend.generation_gate.set()
            await task

        assert seen
        assert seen[0].percent == pytest.approx(60.0)


class TestTransformImage:
    """Image-to-image flow."""

    @pytest.mark.asyncio
    async def test_from_pil_image(self, test_config, backend):
        """A PIL source is encoded and sent as the init image."""
        source = Image.new("RGB", (8, 8), (0, 255, 0))
        async with backend.client(test_config) as client:
            result = await transform_image(
                client,
                source,
                GenerationRequest(prompt="mossy", steps=20, seed=8),
                denoising_strength=0.4,
            )

        body = backend.bodies("/sdapi/v1/img2img")[0]
        sent = Image.open(io.BytesIO(base64.b64decode(body["init_images"][0])))
        assert sent.size == (8, 8)
        assert body["denoising_strength"] == 0.4
        assert body["steps"] == 20
        assert result.kind == "img2img"
        assert result.seed == 8

    @pytest.mark.asyncio
    async def test_from_img2img_request(self, test_config, backend, png_bytes):
        """An Img2ImgRequest keeps its own settings; only the source is replaced."""
        request = Img2ImgRequest(
            prompt="lava", init_image=b"placeholder", denoising_strength=0.2, resize_mode=1
        )
        async with backend.client(test_config) as client:
            await transform_image(client, png_bytes, request)

        body = backend.bodies("/sdapi/v1/img2img")[0]
        assert base64.b64decode(body["init_images"][0]) == png_bytes
        assert body["denoising_strength"] == 0.2
        assert body["resize_mode"] == 1
