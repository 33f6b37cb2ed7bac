"""Shared pytest fixtures for sdtexture tests."""

import asyncio
import base64
import io
import json
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import httpx
import pytest
from PIL import Image

from sdtexture.core.client import StableDiffusionClient
from sdtexture.core.config import ServerConfig

SERVER_URL = "http://sd.test:7860"

DEFAULT_MODELS = [
    {
        "title": "v1-5-pruned-emaonly.safetensors [6ce0161689]",
        "model_name": "v1-5-pruned-emaonly",
        "hash": "6ce0161689",
        "sha256": "6ce0161689b3853acaa03779ec93eafe75a02f4ced659bee03f50797806fa2fa",
        "filename": "/models/Stable-diffusion/v1-5-pruned-emaonly.safetensors",
        "config": None,
    },
    {
        "title": "dreamshaper_8.safetensors [879db523c3]",
        "model_name": "dreamshaper_8",
        "hash": "879db523c3",
        "sha256": None,
        "filename": "/models/Stable-diffusion/dreamshaper_8.safetensors",
        "config": None,
    },
]


def make_png(size: tuple[int, int] = (8, 8), color=(200, 120, 40)) -> bytes:
    """Encode a solid-color RGB image as PNG bytes."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeBackend:
    """In-memory AUTOMATIC1111 server served through ``httpx.MockTransport``.

    Attributes:
        requests: Every request received, in order.
        models: Body returned by the models endpoint.
        images: Base64 strings returned by the generation endpoints.
        server_seed: Seed "chosen" by the server when the request sends -1.
        progress_values: Progress fractions returned by successive polls
            (the last one repeats).
        status: Path -> status code overrides, to simulate failures.
        generation_gate: When set, generation requests wait for this event.
        info_as_string: Send ``info`` JSON-encoded, as the real server does.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.models = json.loads(json.dumps(DEFAULT_MODELS))
        self.images = [base64.b64encode(make_png()).decode("ascii")]
        self.server_seed = 3141592653
        self.progress_values = [0.0]
        self.status: dict[str, int] = {}
        self.generation_gate: asyncio.Event | None = None
        self.info_as_string = True
        self.selected_model: str | None = None

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self, config: ServerConfig) -> StableDiffusionClient:
        http = httpx.AsyncClient(transport=self.transport)
        return StableDiffusionClient(config, http_client=http)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def bodies(self, path: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path in self.status:
            return httpx.Response(self.status[path], text=f"simulated failure on {path}")

        if path == "/sdapi/v1/sd-models":
            return httpx.Response(200, json=self.models)

        if path == "/sdapi/v1/options":
            self.selected_model = json.loads(request.content)["sd_model_checkpoint"]
            return httpx.Response(200, json=None)

        if path == "/sdapi/v1/progress":
            values = self.progress_values
            value = values.pop(0) if len(values) > 1 else values[0]
            return httpx.Response(
                200,
                json={
                    "progress": value,
                    "eta_relative": 2.5,
                    "state": {
                        "skipped": False,
                        "interrupted": False,
                        "job": "txt2img",
                        "job_count": 1,
                        "job_timestamp": "20240101000000",
                        "job_no": 0,
                        "sampling_step": int(value * 20),
                        "sampling_steps": 20,
                    },
                    "current_image": None,
                    "textinfo": None,
                },
            )

        if path in ("/sdapi/v1/txt2img", "/sdapi/v1/img2img"):
            if self.generation_gate is not None:
                await self.generation_gate.wait()
            body = json.loads(request.content)
            seed = body["seed"] if body["seed"] != -1 else self.server_seed
            info = {
                "prompt": body["prompt"],
                "negative_prompt": body["negative_prompt"],
                "seed": seed,
                "all_seeds": [seed + i for i in range(body["batch_size"])],
                "subseed": 42,
                "width": body["width"],
                "height": body["height"],
                "sampler_name": body["sampler_name"],
                "cfg_scale": body["cfg_scale"],
                "steps": body["steps"],
                "sd_model_name": self.selected_model,
                "job_timestamp": "20240101000000",
            }
            return httpx.Response(
                200,
                json={
                    "images": self.images,
                    "parameters": body,
                    "info": json.dumps(info) if self.info_as_string else info,
                },
            )

        return httpx.Response(404, json={"detail": "Not Found"})


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> ServerConfig:
    """Create a server configuration pointing at the fake backend.

    The ``.env`` file is ignored and polling is fast so that tests do not
    depend on the developer's environment or wait long.
    """
    return ServerConfig(
        _env_file=None,
        server_url=SERVER_URL,
        poll_interval=0.05,
        outputs_dir=temp_dir / "outputs",
    )


@pytest.fixture
def backend() -> FakeBackend:
    """A fresh fake AUTOMATIC1111 server."""
    return FakeBackend()


@pytest.fixture
def png_bytes() -> bytes:
    """An 8x8 solid-color PNG."""
    return make_png()
