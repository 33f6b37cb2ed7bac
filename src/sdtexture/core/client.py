"""Async client for the AUTOMATIC1111 Stable Diffusion HTTP API.

This module provides :class:`StableDiffusionClient`, the single point of
control for talking to a generation backend.  One client drives one logical
job at a time, matching the server, which also processes one job at a time.

Key Responsibilities
--------------------
- **Model listing and selection**: ``GET /sdapi/v1/sd-models`` and
  ``POST /sdapi/v1/options``.  Selecting a model lists the available models
  first when the client has none cached.
- **Generation**: clamps and serialises the request, then posts it to
  ``/sdapi/v1/txt2img`` or ``/sdapi/v1/img2img``.
- **Progress**: a :class:`~sdtexture.core.progress.ProgressWatcher` polls
  ``/sdapi/v1/progress`` while the generation is outstanding.  Polling is
  advisory and never aborts the generation.
- **Seed read-back**: the seed the server actually used is read from the
  response info block and exposed as ``GenerationResponse.seed``.
- **Re-entrancy**: the client is a small state machine
  (:class:`ClientState`).  Any model or generation call attempted while the
  client is not idle raises :class:`~sdtexture.core.errors.AlreadyInProgress`
  before touching the network.

Usage
-----
::

    from sdtexture.core.client import StableDiffusionClient
    from sdtexture.core.config import ServerConfig
    from sdtexture.core.models import GenerationRequest

    async with StableDiffusionClient(ServerConfig()) as client:
        response = await client.generate(
            GenerationRequest(prompt="mossy cobblestone, seamless texture", tiling=True),
            model_name="v1-5-pruned-emaonly",
            on_progress=lambda p: print(f"{p.percent:.0f}%"),
        )
        print(response.seed, len(response.images))

See Also
--------
- :mod:`sdtexture.core.models`: request/response schemas and clamping.
- :mod:`sdtexture.workflows.texture`: image/material/img2img flows built on
  this client.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any

import httpx
from pydantic import ValidationError

from .config import ServerConfig
from .errors import (
    AlreadyInProgress,
    BackendUnavailable,
    MalformedResponse,
    SDTextureError,
    Timeout,
)
from .models import GenerationRequest, GenerationResponse, ModelDescriptor, ProgressState
from .progress import ProgressCallback, ProgressWatcher

logger = logging.getLogger(__name__)


class ClientState(str, Enum):
    """What a :class:`StableDiffusionClient` is currently doing."""

    IDLE = "idle"
    MODEL_SELECTING = "model_selecting"
    GENERATING = "generating"
    POLLING = "polling"


class StableDiffusionClient:
    """Drives the generation protocol against one backend.

    Attributes:
        _config (ServerConfig):
            Server address, endpoints, credentials and timeouts.
        _http (httpx.AsyncClient):
            Underlying HTTP client.  Closed by :meth:`aclose` only when the
            client created it itself.
        _state (ClientState):
            Current operation; everything except ``poll_progress`` requires
            ``IDLE``.
        _models (list[ModelDescriptor]):
            Cached result of the last model listing.
        _current_model (str | None):
            Checkpoint last selected through this client.
        _last_progress (ProgressState | None):
            Most recent successfully parsed progress report.
    """

    def __init__(self, config: ServerConfig, http_client: httpx.AsyncClient | None = None) -> None:
        """Initialise the client.

        No network traffic happens here.

        Args:
            config: Server configuration.
            http_client: Optional pre-configured ``httpx.AsyncClient`` (tests
                inject one backed by ``httpx.MockTransport``).
        """
        self._config = config
        self._http = http_client if http_client is not None else httpx.AsyncClient()
        self._owns_http = http_client is None

        self._state = ClientState.IDLE
        self._models: list[ModelDescriptor] = []
        self._current_model: str | None = None
        self._last_progress: ProgressState | None = None

    # -- Properties ---------------------------------------------------------

    @property
    def config(self) -> ServerConfig:
        return self._config

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def models(self) -> list[ModelDescriptor]:
        """Models found by the last listing (empty until listed)."""
        return list(self._models)

    @property
    def current_model(self) -> str | None:
        return self._current_model

    @property
    def progress(self) -> ProgressState | None:
        """Most recent successfully parsed progress report, or None."""
        return self._last_progress

    # -- Lifecycle ----------------------------------------------------------

    async def __aenter__(self) -> StableDiffusionClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this client owns it."""
        if self._owns_http:
            await self._http.aclose()

    # -- Public interface ---------------------------------------------------

    async def list_models(self) -> list[ModelDescriptor]:
        """List the checkpoints available on the server.

        Returns:
            Model descriptors in server order.

        Raises:
            AlreadyInProgress: If another operation is running.
            BackendUnavailable: On transport failure or non-2xx status.
            MalformedResponse: If the body is not an array of model objects.
        """
        self._begin(ClientState.MODEL_SELECTING)
        try:
            return await self._fetch_models()
        finally:
            self._state = ClientState.IDLE

    async def select_model(self, model_name: str) -> None:
        """Make ``model_name`` the active checkpoint on the server.

        Lists the models first if none are cached.  Selecting the checkpoint
        this client already selected is a no-op.

        Raises:
            AlreadyInProgress: If another operation is running.
            BackendUnavailable: On transport failure or non-2xx status; the
                message includes the serialised request body.
            MalformedResponse: If the model listing cannot be parsed.
        """
        self._begin(ClientState.MODEL_SELECTING)
        try:
            await self._select_model(model_name)
        finally:
            self._state = ClientState.IDLE

    async def generate(
        self,
        request: GenerationRequest,
        model_name: str | None = None,
        on_progress: ProgressCallback | None = None,
        timeout: float | None = None,
    ) -> GenerationResponse:
        """Run one txt2img or img2img generation.

        The request is clamped and serialised before any network call.  If
        ``model_name`` is given it is selected first.  While the generation
        POST is outstanding, progress is polled every
        ``config.poll_interval`` seconds and passed to ``on_progress``.

        Args:
            request: ``GenerationRequest`` (txt2img) or ``Img2ImgRequest``.
            model_name: Checkpoint to select before generating.
            on_progress: Called with each successfully parsed progress report.
            timeout: Seconds to wait for the generation response; defaults
                to ``config.generation_timeout`` (None waits indefinitely).

        Returns:
            The decoded response.  ``response.seed`` holds the seed the
            server used, also when the request asked for a random one.

        Raises:
            AlreadyInProgress: If another operation is running.
            InvalidParameter: If the request cannot be made valid by clamping.
            BackendUnavailable: On transport failure or non-2xx status.
            MalformedResponse: If the body or its images cannot be decoded.
            EmptyResult: If the server returned no images.
            Timeout: If no response arrived within the timeout.
        """
        self._begin(ClientState.GENERATING)
        try:
            payload = request.to_payload()

            if model_name is not None:
                self._state = ClientState.MODEL_SELECTING
                await self._select_model(model_name)
                self._state = ClientState.GENERATING

            if request.kind == "txt2img":
                url = self._config.txt2img_url
            else:
                url = self._config.img2img_url
            wait = timeout if timeout is not None else self._config.generation_timeout

            logger.info(
                f"Submitting {request.kind} ({payload['width']}x{payload['height']}, "
                f"{payload['steps']} steps, seed={payload['seed']})."
            )

            self._last_progress = None
            watcher = ProgressWatcher(self.poll_progress, self._config.poll_interval, on_progress)
            watcher.start()
            self._state = ClientState.POLLING
            try:
                response = await asyncio.wait_for(
                    self._request(
                        "POST",
                        url,
                        json_body=payload,
                        timeout=httpx.Timeout(None, connect=self._config.request_timeout),
                    ),
                    wait,
                )
            except Timeout:
                raise
            except asyncio.TimeoutError as e:
                raise Timeout(
                    f"No response from {url} after {wait} seconds; "
                    "the server may still be working on the job"
                ) from e
            finally:
                await watcher.stop()

            result = GenerationResponse.from_payload(
                self._json(response), requested_seed=payload["seed"]
            )
            logger.info(f"Received {len(result.images)} image(s), seed {result.seed}.")
            return result

        except SDTextureError as e:
            logger.error(f"Generation failed: {e}")
            raise
        finally:
            self._state = ClientState.IDLE

    async def poll_progress(self) -> ProgressState:
        """Fetch the server's progress report for the current job.

        Allowed in any client state.  A successfully parsed report also
        becomes the value of :attr:`progress`.

        Raises:
            BackendUnavailable: On transport failure or non-2xx status.
            MalformedResponse: If the body does not match the progress schema.
            Timeout: If the request timed out.
        """
        response = await self._request("GET", self._config.progress_url)
        try:
            state = ProgressState.model_validate(self._json(response))
        except ValidationError as e:
            raise MalformedResponse(f"Unexpected progress body: {e}") from e
        self._last_progress = state
        return state

    # -- Internals ----------------------------------------------------------

    def _begin(self, state: ClientState) -> None:
        if self._state is not ClientState.IDLE:
            raise AlreadyInProgress(
                f"Cannot start {state.value}: client is busy ({self._state.value})"
            )
        self._state = state

    async def _fetch_models(self) -> list[ModelDescriptor]:
        url = self._config.models_url
        payload = self._json(await self._request("GET", url))
        if not isinstance(payload, list):
            raise MalformedResponse(f"Expected a JSON array of models from {url}")
        try:
            models = [ModelDescriptor.model_validate(item) for item in payload]
        except ValidationError as e:
            raise MalformedResponse(f"Unexpected model entry from {url}: {e}") from e

        self._models = models
        logger.info(f"Found {len(models)} model(s) on {self._config.server_url}.")
        return models

    async def _select_model(self, model_name: str) -> None:
        if not self._models:
            await self._fetch_models()

        if model_name == self._current_model:
            logger.info(f"Model '{model_name}' is already selected, skipping.")
            return

        known = {m.model_name for m in self._models} | {m.title for m in self._models}
        if model_name not in known:
            logger.warning(f"Model '{model_name}' is not in the server's model list.")

        body = {"sd_model_checkpoint": model_name}
        try:
            await self._request("POST", self._config.options_url, json_body=body)
        except BackendUnavailable as e:
            serialized = json.dumps(body)
            raise BackendUnavailable(
                f"{e} (request body: {serialized})",
                url=e.url,
                status=e.status,
                body=e.body,
                request_body=serialized,
            ) from e

        self._current_model = model_name
        logger.info(f"Selected model '{model_name}'.")

    async def _request(
        self,
        method: str,
        url: str,
        json_body: dict[str, Any] | None = None,
        timeout: httpx.Timeout | float | None = None,
    ) -> httpx.Response:
        headers = self._config.headers(with_body=json_body is not None)
        if timeout is None:
            timeout = self._config.request_timeout
        try:
            response = await self._http.request(
                method, url, json=json_body, headers=headers, timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise Timeout(f"{method} {url} timed out") from e
        except httpx.HTTPError as e:
            raise BackendUnavailable(f"{method} {url} failed: {e}", url=url) from e

        if not response.is_success:
            raise BackendUnavailable(
                f"{method} {url} returned HTTP {response.status_code}: {response.text}",
                url=url,
                status=response.status_code,
                body=response.text,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponse(f"Response from {response.url} is not valid JSON: {e}") from e
