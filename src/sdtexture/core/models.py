"""Pydantic data models for the AUTOMATIC1111 generation protocol.

These models define the JSON shapes exchanged with the Stable Diffusion
server: the txt2img/img2img request bodies, the generation response, the
progress report and the checkpoint list.

Models
------
HighresFix
    Optional two-pass ("highres fix") block of a txt2img request.
GenerationRequest
    Payload for ``POST /sdapi/v1/txt2img``.
Img2ImgRequest
    Payload for ``POST /sdapi/v1/img2img`` (adds the source image, resize
    mode and mask parameters).
GenerationInfo / GenerationResponse
    Decoded result of a generation, including the seed the server used.
ProgressJobState / ProgressState
    Body of ``GET /sdapi/v1/progress``.
ModelDescriptor
    One entry of ``GET /sdapi/v1/sd-models``.

Constraint Enforcement
----------------------
Request fields are deliberately *not* declared with ``ge``/``le`` bounds:
values set programmatically may lie outside the documented ranges and are
clamped by :meth:`GenerationRequest.clamped` immediately before
serialisation.  Only values with no safe default (NaN, seeds outside the
signed 64-bit range) raise :class:`~sdtexture.core.errors.InvalidParameter`.
"""

from __future__ import annotations

import base64
import binascii
import io
import json
import logging
import math
from typing import Any, ClassVar, Literal

from PIL import Image
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import EmptyResult, InvalidParameter, MalformedResponse

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Backend constraints.
# ---------------------------------------------------------------------------
MIN_SIDE_LENGTH = 128
MAX_SIDE_LENGTH = 2048
MIN_CFG_SCALE = 1.0
MAX_CFG_SCALE = 30.0
MIN_SAMPLING_STEPS = 1
MAX_SAMPLING_STEPS = 150
MAX_BATCH_SIZE = 8
MAX_BATCH_COUNT = 10

RANDOM_SEED = -1
MAX_SEED = 2**63 - 1

SAMPLERS = [
    "Euler a",
    "Euler",
    "LMS",
    "Heun",
    "DPM2",
    "DPM2 a",
    "DPM++ 2S a",
    "DPM++ 2M",
    "DPM++ SDE",
    "DPM fast",
    "DPM adaptive",
    "LMS Karras",
    "DPM2 Karras",
    "DPM2 a Karras",
    "DPM++ 2S a Karras",
    "DPM++ 2M Karras",
    "DPM++ SDE Karras",
    "DDIM",
    "PLMS",
]

# img2img resize modes, in the order the server numbers them.
RESIZE_MODES = ["Just resize", "Crop and resize", "Resize and fill", "Just resize (latent upscale)"]


def clamp(value, low, high):
    """Clamp ``value`` into ``[low, high]``."""
    return max(low, min(high, value))


def _ensure_finite(name: str, value: float) -> None:
    if not math.isfinite(value):
        raise InvalidParameter(f"{name} must be a finite number, got {value}")


def encode_image(data: bytes) -> str:
    """Base64-encode image bytes for a JSON request body."""
    return base64.b64encode(data).decode("ascii")


def decode_image(data: str) -> bytes:
    """Decode a base64 image string returned by the server.

    Accepts both bare base64 and ``data:image/png;base64,...`` URIs.

    Raises:
        ValueError: If the string is not valid base64
    """
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 image data: {e}") from e


class HighresFix(BaseModel):
    """Two-pass generation settings ("highres fix") for txt2img.

    Attributes:
        enabled: Run the second upscale + re-denoise pass.
        upscaler: Name of the upscaler on the server (empty = server default).
        scale: Upscale factor, ignored when ``resize_x``/``resize_y`` are set.
        resize_x: Target width of the second pass (0 = use ``scale``).
        resize_y: Target height of the second pass (0 = use ``scale``).
        second_pass_steps: Steps of the second pass (0 = same as first pass).
        denoising_strength: How much the second pass may change the image.
    """

    enabled: bool = False
    upscaler: str = ""
    scale: float = 2.0
    resize_x: int = 0
    resize_y: int = 0
    second_pass_steps: int = 0
    denoising_strength: float = 0.75

    def clamped(self) -> HighresFix:
        """Return a copy with every field inside its documented range."""
        _ensure_finite("hr_scale", self.scale)
        _ensure_finite("hr denoising_strength", self.denoising_strength)
        return self.model_copy(
            update={
                "scale": max(1.0, self.scale),
                "resize_x": clamp(self.resize_x, 0, MAX_SIDE_LENGTH),
                "resize_y": clamp(self.resize_y, 0, MAX_SIDE_LENGTH),
                "second_pass_steps": clamp(self.second_pass_steps, 0, MAX_SAMPLING_STEPS),
                "denoising_strength": clamp(self.denoising_strength, 0.0, 1.0),
            }
        )

    def to_payload(self) -> dict[str, Any]:
        """Flatten into the txt2img wire fields."""
        return {
            "enable_hr": self.enabled,
            "hr_upscaler": self.upscaler,
            "hr_scale": self.scale,
            "hr_resize_x": self.resize_x,
            "hr_resize_y": self.resize_y,
            "hr_second_pass_steps": self.second_pass_steps,
            "denoising_strength": self.denoising_strength,
        }


class GenerationRequest(BaseModel):
    """Request body for ``POST /sdapi/v1/txt2img``.

    A request is built fresh for every generation.  Field names follow the
    server schema except ``batch_count`` (wire name ``n_iter``) and
    ``highres`` (flattened into the ``hr_*`` fields).

    Attributes:
        prompt: Text describing the image.
        negative_prompt: Text describing what to avoid.
        styles: Names of server-side prompt styles to apply.
        sampler_name: Sampling method, e.g. ``"Euler a"`` (see ``SAMPLERS``).
        steps: Sampling steps, clamped to 1-150.
        cfg_scale: Classifier-free guidance scale, clamped to 1-30.
        width: Image width in pixels, clamped to 128-2048.
        height: Image height in pixels, clamped to 128-2048.
        seed: Seed, ``-1`` lets the server pick one.
        subseed: Variation seed, ``-1`` for random.
        subseed_strength: Variation strength, clamped to 0-1.
        batch_size: Images per batch, clamped to 1-8.
        batch_count: Number of batches, clamped to 1-10.
        restore_faces: Run face restoration.
        tiling: Produce a seamlessly tiling image.
        highres: Optional highres fix settings.
    """

    kind: ClassVar[Literal["txt2img", "img2img"]] = "txt2img"

    prompt: str = ""
    negative_prompt: str = ""
    styles: list[str] = Field(default_factory=list)
    sampler_name: str = "Euler a"
    steps: int = 50
    cfg_scale: float = 7.0
    width: int = 512
    height: int = 512
    seed: int = RANDOM_SEED
    subseed: int = RANDOM_SEED
    subseed_strength: float = 0.0
    batch_size: int = 1
    batch_count: int = 1
    restore_faces: bool = False
    tiling: bool = False
    highres: HighresFix | None = None

    def clamped(self) -> GenerationRequest:
        """Return a copy with every bounded field clamped into range.

        Raises:
            InvalidParameter: If a value has no safe default (NaN numbers,
                seeds above the signed 64-bit range).
        """
        _ensure_finite("cfg_scale", self.cfg_scale)
        _ensure_finite("subseed_strength", self.subseed_strength)
        for name in ("seed", "subseed"):
            if getattr(self, name) > MAX_SEED:
                raise InvalidParameter(f"{name} must fit in a signed 64-bit integer")

        update: dict[str, Any] = {
            "width": clamp(self.width, MIN_SIDE_LENGTH, MAX_SIDE_LENGTH),
            "height": clamp(self.height, MIN_SIDE_LENGTH, MAX_SIDE_LENGTH),
            "steps": clamp(self.steps, MIN_SAMPLING_STEPS, MAX_SAMPLING_STEPS),
            "cfg_scale": clamp(self.cfg_scale, MIN_CFG_SCALE, MAX_CFG_SCALE),
            "batch_size": clamp(self.batch_size, 1, MAX_BATCH_SIZE),
            "batch_count": clamp(self.batch_count, 1, MAX_BATCH_COUNT),
            "subseed_strength": clamp(self.subseed_strength, 0.0, 1.0),
            # Any negative seed means "random" to the server.
            "seed": max(self.seed, RANDOM_SEED),
            "subseed": max(self.subseed, RANDOM_SEED),
        }
        if self.highres is not None:
            update["highres"] = self.highres.clamped()
        update.update(self._clamped_mode_fields())
        return self.model_copy(update=update)

    def _clamped_mode_fields(self) -> dict[str, Any]:
        return {}

    def check_constraints(self) -> None:
        """Verify that the request lies inside the documented bounds.

        Called on the clamped copy; a failure here means the clamping logic
        and the constants disagree.

        Raises:
            InvalidParameter: If any bounded field is out of range
        """
        checks = [
            ("width", self.width, MIN_SIDE_LENGTH, MAX_SIDE_LENGTH),
            ("height", self.height, MIN_SIDE_LENGTH, MAX_SIDE_LENGTH),
            ("steps", self.steps, MIN_SAMPLING_STEPS, MAX_SAMPLING_STEPS),
            ("cfg_scale", self.cfg_scale, MIN_CFG_SCALE, MAX_CFG_SCALE),
            ("batch_size", self.batch_size, 1, MAX_BATCH_SIZE),
            ("batch_count", self.batch_count, 1, MAX_BATCH_COUNT),
            ("seed", self.seed, RANDOM_SEED, MAX_SEED),
        ]
        for name, value, low, high in checks:
            if not low <= value <= high:
                raise InvalidParameter(f"{name} must be {low}-{high}, got {value}")

    def to_payload(self) -> dict[str, Any]:
        """Clamp, check and serialise into the server's JSON body."""
        request = self.clamped()
        request.check_constraints()
        return request._build_payload()

    def _build_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "styles": list(self.styles),
            "sampler_name": self.sampler_name,
            "steps": self.steps,
            "cfg_scale": self.cfg_scale,
            "width": self.width,
            "height": self.height,
            "seed": self.seed,
            "subseed": self.subseed,
            "subseed_strength": self.subseed_strength,
            "batch_size": self.batch_size,
            "n_iter": self.batch_count,
            "restore_faces": self.restore_faces,
            "tiling": self.tiling,
        }
        if self.highres is not None and self.highres.enabled:
            payload.update(self.highres.to_payload())
        return payload


class Img2ImgRequest(GenerationRequest):
    """Request body for ``POST /sdapi/v1/img2img``.

    Attributes:
        init_image: Encoded source image (PNG/JPEG bytes).
        resize_mode: Index into ``RESIZE_MODES``, clamped to 0-3.
        denoising_strength: How far the result may drift from the source (0-1).
        mask: Optional encoded inpainting mask.  Omitted from the body when
            absent; the server rejects an empty mask string.
        mask_blur: Mask edge blur in pixels.
        inpainting_fill: Masked content fill mode (0-3).
        inpaint_full_res: Inpaint at full resolution.
        inpaint_full_res_padding: Padding around the masked area in pixels.
        inpainting_mask_invert: 1 to inpaint outside the mask.
        initial_noise_multiplier: Multiplier on the initial noise (lower
            values give blurrier results).
        include_init_images: Ask the server to echo the source image back.
    """

    kind: ClassVar[Literal["txt2img", "img2img"]] = "img2img"

    init_image: bytes = Field(..., repr=False)
    resize_mode: int = 0
    denoising_strength: float = 0.75
    mask: bytes | None = Field(default=None, repr=False)
    mask_blur: int = 4
    inpainting_fill: int = 0
    inpaint_full_res: bool = True
    inpaint_full_res_padding: int = 0
    inpainting_mask_invert: int = 0
    initial_noise_multiplier: float = 1.0
    include_init_images: bool = False

    def _clamped_mode_fields(self) -> dict[str, Any]:
        _ensure_finite("denoising_strength", self.denoising_strength)
        _ensure_finite("initial_noise_multiplier", self.initial_noise_multiplier)
        if not self.init_image:
            raise InvalidParameter("img2img requires a source image")
        if self.highres is not None and self.highres.enabled:
            raise InvalidParameter("Highres fix is only available for txt2img")
        return {
            "resize_mode": clamp(self.resize_mode, 0, len(RESIZE_MODES) - 1),
            "denoising_strength": clamp(self.denoising_strength, 0.0, 1.0),
            "mask_blur": max(0, self.mask_blur),
            "inpainting_fill": clamp(self.inpainting_fill, 0, 3),
            "inpaint_full_res_padding": max(0, self.inpaint_full_res_padding),
            "inpainting_mask_invert": clamp(self.inpainting_mask_invert, 0, 1),
            "initial_noise_multiplier": max(0.0, self.initial_noise_multiplier),
        }

    def _build_payload(self) -> dict[str, Any]:
        payload = super()._build_payload()
        payload.update(
            {
                "init_images": [encode_image(self.init_image)],
                "resize_mode": self.resize_mode,
                "denoising_strength": self.denoising_strength,
                "mask_blur": self.mask_blur,
                "inpainting_fill": self.inpainting_fill,
                "inpaint_full_res": self.inpaint_full_res,
                "inpaint_full_res_padding": self.inpaint_full_res_padding,
                "inpainting_mask_invert": self.inpainting_mask_invert,
                "initial_noise_multiplier": self.initial_noise_multiplier,
                "include_init_images": self.include_init_images,
            }
        )
        if self.mask:
            payload["mask"] = encode_image(self.mask)
        return payload


class GenerationInfo(BaseModel):
    """Info block of a generation response.

    Only the commonly used keys are typed; everything else the server sends
    is kept as extra attributes.
    """

    model_config = ConfigDict(extra="allow")

    seed: int | None = None
    all_seeds: list[int] = Field(default_factory=list)
    subseed: int | None = None
    prompt: str | None = None
    negative_prompt: str | None = None
    steps: int | None = None
    cfg_scale: float | None = None
    width: int | None = None
    height: int | None = None
    sampler_name: str | None = None
    sd_model_name: str | None = None


class GenerationResponse(BaseModel):
    """Decoded, immutable result of a txt2img or img2img call.

    Attributes:
        images: Decoded image bytes (PNG), in server order.
        parameters: Request parameters echoed back by the server.
        info: Parsed info block.
        seed: The seed actually used.  Authoritative: when the request asked
            for ``-1`` this is the concrete value the server picked.
    """

    model_config = ConfigDict(frozen=True)

    images: tuple[bytes, ...] = Field(repr=False)
    parameters: dict[str, Any] = Field(default_factory=dict)
    info: GenerationInfo = Field(default_factory=GenerationInfo)
    seed: int

    @classmethod
    def from_payload(cls, payload: Any, requested_seed: int = RANDOM_SEED) -> GenerationResponse:
        """Build a response from the decoded JSON body.

        Args:
            payload: Parsed JSON body of the generation response.
            requested_seed: Seed sent with the request, used when the server
                omits the info seed of a non-random request.

        Raises:
            EmptyResult: If the body contains no images
            MalformedResponse: If the body does not match the expected schema
        """
        if not isinstance(payload, dict):
            raise MalformedResponse(f"Expected a JSON object, got {type(payload).__name__}")

        raw_images = payload.get("images")
        if raw_images is None or raw_images == []:
            raise EmptyResult(
                "No image was returned by the server. Verify that the server is correctly set up."
            )
        if not isinstance(raw_images, list) or not all(isinstance(i, str) for i in raw_images):
            raise MalformedResponse("'images' must be a list of base64 strings")

        try:
            images = tuple(decode_image(i) for i in raw_images)
        except ValueError as e:
            raise MalformedResponse(str(e)) from e

        parameters = payload.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise MalformedResponse("'parameters' must be a JSON object")

        raw_info = payload.get("info") or {}
        if isinstance(raw_info, str):
            try:
                raw_info = json.loads(raw_info)
            except json.JSONDecodeError as e:
                raise MalformedResponse(f"'info' is not valid JSON: {e}") from e
        try:
            info = GenerationInfo.model_validate(raw_info)
        except ValidationError as e:
            raise MalformedResponse(f"Unexpected 'info' block: {e}") from e

        if info.seed is not None:
            seed = info.seed
        elif requested_seed != RANDOM_SEED:
            seed = requested_seed
        else:
            raise MalformedResponse("The server did not report the seed it used")

        return cls(images=images, parameters=parameters, info=info, seed=seed)

    def image(self, index: int = 0) -> Image.Image:
        """Open one of the returned images with PIL."""
        img = Image.open(io.BytesIO(self.images[index]))
        img.load()
        return img


class ProgressJobState(BaseModel):
    """``state`` block of a progress report."""

    model_config = ConfigDict(extra="ignore")

    skipped: bool = False
    interrupted: bool = False
    job: str | None = None
    job_count: int = 0
    job_timestamp: str | None = None
    job_no: int = 0
    sampling_step: int = 0
    sampling_steps: int = 0


class ProgressState(BaseModel):
    """Body of ``GET /sdapi/v1/progress``.

    Attributes:
        progress: Fractional completion, clamped to 0-1.
        eta_relative: Estimated seconds remaining.
        state: Job counters and interrupted/skipped flags.
        current_image: Decoded live preview, if the server sent one.
        textinfo: Human-readable status text.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    progress: float = 0.0
    eta_relative: float = 0.0
    state: ProgressJobState = Field(default_factory=ProgressJobState)
    current_image: bytes | None = Field(default=None, repr=False)
    textinfo: str | None = None

    @field_validator("progress", mode="after")
    @classmethod
    def _clamp_progress(cls, value: float) -> float:
        if not math.isfinite(value):
            return 0.0
        return clamp(value, 0.0, 1.0)

    @field_validator("current_image", mode="before")
    @classmethod
    def _decode_preview(cls, value: Any) -> Any:
        if isinstance(value, str):
            return decode_image(value) if value else None
        return value

    @property
    def interrupted(self) -> bool:
        return self.state.interrupted

    @property
    def skipped(self) -> bool:
        return self.state.skipped

    @property
    def percent(self) -> float:
        """Completion as a percentage (0-100)."""
        return self.progress * 100.0


class ModelDescriptor(BaseModel):
    """One checkpoint from ``GET /sdapi/v1/sd-models``.

    Attributes:
        title: Display title, e.g. ``"v1-5-pruned-emaonly.safetensors [6ce0161689]"``.
        model_name: Internal name used to select the checkpoint.
    """

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    title: str
    model_name: str
    hash: str | None = None
    sha256: str | None = None
    filename: str | None = None
    config: str | None = None
