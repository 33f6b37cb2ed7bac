"""sdtexture - Stable Diffusion texture, material and image generation toolkit."""

__version__ = "0.3.0"

from sdtexture.core.client import ClientState, StableDiffusionClient
from sdtexture.core.config import ServerConfig
from sdtexture.core.errors import (
    AlreadyInProgress,
    BackendUnavailable,
    EmptyResult,
    InvalidParameter,
    MalformedResponse,
    SDTextureError,
    Timeout,
)
from sdtexture.core.models import (
    GenerationRequest,
    GenerationResponse,
    HighresFix,
    Img2ImgRequest,
    ModelDescriptor,
    ProgressState,
)
from sdtexture.core.normal_map import normal_map_image, synthesize_normal_map

__all__ = [
    "StableDiffusionClient",
    "ClientState",
    "ServerConfig",
    "GenerationRequest",
    "Img2ImgRequest",
    "HighresFix",
    "GenerationResponse",
    "ProgressState",
    "ModelDescriptor",
    "synthesize_normal_map",
    "normal_map_image",
    "SDTextureError",
    "BackendUnavailable",
    "MalformedResponse",
    "EmptyResult",
    "AlreadyInProgress",
    "Timeout",
    "InvalidParameter",
]
