"""Core functionality for talking to a Stable Diffusion server.

This package provides the building blocks of the toolkit:

- **ServerConfig**: server address, endpoints, credentials and defaults
  (Pydantic Settings, ``SDTEXTURE_`` environment prefix)
- **StableDiffusionClient**: async client for the AUTOMATIC1111 HTTP API
- **Models**: request, response, progress and checkpoint schemas
- **ProgressWatcher**: background progress polling during a generation
- **Normal maps**: tangent-space normal maps from color textures

Architecture Overview
---------------------
1. **Configuration Layer** (config.py):
   - Environment-based configuration using Pydantic Settings
   - Memoised basic-auth header

2. **Protocol Layer** (models.py, client.py, progress.py):
   - Clamped, serialisable request models
   - One job at a time per client, enforced by a small state machine
   - Advisory progress polling alongside the generation request

3. **Image Processing** (normal_map.py):
   - Sobel-like gradient filter over a texture, vectorised with numpy

See Also
--------
- sdtexture.workflows: image, material and img2img flows
- sdtexture.outputs: writing results to disk
"""

from sdtexture.core.client import ClientState, StableDiffusionClient
from sdtexture.core.config import ServerConfig
from sdtexture.core.progress import ProgressWatcher

__all__ = [
    "ClientState",
    "StableDiffusionClient",
    "ServerConfig",
    "ProgressWatcher",
]
