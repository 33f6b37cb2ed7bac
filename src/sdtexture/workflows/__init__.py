"""Texture generation flows built on the Stable Diffusion client."""

from sdtexture.workflows.texture import (
    TextureResult,
    generate_image,
    generate_material,
    transform_image,
)

__all__ = ["TextureResult", "generate_image", "generate_material", "transform_image"]
