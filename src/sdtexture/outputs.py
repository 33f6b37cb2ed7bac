"""Write generation results to disk.

For a result saved under the name ``<name>`` this writes, inside
``<outputs_dir>/<subfolder>/``:

- ``<name>.png``: first generated image (extra batch images get ``_1``,
  ``_2``, ... suffixes)
- ``<name>_normal.png``: normal map, when the result has one
- ``<name>.txt``: the prompt
- ``<name>.json``: generation parameters, seed and timestamp

Files with the same name are overwritten, so regenerating under a fixed name
replaces the previous texture.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from sdtexture.workflows.texture import TextureResult

logger = logging.getLogger(__name__)

IMAGES_FOLDER = "SDImages"
MATERIALS_FOLDER = "SDMaterials"


@dataclass
class SavedFiles:
    """Paths written by :func:`save_result`."""

    images: list[Path] = field(default_factory=list)
    normal_map: Path | None = None
    prompt: Path | None = None
    metadata: Path | None = None

    @property
    def image(self) -> Path:
        return self.images[0]


def default_subfolder(result: TextureResult) -> str:
    """``SDMaterials`` for materials, ``SDImages`` otherwise."""
    return MATERIALS_FOLDER if result.kind == "material" else IMAGES_FOLDER


def save_result(
    result: TextureResult,
    outputs_dir: Path,
    subfolder: str | None = None,
    name: str | None = None,
) -> SavedFiles:
    """Save images, normal map and metadata of a generation.

    Args:
        result: Result of one of the texture flows.
        outputs_dir: Root output directory (created if missing).
        subfolder: Folder inside ``outputs_dir``; defaults to
            :func:`default_subfolder`.
        name: Base file name without extension; a random hex id by default.

    Returns:
        The paths that were written.
    """
    output_dir = Path(outputs_dir) / (subfolder or default_subfolder(result))
    output_dir.mkdir(parents=True, exist_ok=True)
    base_name = name or uuid.uuid4().hex

    saved = SavedFiles()
    for index, data in enumerate(result.response.images):
        suffix = "" if index == 0 else f"_{index}"
        path = output_dir / f"{base_name}{suffix}.png"
        path.write_bytes(data)
        saved.images.append(path)
    logger.info(f"Saved {len(saved.images)} image(s) to: {output_dir}")

    if result.normal_map is not None:
        saved.normal_map = output_dir / f"{base_name}_normal.png"
        saved.normal_map.write_bytes(result.normal_map)
        logger.info(f"Saved normal map to: {saved.normal_map}")

    saved.prompt = output_dir / f"{base_name}.txt"
    saved.prompt.write_text(result.request.prompt, encoding="utf-8")

    metadata = result.metadata()
    metadata["timestamp"] = datetime.now().isoformat()
    metadata["image_path"] = str(saved.image)
    if saved.normal_map is not None:
        metadata["normal_map_path"] = str(saved.normal_map)

    saved.metadata = output_dir / f"{base_name}.json"
    with open(saved.metadata, "w", encoding="utf-8") as f:
        json.dump(metadata, f, indent=2, ensure_ascii=False)
    logger.info(f"Saved metadata to: {saved.metadata}")

    return saved
