"""Command line front end: ``sdtexture``.

Commands
--------
========  ==========================================================
models    List the checkpoints available on the server
txt2img   Generate an image from a prompt and save it
material  Generate a material texture plus its normal map
img2img   Generate a variation of an existing image
normalmap Build a normal map for a local image (no server needed)
========  ==========================================================

Server settings come from ``SDTEXTURE_*`` environment variables / ``.env``;
``--server-url`` overrides the address for one invocation.
"""

import asyncio
import logging
from pathlib import Path

import click
from PIL import Image, UnidentifiedImageError
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeRemainingColumn
from rich.table import Table

from sdtexture import __version__
from sdtexture.core.client import StableDiffusionClient
from sdtexture.core.config import ServerConfig
from sdtexture.core.errors import SDTextureError
from sdtexture.core.models import SAMPLERS, GenerationRequest, HighresFix
from sdtexture.core.normal_map import normal_map_image
from sdtexture.outputs import save_result
from sdtexture.workflows.texture import generate_image, generate_material, transform_image

console = Console()


def _generation_options(func):
    """Options shared by the generating commands."""
    options = [
        click.argument("prompt"),
        click.option("--negative", "negative_prompt", default="", help="Negative prompt"),
        click.option("--model", "model_name", default=None, help="Checkpoint to select first"),
        click.option("--sampler", default=None, help=f"Sampler (e.g. {', '.join(SAMPLERS[:3])})"),
        click.option("--steps", type=int, default=None, help="Sampling steps (1-150)"),
        click.option("--cfg", "cfg_scale", type=float, default=None, help="CFG scale (1-30)"),
        click.option("--width", "-W", type=int, default=None, help="Width in pixels (128-2048)"),
        click.option("--height", "-H", type=int, default=None, help="Height in pixels (128-2048)"),
        click.option("--seed", type=int, default=None, help="Seed, -1 for random"),
        click.option("--batch-size", type=int, default=1, help="Images per batch (1-8)"),
        click.option("--tiling", is_flag=True, help="Generate a seamlessly tiling image"),
        click.option("--hires", is_flag=True, help="Enable the highres fix second pass"),
        click.option("--name", default=None, help="Base file name for the outputs"),
        click.option(
            "--outputs",
            "outputs_dir",
            type=click.Path(file_okay=False, path_type=Path),
            default=None,
            help="Output directory (default: SDTEXTURE_OUTPUTS_DIR)",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build_request(config: ServerConfig, **kwargs) -> GenerationRequest:
    return GenerationRequest(
        prompt=kwargs["prompt"],
        negative_prompt=kwargs["negative_prompt"],
        sampler_name=kwargs["sampler"] or config.default_sampler,
        steps=kwargs["steps"] if kwargs["steps"] is not None else config.default_steps,
        cfg_scale=(
            kwargs["cfg_scale"] if kwargs["cfg_scale"] is not None else config.default_cfg_scale
        ),
        width=kwargs["width"] or config.default_width,
        height=kwargs["height"] or config.default_height,
        seed=kwargs["seed"] if kwargs["seed"] is not None else config.default_seed,
        batch_size=kwargs["batch_size"],
        tiling=kwargs["tiling"],
        highres=HighresFix(enabled=True) if kwargs["hires"] else None,
    )


async def _run_flow(config: ServerConfig, flow, *args, **kwargs):
    with Progress(
        TextColumn("[bold yellow]Generating"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeRemainingColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("generate", total=100)

        def on_progress(state):
            progress.update(task, completed=state.percent)

        async with StableDiffusionClient(config) as client:
            return await flow(client, *args, on_progress=on_progress, **kwargs)


def _report(result, config: ServerConfig, outputs_dir: Path | None, name: str | None) -> None:
    try:
        saved = save_result(result, outputs_dir or config.outputs_dir, name=name)
    except OSError as e:
        console.print(f"[red]Error: could not save results: {e}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✓ Saved {saved.image}[/green] (seed {result.seed})")
    if saved.normal_map is not None:
        console.print(f"[green]✓ Normal map {saved.normal_map}[/green]")


@click.group()
@click.version_option(version=__version__)
@click.option("--server-url", default=None, help="Stable Diffusion server URL")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, server_url, verbose):
    """Generate textures, materials and images with a Stable Diffusion server."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    overrides = {"server_url": server_url} if server_url else {}
    ctx.obj = ServerConfig(**overrides)


@cli.command()
@click.pass_obj
def models(config: ServerConfig):
    """List the checkpoints available on the server."""

    async def _list():
        async with StableDiffusionClient(config) as client:
            return await client.list_models()

    try:
        found = asyncio.run(_list())
    except SDTextureError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)

    if not found:
        console.print("[yellow]No models found[/yellow]")
        return

    table = Table(title=f"Models on {config.server_url}")
    table.add_column("Model name", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Hash", style="dim")
    for m in found:
        table.add_row(m.model_name, m.title, m.hash or "")
    console.print(table)


@cli.command()
@_generation_options
@click.pass_obj
def txt2img(config: ServerConfig, model_name, name, outputs_dir, **kwargs):
    """Generate an image from PROMPT."""
    request = _build_request(config, **kwargs)
    try:
        result = asyncio.run(_run_flow(config, generate_image, request, model_name=model_name))
    except SDTextureError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)
    _report(result, config, outputs_dir, name)


@cli.command()
@_generation_options
@click.option("--normal-strength", type=float, default=None, help="Normal map strength (0-10)")
@click.option("--no-normal-map", is_flag=True, help="Skip the normal map")
@click.option("--edge-mode", type=click.Choice(["wrap", "clamp"]), default="wrap")
@click.pass_obj
def material(
    config: ServerConfig,
    model_name,
    name,
    outputs_dir,
    normal_strength,
    no_normal_map,
    edge_mode,
    **kwargs,
):
    """Generate a material texture (and normal map) from PROMPT."""
    request = _build_request(config, **kwargs)
    try:
        result = asyncio.run(
            _run_flow(
                config,
                generate_material,
                request,
                model_name=model_name,
                normal_map=not no_normal_map,
                normal_strength=normal_strength,
                edge_mode=edge_mode,
            )
        )
    except SDTextureError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)
    _report(result, config, outputs_dir, name)


@cli.command()
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_generation_options
@click.option("--denoising", type=float, default=0.75, help="Denoising strength (0-1)")
@click.pass_obj
def img2img(config: ServerConfig, source: Path, model_name, name, outputs_dir, denoising, **kwargs):
    """Generate a variation of SOURCE guided by PROMPT."""
    request = _build_request(config, **kwargs)
    try:
        result = asyncio.run(
            _run_flow(
                config,
                transform_image,
                source.read_bytes(),
                request,
                denoising_strength=denoising,
                model_name=model_name,
            )
        )
    except SDTextureError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)
    _report(result, config, outputs_dir, name)


@cli.command()
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path), required=False)
@click.option("--strength", type=float, default=None, help="Normal map strength (0-10)")
@click.option("--edge-mode", type=click.Choice(["wrap", "clamp"]), default="wrap")
@click.pass_obj
def normalmap(config: ServerConfig, source: Path, output: Path | None, strength, edge_mode):
    """Build a normal map for SOURCE (default output: <source>_normal.png)."""
    output = output or source.with_name(f"{source.stem}_normal.png")
    strength = strength if strength is not None else config.normal_map_strength
    try:
        with Image.open(source) as image:
            normal = normal_map_image(image, strength=strength, edge_mode=edge_mode)
        normal.save(output)
    except (SDTextureError, UnidentifiedImageError, OSError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✓ Normal map saved to {output}[/green]")


def main():
    """Entry point for the ``sdtexture`` console script."""
    cli()


if __name__ == "__main__":
    main()
