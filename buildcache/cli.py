"""Thin CLI wrapper for buildcache.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
from pathlib import Path
from typing import Annotated

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from buildcache import __version__
from buildcache.config import Settings, get_settings, print_settings_json
from buildcache.errors import MetadataStoreError
from buildcache.metadata.store import MetadataStore
from buildcache.tiers import TierChain, build_tiers

app = typer.Typer(
    name="buildcache",
    help="Multi-tier build cache for container images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

# Exit codes for the build command
EXIT_FAILED = 1
EXIT_CANCELLED = 2

CacheDirOption = Annotated[
    Path | None,
    typer.Option("--cache-dir", help="Cache directory (overrides BUILDCACHE_CACHE_DIR)"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"buildcache version {__version__}")
        raise typer.Exit()


def _load_settings(cache_dir: Path | None) -> Settings:
    try:
        settings = Settings(cache_dir=cache_dir) if cache_dir is not None else get_settings()
    except ValidationError as e:
        err_console.print(f"[red]Invalid configuration:[/red] {escape(str(e))}")
        raise typer.Exit(code=1) from None
    _configure_logging(settings)
    return settings


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _open_store(settings: Settings) -> MetadataStore:
    try:
        return MetadataStore.from_settings(settings)
    except MetadataStoreError as e:
        console.print(f"[red]Cannot open metadata store: {e}[/red]")
        raise typer.Exit(code=1) from None


def _tier_chain(settings: Settings) -> TierChain:
    from buildcache.docker.client import DockerClient
    from buildcache.docker.registry_api import RegistryAPI

    docker = DockerClient(settings.docker_binary)
    api_url = settings.effective_registry_api_url
    api = RegistryAPI(api_url, timeout=settings.registry_timeout) if api_url else None
    return build_tiers(settings, docker, docker, api)


def _parse_build_args(values: list[str] | None) -> dict[str, str]:
    build_args: dict[str, str] = {}
    for value in values or []:
        name, sep, arg = value.partition("=")
        if not sep or not name:
            raise typer.BadParameter(
                f"expected KEY=VALUE, got {value!r}", param_hint="--build-arg"
            )
        build_args[name] = arg
    return build_args


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Buildcache - multi-tier build cache for container images."""


@app.command()
def config(
    cache_dir: CacheDirOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show effective configuration."""
    settings = _load_settings(cache_dir)
    if json_output:
        console.print_json(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Metadata URL:        {settings.metadata_url}")
        console.print()
        console.print("[bold]Tiers:[/bold]")
        console.print(f"  Order:               {', '.join(t.value for t in settings.tiers)}")
        console.print(f"  Registry:            {settings.registry_url or '(disabled)'}")
        console.print(f"  Repository:          {settings.registry_repository}")
        console.print(f"  Native cache:        {settings.enable_native_cache}")
        console.print()
        console.print("[bold]Hashing:[/bold]")
        console.print(f"  Key length:          {settings.key_length}")
        console.print(f"  Excluded dirs:       {', '.join(settings.hash_exclude)}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Max builds:          {settings.max_concurrent_builds}")
        console.print(f"  Retention (keep):    {settings.retention_keep}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Transfer timeout:    {settings.transfer_timeout}")
        console.print(f"  Registry timeout:    {settings.registry_timeout}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")


@app.command()
def key(
    context: Annotated[Path, typer.Argument(help="Build context directory")],
    file: Annotated[
        Path | None,
        typer.Option("--file", "-f", help="Build definition (default: <context>/Dockerfile)"),
    ] = None,
    build_arg: Annotated[
        list[str] | None,
        typer.Option("--build-arg", help="Build argument KEY=VALUE (can be repeated)"),
    ] = None,
    target: Annotated[
        str | None,
        typer.Option("--target", help="Target build stage"),
    ] = None,
    platform: Annotated[
        str | None,
        typer.Option("--platform", help="Target platform, e.g. linux/amd64"),
    ] = None,
    dependency: Annotated[
        list[str] | None,
        typer.Option("--dep", help="Cache key of an upstream build (can be repeated)"),
    ] = None,
    cache_dir: CacheDirOption = None,
    json_output: JsonOption = False,
) -> None:
    """Print the cache key for build inputs without building."""
    from buildcache.builds.cache_key import BuildInputs, compute_cache_key

    settings = _load_settings(cache_dir)
    inputs = BuildInputs(
        definition_path=file or context / "Dockerfile",
        context_path=context,
        build_args=_parse_build_args(build_arg),
        target=target,
        platform=platform,
    )
    cache_key = compute_cache_key(inputs, dependency or (), settings=settings)

    if json_output:
        console.print_json(data={"cache_key": cache_key, "inputs": inputs.to_dict()})
    else:
        console.print(cache_key)


@app.command()
def build(
    context: Annotated[Path, typer.Argument(help="Build context directory")],
    tag: Annotated[str, typer.Option("--tag", "-t", help="Name of the resulting image")],
    file: Annotated[
        Path | None,
        typer.Option("--file", "-f", help="Build definition (default: <context>/Dockerfile)"),
    ] = None,
    build_arg: Annotated[
        list[str] | None,
        typer.Option("--build-arg", help="Build argument KEY=VALUE (can be repeated)"),
    ] = None,
    target: Annotated[
        str | None,
        typer.Option("--target", help="Target build stage"),
    ] = None,
    platform: Annotated[
        str | None,
        typer.Option("--platform", help="Target platform, e.g. linux/amd64"),
    ] = None,
    dependency: Annotated[
        list[str] | None,
        typer.Option("--dep", help="Cache key of an upstream build (can be repeated)"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", help="Rebuild even if cached"),
    ] = False,
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", help="Deadline for the whole request in seconds"),
    ] = None,
    cache_dir: CacheDirOption = None,
    json_output: JsonOption = False,
) -> None:
    """Reuse a cached image or build it and store it in every tier.

    Exits 0 on success or cache hit, 1 if the build failed and 2 if the
    request was cancelled.
    """
    from buildcache.builds.cache_key import BuildInputs
    from buildcache.builds.service import create_orchestrator
    from buildcache.types import Deadline, RequestState

    settings = _load_settings(cache_dir)
    definition = file or context / "Dockerfile"
    if not context.is_dir():
        console.print(f"[red]Context directory not found: {context}[/red]")
        raise typer.Exit(code=EXIT_FAILED)
    if not definition.is_file():
        console.print(f"[red]Build definition not found: {definition}[/red]")
        raise typer.Exit(code=EXIT_FAILED)

    inputs = BuildInputs(
        definition_path=definition,
        context_path=context,
        build_args=_parse_build_args(build_arg),
        target=target,
        platform=platform,
    )
    store = _open_store(settings)
    try:
        orchestrator = create_orchestrator(settings, metadata=store)
        result = orchestrator.execute(
            inputs,
            tag,
            dependencies=dependency or (),
            deadline=Deadline(timeout),
            force_rebuild=force,
        )
    finally:
        store.close()

    if json_output:
        console.print_json(data=result.to_dict())
    elif result.success and result.cached:
        console.print(
            f"[green]✓ Cache hit ({result.tier.value if result.tier else '?'}): "
            f"{result.image_name}[/green]"
        )
        console.print(f"  Cache key: {result.cache_key}")
    elif result.success:
        console.print(f"[green]✓ Built {result.image_name}[/green]")
        console.print(f"  Cache key: {result.cache_key}")
        console.print(f"  Build time: {result.build_ms}ms")
        for tier_name, stored in result.store_results.items():
            mark = "[green]stored[/green]" if stored else "[yellow]not stored[/yellow]"
            console.print(f"  {tier_name}: {mark}")
    else:
        console.print(f"[red]✗ {result.state.value}: {result.error_message}[/red]")

    if result.state == RequestState.CANCELLED:
        raise typer.Exit(code=EXIT_CANCELLED)
    if not result.success:
        raise typer.Exit(code=EXIT_FAILED)


@app.command()
def stats(
    cache_dir: CacheDirOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show what the cache holds."""
    from buildcache.builds.retention import format_bytes, get_cache_stats

    settings = _load_settings(cache_dir)
    store = _open_store(settings)
    try:
        info = get_cache_stats(store)
    except MetadataStoreError as e:
        console.print(f"[red]Failed to read metadata: {e}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        store.close()

    if json_output:
        output = info.to_dict()
        output["cache_dir"] = str(settings.cache_dir)
        console.print_json(data=output)
    else:
        console.print("[bold]Cache Statistics:[/bold]")
        console.print()
        console.print(f"  Cache directory: {settings.cache_dir}")
        console.print(f"  Entries: {info.entries}")
        console.print(
            f"  Total size: {format_bytes(info.total_size_bytes)} "
            f"({info.total_size_bytes} bytes)"
        )
        oldest = info.oldest_entry.isoformat() if info.oldest_entry else "N/A"
        console.print(f"  Oldest entry: {oldest}")
        for tier_name, count in sorted(info.locations.items()):
            console.print(f"  In {tier_name}: {count}")


@app.command()
def clear(
    cache_dir: CacheDirOption = None,
    json_output: JsonOption = False,
) -> None:
    """Remove every cached artifact and reset the metadata."""
    from buildcache.builds.retention import clear_cache

    settings = _load_settings(cache_dir)
    store = _open_store(settings)
    try:
        result = clear_cache(store, _tier_chain(settings))
    except MetadataStoreError as e:
        console.print(f"[red]Failed to clear cache: {e}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        store.close()

    if json_output:
        output = {
            "entries_removed": result.entries_removed,
            "artifacts_removed": result.artifacts_removed,
        }
        console.print_json(data=output)
    else:
        console.print(
            f"[green]✓ Cleared {result.entries_removed} cache entries "
            f"({result.artifacts_removed} artifacts removed)[/green]"
        )


@app.command()
def prune(
    keep: Annotated[
        int | None,
        typer.Option("--keep", "-k", min=0, help="Entries to keep (default: retention_keep)"),
    ] = None,
    cache_dir: CacheDirOption = None,
    json_output: JsonOption = False,
) -> None:
    """Keep the newest entries and remove the rest."""
    from buildcache.builds.retention import prune_cache

    settings = _load_settings(cache_dir)
    limit = settings.retention_keep if keep is None else keep
    store = _open_store(settings)
    try:
        result = prune_cache(store, _tier_chain(settings), limit)
    except MetadataStoreError as e:
        console.print(f"[red]Failed to prune cache: {e}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        store.close()

    if json_output:
        output = {
            "keep": limit,
            "kept": result.kept,
            "pruned": result.pruned,
            "artifacts_removed": result.artifacts_removed,
        }
        console.print_json(data=output)
    elif not result.pruned:
        console.print(f"[yellow]Nothing to prune ({len(result.kept)}/{limit} entries)[/yellow]")
    else:
        console.print(f"[bold]Pruned {len(result.pruned)} entr(y/ies):[/bold]")
        for cache_key in result.pruned:
            console.print(f"  - {cache_key}")


@app.command()
def entries(
    cache_dir: CacheDirOption = None,
    json_output: JsonOption = False,
) -> None:
    """List cached entries, oldest first."""
    from buildcache.builds.retention import format_bytes

    settings = _load_settings(cache_dir)
    store = _open_store(settings)
    try:
        all_entries = store.all()
        locations = {k: store.locations(k) for k in all_entries}
    except MetadataStoreError as e:
        console.print(f"[red]Failed to read metadata: {e}[/red]")
        raise typer.Exit(code=1) from None
    finally:
        store.close()

    if not all_entries:
        if json_output:
            console.print_json(data=[])
        else:
            console.print("[yellow]No cache entries found[/yellow]")
        return

    if json_output:
        output = []
        for cache_key, entry in all_entries.items():
            item = entry.to_dict()
            item["cache_key"] = cache_key
            item["locations"] = {r.tier.value: r.locator for r in locations[cache_key]}
            output.append(item)
        console.print_json(data=output)
    else:
        console.print(f"[bold]Found {len(all_entries)} cache entr(y/ies):[/bold]")
        console.print()
        for cache_key, entry in all_entries.items():
            console.print(f"  [blue]{cache_key}[/blue] {entry.image_name}")
            console.print(f"    Created: {entry.created_at.isoformat()}")
            console.print(f"    Size: {format_bytes(entry.size_bytes)}")
            console.print(f"    Build time: {entry.build_duration_ms}ms")
            tiers = ", ".join(r.tier.value for r in locations[cache_key]) or "N/A"
            console.print(f"    Tiers: {tiers}")
            console.print()


if __name__ == "__main__":
    app()
