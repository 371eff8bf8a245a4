"""Main CLI entry point for flashcache.

Provides commands for installs, cache maintenance, snapshots and remote
cache synchronization.
"""

import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from flashcache.cache import LocalCacheStore
from flashcache.cloud import CloudSync, SyncDirection
from flashcache.config import DEFAULT_CONFIG_PATH, FlashConfig
from flashcache.errors import FlashError, log_error, wrap_exception
from flashcache.fallback import FallbackOptions, FallbackResolver
from flashcache.installer import Installer
from flashcache.snapshot import SnapshotManager
from flashcache.utils import format_size

# Global console for Rich output
console = Console()


def load_config(config_path: Optional[str], cache_dir: Optional[str]) -> FlashConfig:
    """Build configuration from file, environment and flags.

    Priority (highest first):
    1. --cache-dir flag
    2. FLASHCACHE_* environment variables that are set
    3. Config file (--config or ~/.flashcache/config.json)
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    config = FlashConfig.from_env(base=FlashConfig.load(path))
    if cache_dir:
        config.cache.cache_dir = Path(cache_dir).expanduser()
    return config


def fail(error: BaseException) -> None:
    """Report a fatal error and exit non-zero."""
    error = wrap_exception(error)
    log_error(error)
    console.print(f"[red]✗[/red] Error: {error}", style="red")
    sys.exit(1)


@click.group()
@click.option(
    "--cache-dir",
    type=click.Path(),
    help="Cache root (default: ~/.flashcache/cache or FLASHCACHE_CACHE_DIR)",
)
@click.option("--config", "config_path", type=click.Path(), help="Path to a JSON config file")
@click.option("--verbose", "-v", is_flag=True, help="Show debug output")
@click.pass_context
def cli(ctx, cache_dir, config_path, verbose):
    """flashcache - fast, cache-backed dependency installs."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config"] = load_config(config_path, cache_dir)


def _store(ctx) -> LocalCacheStore:
    if "store" not in ctx.obj:
        ctx.obj["store"] = LocalCacheStore(ctx.obj["config"].cache)
    return ctx.obj["store"]


# ==================== Install ====================


@cli.command()
@click.argument("project_dir", type=click.Path(file_okay=False), default=".")
@click.option("--offline", is_flag=True, help="Never use the network")
@click.option("--no-snapshot", is_flag=True, help="Ignore an existing snapshot")
@click.option("--snapshot", "create_snapshot", is_flag=True, help="Write a snapshot afterwards")
@click.option("--sync", is_flag=True, help="Upload new packages to the remote cache afterwards")
@click.pass_context
def install(ctx, project_dir, offline, no_snapshot, create_snapshot, sync):
    """Install a project's dependencies into node_modules.

    Example:
        flashcache install ./my-app
        flashcache install --offline
    """
    config = ctx.obj["config"]
    try:
        installer = Installer(config, store=_store(ctx))
        report = installer.install(
            project_dir,
            offline=True if offline else None,
            use_snapshot=not no_snapshot,
            create_snapshot=create_snapshot,
        )
    except (FlashError, OSError) as e:
        fail(e)

    summary = report.summary()
    if report.ok:
        console.print(
            f"[green]✓[/green] Installed {summary['total']} packages "
            f"from {report.mode} in {report.duration:.2f}s"
        )
    else:
        console.print(f"[red]✗[/red] {summary['failed']} of {summary['total']} packages failed")

    if report.mode == "packages":
        console.print(
            f"  Cache: {summary['cache']}  Registry: {summary['registry']}  "
            f"Fallback: {summary['fallback']}"
        )
        substitutes = [
            p for p in report.packages if p.ok and p.resolved_version not in (None, p.version)
        ]
        for package in substitutes:
            console.print(
                f"  [yellow]![/yellow] {package.name}@{package.resolved_version} "
                f"used for {package.version} ({package.source})"
            )
        for package in report.failed:
            console.print(f"  [red]✗[/red] {package.name}@{package.version}: {package.error}")

    if sync and config.cloud.enabled and report.ok:
        _run_sync(ctx, SyncDirection.UPLOAD, force=False, project_dir=project_dir)

    if not report.ok:
        sys.exit(1)


# ==================== Cache Commands ====================


@cli.group()
def cache():
    """Inspect and maintain the local cache."""
    pass


@cache.command("stats")
@click.pass_context
def cache_stats(ctx):
    """Show cache statistics."""
    try:
        stats = _store(ctx).stats()
    except (FlashError, OSError) as e:
        fail(e)

    table = Table(title="Cache Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")
    table.add_row("Location", stats["cache_dir"])
    table.add_row("Packages", str(stats["total_items"]))
    table.add_row("Dependency trees", str(stats["trees"]))
    table.add_row("Size", format_size(stats["total_size_bytes"]))
    table.add_row("Hits", str(stats["cache_hits"]))
    table.add_row("Misses", str(stats["cache_misses"]))
    table.add_row("Hit rate", f"{stats['cache_hit_rate']:.1%}")
    table.add_row("Integrity failures", str(stats.get("integrity_failures", 0)))
    table.add_row("Evictions", str(stats.get("evictions", 0)))
    console.print(table)


@cache.command("clean")
@click.option("--max-age", type=float, help="Remove entries older than this many days")
@click.option("--max-size", type=int, help="Then shrink below this many bytes")
@click.pass_context
def cache_clean(ctx, max_age, max_size):
    """Remove old entries, oldest first."""
    try:
        report = _store(ctx).clean(max_age_days=max_age, max_size_bytes=max_size)
    except (FlashError, OSError) as e:
        fail(e)

    console.print(
        f"[green]✓[/green] Removed {len(report.removed)} packages and "
        f"{report.trees_removed} trees, freed {format_size(report.freed_bytes)}"
    )


@cache.command("verify")
@click.pass_context
def cache_verify(ctx):
    """Verify every entry and remove corrupted ones."""
    try:
        results = _store(ctx).verify_all()
    except (FlashError, OSError) as e:
        fail(e)

    console.print(f"[green]✓[/green] {len(results['valid'])} entries valid")
    if results["invalid"]:
        console.print(f"[yellow]Removed {len(results['invalid'])} invalid entries:[/yellow]")
        for key in results["invalid"]:
            console.print(f"  - {key}")


@cache.command("clear")
@click.confirmation_option(prompt="Remove every cached package?")
@click.pass_context
def cache_clear(ctx):
    """Remove every cached package and tree."""
    try:
        _store(ctx).clear_all()
    except (FlashError, OSError) as e:
        fail(e)
    console.print("[green]✓[/green] Cache cleared")


# ==================== Snapshot Commands ====================


@cli.group()
@click.pass_context
def snapshot(ctx):
    """Create, restore and check project snapshots."""
    ctx.obj["snapshots"] = SnapshotManager(ctx.obj["config"].snapshot, store=_store(ctx))


@snapshot.command("create")
@click.argument("project_dir", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--output", "-o", type=click.Path(), help="Snapshot path (default: <project>/.flashpack)")
@click.option("--format", "fmt", type=click.Choice(["tar", "tar.gz", "zip"]), help="Archive format")
@click.option("--level", type=click.IntRange(0, 9), help="Compression level")
@click.pass_context
def snapshot_create(ctx, project_dir, output, fmt, level):
    """Archive node_modules with a validity fingerprint.

    Example:
        flashcache snapshot create ./my-app --format zip
    """
    try:
        snap = ctx.obj["snapshots"].create(
            project_dir, output=output, format=fmt, compression_level=level
        )
    except (FlashError, OSError) as e:
        fail(e)

    console.print(f"[green]✓[/green] Created snapshot {snap.path}")
    console.print(f"  Packages: {snap.package_count}")
    console.print(f"  Size: {format_size(snap.size_bytes)}")
    console.print(f"  Format: {snap.format.value}{' (native)' if snap.native else ''}")


@snapshot.command("restore")
@click.argument("project_dir", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--snapshot", "snapshot_path", type=click.Path(exists=True), help="Snapshot to restore")
@click.option("--force", is_flag=True, help="Restore even if the fingerprint does not match")
@click.pass_context
def snapshot_restore(ctx, project_dir, snapshot_path, force):
    """Replace node_modules with the contents of a snapshot."""
    manager = ctx.obj["snapshots"]
    valid, reason = manager.check(project_dir, snapshot_path=snapshot_path)
    if not valid and not force:
        console.print(f"[red]✗[/red] Snapshot is not valid for this project: {reason}")
        console.print("  Use --force to restore anyway")
        sys.exit(1)

    try:
        result = manager.restore(project_dir, snapshot_path)
    except (FlashError, OSError) as e:
        fail(e)
    console.print(f"[green]✓[/green] Restored {result.path} in {result.duration:.2f}s")


@snapshot.command("check")
@click.argument("project_dir", type=click.Path(exists=True, file_okay=False), default=".")
@click.option("--snapshot", "snapshot_path", type=click.Path(), help="Snapshot to check")
@click.pass_context
def snapshot_check(ctx, project_dir, snapshot_path):
    """Check whether a snapshot matches the project."""
    valid, reason = ctx.obj["snapshots"].check(project_dir, snapshot_path=snapshot_path)
    if valid:
        console.print("[green]✓[/green] Snapshot is valid")
    else:
        console.print(f"[yellow]Snapshot is not valid:[/yellow] {reason}")
        sys.exit(1)


# ==================== Cloud Commands ====================


@cli.group()
def cloud():
    """Synchronize with the shared remote cache."""
    pass


def _run_sync(ctx, direction: SyncDirection, force: bool, project_dir: Optional[str] = None):
    cloud_config = ctx.obj["config"].cloud
    # the project being worked on is the one whose lockfile is watched
    if project_dir is not None:
        cloud_config = replace(cloud_config, project_dir=Path(project_dir))
    elif cloud_config.project_dir is None:
        cloud_config = replace(cloud_config, project_dir=Path.cwd())
    sync = CloudSync.create(cloud_config, _store(ctx))
    report = sync.sync_cache(direction, force=force)

    counts = report.summary()
    table = Table(title=f"Cache sync ({report.direction.value})")
    table.add_column("Result", style="cyan")
    table.add_column("Count", justify="right", style="green")
    for label, count in counts.items():
        table.add_row(label.capitalize(), str(count))
    console.print(table)

    for outcome in report.outcomes:
        if outcome.error is not None:
            console.print(f"  [red]✗[/red] {outcome.key}: {outcome.error}")
    return report


@cloud.command("sync")
@click.option(
    "--direction",
    type=click.Choice([d.value for d in SyncDirection]),
    default=SyncDirection.BOTH.value,
    help="Which way to transfer",
)
@click.option("--force", is_flag=True, help="Transfer even when the other side has the object")
@click.option(
    "--project",
    "project_dir",
    type=click.Path(file_okay=False),
    help="Project whose lockfile changes invalidate the remote cache",
)
@click.pass_context
def cloud_sync(ctx, direction, force, project_dir):
    """Reconcile the local cache with the remote cache.

    Example:
        FLASHCACHE_CLOUD_PROVIDER=s3 FLASHCACHE_CLOUD_BUCKET=team-cache flashcache cloud sync
    """
    if not ctx.obj["config"].cloud.enabled:
        console.print("[yellow]Remote cache is not configured[/yellow]")
        console.print("  Set FLASHCACHE_CLOUD_PROVIDER and FLASHCACHE_CLOUD_BUCKET")
        sys.exit(1)

    try:
        report = _run_sync(ctx, SyncDirection(direction), force, project_dir)
    except (FlashError, OSError) as e:
        fail(e)

    if report.failed or report.denied:
        sys.exit(1)


# ==================== Resolve ====================


@cli.command()
@click.argument("name")
@click.argument("version_spec")
@click.option("--project", "project_dir", type=click.Path(file_okay=False), default=".")
@click.option("--exact", is_flag=True, help="Do not offer substitute versions")
@click.pass_context
def resolve(ctx, name, version_spec, project_dir, exact):
    """Find a local copy of a package as an offline install would.

    Example:
        flashcache resolve lodash "^4.17.0"
    """
    try:
        store = _store(ctx)
        resolver = FallbackResolver(
            store, SnapshotManager(ctx.obj["config"].snapshot, store=store)
        )
        options = FallbackOptions(
            allow_version_fallback=not exact,
            project_dir=Path(project_dir),
            offline=True,
        )
        result = resolver.resolve(name, version_spec, options)
    except (FlashError, OSError) as e:
        fail(e)

    if not result.found:
        console.print(f"[red]✗[/red] No local copy of {name}@{version_spec}")
        sys.exit(1)

    marker = "[green]✓[/green]" if result.exact else "[yellow]![/yellow]"
    console.print(f"{marker} {name}@{result.version} from {result.source}")
    console.print(f"  Path: {result.path}")


if __name__ == "__main__":
    cli()
