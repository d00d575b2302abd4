"""CLI entry point for chartfork."""

from __future__ import annotations

import json
import logging
import sys

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from chartfork import __version__
from chartfork.config import Settings
from chartfork.errors import ChartforkError
from chartfork.package import Package, list_packages

console = Console()


def configure_logging(level: str) -> None:
    """Route log records through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _resolve_packages(settings: Settings, names: tuple[str, ...]) -> list[str]:
    if names:
        return list(names)
    packages = list_packages(settings.repo_root)
    if not packages:
        console.print(f"[yellow]No packages found in {settings.packages_path}[/yellow]")
    return packages


def _load(settings: Settings, name: str) -> Package:
    try:
        return Package.load(settings.repo_root, name)
    except ChartforkError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--repo-root",
    type=click.Path(file_okay=False),
    envvar="CHARTFORK_REPO_ROOT",
    help="Repository root containing packages/ (default: current directory)",
)
@click.option("--log-level", default="info", help="Log level")
@click.pass_context
def cli(ctx: click.Context, repo_root: str | None, log_level: str):
    """chartfork - maintain forked Helm charts as upstream + replayable patches."""
    configure_logging(log_level)
    ctx.obj = Settings.load(repo_root)


@cli.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def list_command(settings: Settings, as_json: bool):
    """List packages and their charts."""
    rows = []
    for name in list_packages(settings.repo_root):
        try:
            package = Package.load(settings.repo_root, name)
        except ChartforkError as e:
            rows.append({"package": name, "error": str(e)})
            continue
        upstream = package.chart.upstream
        rows.append(
            {
                "package": name,
                "version": package.version,
                "working_dir": package.chart.working_dir,
                "upstream": str(upstream) if upstream else "",
                "additional_charts": [c.working_dir for c in package.additional_charts],
            }
        )

    if as_json:
        console.print(
            json.dumps(rows, indent=2, ensure_ascii=False),
            markup=False,
            soft_wrap=True,
        )
        return

    table = Table(title="Packages")
    table.add_column("Package", style="cyan")
    table.add_column("Version")
    table.add_column("Working Dir")
    table.add_column("Upstream")
    table.add_column("Additional Charts")
    for row in rows:
        if "error" in row:
            table.add_row(row["package"], "", "", f"[red]{escape(row['error'])}[/red]", "")
            continue
        table.add_row(
            row["package"],
            row["version"],
            row["working_dir"],
            escape(row["upstream"]),
            ", ".join(row["additional_charts"]),
        )
    console.print(table)


@cli.command()
@click.argument("packages", nargs=-1)
@click.pass_obj
def prepare(settings: Settings, packages: tuple[str, ...]):
    """Pull upstream charts and apply local changes.

    Prepares every package when none is named.

    Examples:
        chartfork prepare rancher-monitoring
    """
    failed = False
    for name in _resolve_packages(settings, packages):
        package = _load(settings, name)
        try:
            package.prepare()
        except ChartforkError as e:
            console.print(f"[red]✗ {name}: {escape(str(e))}[/red]")
            failed = True
            continue
        console.print(f"[green]✓ Prepared {name}[/green]")
    if failed:
        sys.exit(1)


@cli.command()
@click.argument("package_name")
@click.pass_obj
def patch(settings: Settings, package_name: str):
    """Save local edits of a prepared package as generated changes."""
    package = _load(settings, package_name)
    try:
        package.generate_patch()
    except ChartforkError as e:
        console.print(f"[red]✗ {package_name}: {escape(str(e))}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Generated patch for {package_name}[/green]")


@cli.command()
@click.argument("packages", nargs=-1)
@click.pass_obj
def clean(settings: Settings, packages: tuple[str, ...]):
    """Remove working directories of packages."""
    failed = False
    for name in _resolve_packages(settings, packages):
        package = _load(settings, name)
        try:
            package.clean()
        except ChartforkError as e:
            console.print(f"[red]✗ {name}: {escape(str(e))}[/red]")
            failed = True
            continue
        console.print(f"[green]✓ Cleaned {name}[/green]")
    if failed:
        sys.exit(1)


@cli.command()
@click.argument("packages", nargs=-1)
@click.option("--assets-dir", default=None, help="Directory for chart archives")
@click.option("--charts-dir", default=None, help="Directory for unpacked charts")
@click.pass_obj
def charts(
    settings: Settings,
    packages: tuple[str, ...],
    assets_dir: str | None,
    charts_dir: str | None,
):
    """Export prepared packages as versioned charts."""
    assets_dir = assets_dir or settings.assets_dir
    charts_dir = charts_dir or settings.charts_dir
    failed = False
    for name in _resolve_packages(settings, packages):
        package = _load(settings, name)
        try:
            archives = package.generate_charts(assets_dir, charts_dir)
        except ChartforkError as e:
            console.print(f"[red]✗ {name}: {escape(str(e))}[/red]")
            failed = True
            continue
        for archive in archives:
            console.print(f"[green]✓ {escape(str(archive))}[/green]")
    if failed:
        sys.exit(1)


@cli.command()
@click.argument("package_name")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def show(settings: Settings, package_name: str, as_json: bool):
    """Print a package's options as chartfork understands them."""
    package = _load(settings, package_name)
    data = package.options.to_dict()
    if package.chart.upstream is not None:
        data.update(package.chart.upstream.get_options().to_dict())

    if as_json:
        console.print(
            json.dumps(data, indent=2, ensure_ascii=False),
            markup=False,
            soft_wrap=True,
        )
    else:
        console.print(
            yaml.safe_dump(data, sort_keys=False),
            end="",
            markup=False,
            soft_wrap=True,
        )


def main():
    cli()


if __name__ == "__main__":
    main()
