#!/usr/bin/env python3
# main.py
import asyncio
import json
import logging
import sys
from pathlib import Path

import click

from image_rewriter.advisor import Advisor
from image_rewriter.catalog import CatalogVerifier
from image_rewriter.chainctl import ChainctlClient
from image_rewriter.config import CONFIG_FILENAME, ConfigError, apply_overrides, load_config
from image_rewriter.converter import DockerfileConverter
from image_rewriter.coverage import CoverageMatcher
from image_rewriter.models import CATEGORY_FROM, CATEGORY_RUN
from image_rewriter.remediation import RemediationCache
from image_rewriter.scan_cache import ScanResultCache, format_scan_result

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


# --- Helper Functions ---
def _read_dockerfile(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        click.secho(f"Error: could not read {path}: {e}", fg="red", err=True)
        sys.exit(1)


def _build_converter(config: dict) -> DockerfileConverter:
    return DockerfileConverter(
        org=config["org"],
        registry=config["registry"],
        custom_mappings_path=config.get("custom_mappings"),
    )


def build_advisor(config: dict) -> Advisor:
    """Wires the advisory caches according to the feature switches in config."""
    scans = ScanResultCache(scanner=config["scanner_command"]) if config["enable_cve_scanning"] else None
    catalog = CatalogVerifier(arch=config["catalog_arch"]) if config["enable_live_package_verification"] else None
    remediation = RemediationCache() if config["enable_library_detection"] else None
    chainctl = ChainctlClient(command=config["chainctl_command"]) if config["enable_library_detection"] else None
    coverage = None
    if config["enable_coverage_matcher"]:
        coverage = CoverageMatcher(binary=config["coverage_binary"], db=config["coverage_db"],
                                   port=int(config["coverage_port"]))
    return Advisor(scans=scans, catalog=catalog, remediation=remediation, chainctl=chainctl, coverage=coverage)


def _print_changes(changes):
    if not changes:
        click.echo("No changes.")
        return
    for change in changes:
        click.secho(f"Line {change.line + 1} [{change.category}]", bold=True)
        if change.original:
            click.secho(f"  - {change.original.strip()}", fg="red")
        if change.replacement:
            click.secho(f"  + {change.replacement.strip()}", fg="green")
        else:
            click.secho("  + (removed)", fg="yellow")


# --- CLI Definition ---
@click.group(context_settings=dict(help_option_names=['-h', '--help']))
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help=f"Configuration file (default: ./{CONFIG_FILENAME} if present).")
@click.option("--org", type=str, help="Organization in the hardened registry path.")
@click.option("--mappings", "custom_mappings", type=click.Path(exists=True, dir_okay=False),
              help="YAML file with extra image/package mappings.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx, config_path, org, custom_mappings, verbose):
    """
    Rewrites Dockerfiles onto hardened cgr.dev images and apk packages,
    and reports CVE, package and library information for the result.
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)
    try:
        config = load_config(config_path or CONFIG_FILENAME, strict=config_path is not None)
    except ConfigError as e:
        raise click.ClickException(str(e))
    ctx.obj = apply_overrides(config, org=org, custom_mappings=custom_mappings)


@cli.command("convert")
@click.argument("dockerfile", type=click.Path(exists=True, dir_okay=False))
@click.option("--format", "output_format", type=click.Choice(['text', 'json'], case_sensitive=False),
              default='text', show_default=True, help="Output format.")
@click.option("--output-file", type=click.Path(dir_okay=False), help="Write the converted Dockerfile here.")
@click.option("--in-place", is_flag=True, help="Overwrite the Dockerfile with the converted text.")
@click.pass_obj
def convert(config, dockerfile, output_format, output_file, in_place):
    """Converts a Dockerfile and prints the result."""
    result = _build_converter(config).convert(_read_dockerfile(dockerfile))
    target = dockerfile if in_place else output_file
    if target:
        Path(target).write_text(result.converted, encoding="utf-8")
        click.secho(f"Wrote converted Dockerfile to {target} ({len(result.changes)} changes)", fg="green", err=True)

    if output_format.lower() == "json":
        click.echo(json.dumps(result.to_dict(), indent=2))
    elif not target:
        click.echo(result.converted)


@cli.command("changes")
@click.argument("dockerfile", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def changes(config, dockerfile):
    """Lists the line-level changes a conversion would make."""
    result = _build_converter(config).convert(_read_dockerfile(dockerfile))
    _print_changes(result.changes)


@cli.command("compare")
@click.argument("dockerfile", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def compare(config, dockerfile):
    """Scans original and hardened base images and compares their CVE counts."""
    result = _build_converter(config).convert(_read_dockerfile(dockerfile))
    config = apply_overrides(config, enable_cve_scanning=True)
    advisor = build_advisor(config)

    async def run():
        for change in result.changes:
            if change.category == CATEGORY_FROM:
                click.secho(f"Line {change.line + 1}: {change.original.strip()}", bold=True)
                click.echo(await advisor.describe_image_change(change))
                click.echo("")

    # start() blocks until the matcher answers or gives up
    if advisor.coverage is not None:
        advisor.coverage.start()
    try:
        asyncio.run(run())
    finally:
        if advisor.coverage is not None:
            advisor.coverage.stop()


@cli.command("verify-packages")
@click.argument("dockerfile", type=click.Path(exists=True, dir_okay=False))
@click.option("--limit", type=int, default=3, show_default=True, help="Packages checked per command.")
@click.pass_obj
def verify_packages(config, dockerfile, limit):
    """Checks rewritten apk packages against the live package index."""
    result = _build_converter(config).convert(_read_dockerfile(dockerfile))
    advisor = build_advisor(apply_overrides(config, enable_live_package_verification=True))

    async def run():
        missing = 0
        for change in result.changes:
            if change.category != CATEGORY_RUN or not change.replacement:
                continue
            for check in await advisor.verify_packages(change, limit=limit):
                if check.exists:
                    click.secho(f"  ok       {check.name}", fg="green")
                    continue
                missing += 1
                click.secho(f"  missing  {check.name}", fg="yellow")
                if check.alternatives:
                    click.echo(f"           suggestions: {', '.join(check.alternatives)}")
        return missing

    if asyncio.run(run()):
        click.echo("Search for packages: https://packages.wolfi.dev/")


@cli.command("deps")
@click.argument("dockerfile", type=click.Path(exists=True, dir_okay=False))
@click.option("--library-org", type=str, help="Organization to check library entitlements for.")
@click.pass_obj
def deps(config, dockerfile, library_org):
    """Lists dependency files copied into the image and their remediation status."""
    converter = _build_converter(config)
    dependency_files = converter.extract_dependency_files(_read_dockerfile(dockerfile), dockerfile)
    if not dependency_files:
        click.echo("No dependency files detected.")
        return
    advisor = build_advisor(apply_overrides(config, enable_library_detection=True))
    org = library_org or config.get("library_org")

    async def run():
        for dep_file in dependency_files:
            click.secho(f"Line {dep_file.line + 1}: {dep_file.relative_path} ({dep_file.ecosystem})", bold=True)
            if not dep_file.references:
                click.echo("  no packages found")
                continue
            for item in await advisor.library_availability(dep_file, org=org):
                status = "available" if item.available else f"unavailable: {item.error}"
                line = f"  {item.package}: {status}"
                if item.has_remediation:
                    line += f", {item.cves_fixed} CVEs remediated"
                if item.suggested_version:
                    line += f", suggested {item.suggested_version}"
                click.echo(line)

    asyncio.run(run())


@cli.command("scan")
@click.argument("images", nargs=-1, required=True)
@click.pass_obj
def scan(config, images):
    """Scans one or more image references for vulnerabilities."""
    scans = ScanResultCache(scanner=config["scanner_command"])
    results = asyncio.run(scans.scan_images(images))
    for image in images:
        click.echo(f"{image}: {format_scan_result(results[image])}")


@cli.command("match")
@click.argument("image")
@click.pass_obj
def match(config, image):
    """Asks the coverage service for the best hardened alternatives to an image."""
    matcher = CoverageMatcher(binary=config["coverage_binary"], db=config["coverage_db"],
                              port=int(config["coverage_port"]))
    with matcher:
        result = asyncio.run(matcher.match_image(image))
    if result is None:
        click.echo("No recommendation (coverage service unavailable or image not recognized).")
        return
    for candidate in result.matches:
        click.echo(f"{candidate.image_ref}: {candidate.coverage:.0%} coverage, score {candidate.score:g}, "
                   f"{candidate.satisfied}/{candidate.total_required} packages")
    if result.unmatched:
        click.echo(f"Unmatched packages: {', '.join(result.unmatched)}")


if __name__ == "__main__":
    cli()
