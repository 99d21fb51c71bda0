#!/usr/bin/env python3
"""Build driver for the wasm application ports.

    wasmapps preflight            resolve the toolchain, check the base sysroot
    wasmapps print-config         show the effective configuration
    wasmapps build [PACKAGE...]   build the graph, post-process and stage binaries
    wasmapps merge-sysroot        recompose the merged sysroot from overlays on disk
    wasmapps clean [--all]        remove build outputs
"""

import os
import shutil
import sys

import click
from tqdm import tqdm

import toolchain_resolve
from artifact_pipeline import ArtifactPipeline, run_pipeline
from build_config import describe, load_config
from build_errors import BuildError, MergeConflict
from build_graph import BuildGraphExecutor, load_graph
from sysroot_merge import merge_all, overlay_dir


class _Cli(click.Group):
    """Report orchestrator errors as one line instead of a traceback."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except BuildError as e:
            click.echo(f"error: {e}", err=True)
            ctx.exit(1)


def get_toolchain(config, refresh=False):
    """Reuse the persisted toolchain when it matches *config*, else resolve."""
    toolchain_resolve.check_base_sysroot(config.base_sysroot, config.target)
    if not refresh and os.path.isfile(config.descriptor):
        toolchain = toolchain_resolve.load(config.descriptor)
        if (toolchain.target_triple == config.target
                and toolchain.sysroot == os.path.abspath(config.base_sysroot)):
            return toolchain
        click.echo("toolchain: descriptor does not match the configuration; resolving again",
                   err=True)
    candidates = toolchain_resolve.default_candidates(config.lind_wasm_root,
                                                      config.tool_overrides)
    return toolchain_resolve.resolve(candidates, config.target, config.base_sysroot,
                                     config.descriptor)


@click.group(cls=_Cli)
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='wasmapps.ini to read (default: ./wasmapps.ini, then the repo root)')
@click.pass_context
def cli(ctx, config_path):
    """Cross-build the wasm application ports against the lind-wasm sysroot."""
    ctx.obj = load_config(config_path)


@cli.command()
@click.pass_obj
def preflight(config):
    """Resolve and persist the toolchain; check the base sysroot."""
    toolchain = get_toolchain(config, refresh=True)
    click.echo(f"compiler:  {toolchain.compiler}")
    click.echo(f"archiver:  {toolchain.archiver}")
    click.echo(f"librarian: {toolchain.librarian}")
    click.echo(f"sysroot:   {toolchain.sysroot}")
    click.echo(f"wrote {config.descriptor}")


@cli.command('print-config')
@click.pass_obj
def print_config(config):
    """Show the effective paths and the persisted toolchain."""
    describe(config)
    click.echo(f"TOOL_ENV={config.descriptor}")
    if os.path.isfile(config.descriptor):
        for key, val in toolchain_resolve.read_descriptor(config.descriptor).items():
            click.echo(f"  {key}={val}")
    else:
        click.echo("  (not resolved yet; run preflight)")


@cli.command()
@click.argument('packages', nargs=-1)
@click.option('--workers', type=click.IntRange(min=1), help='Packages built in parallel')
@click.option('--jobs', type=click.IntRange(min=1), help='Parallelism passed to each package build')
@click.option('--no-pipeline', is_flag=True, help='Stage nothing; skip optimize/precompile/stage')
@click.option('--refresh-toolchain', is_flag=True, help='Resolve the toolchain even if persisted')
@click.pass_obj
def build(config, packages, workers, jobs, no_pipeline, refresh_toolchain):
    """Build PACKAGES and their dependencies (default: the whole graph)."""
    config = config.with_overrides(workers=workers, jobs=jobs)
    graph = load_graph(config.packages_file)
    if packages:
        graph = graph.subgraph(packages)
    toolchain = get_toolchain(config, refresh=refresh_toolchain)

    with tqdm(total=len(graph), desc="build", unit="pkg", file=sys.stderr,
              disable=None) as bar:
        def advance(result):
            bar.set_postfix_str(f"{result.package}: {result.status.value}")
            bar.update(1)

        executor = BuildGraphExecutor(config, toolchain, on_result=advance)
        try:
            report = executor.run(graph)
        except MergeConflict as e:
            bar.close()
            click.echo(f"error: {e}", err=True)
            executor.report.print()
            executor.report.write_json(config.report_path)
            sys.exit(1)

    if not no_pipeline:
        run_pipeline(ArtifactPipeline.from_config(config), report, graph)

    report.print()
    report.write_json(config.report_path)
    click.echo(f"report: {config.report_path}", err=True)
    sys.exit(report.exit_code)


@cli.command('merge-sysroot')
@click.pass_obj
def merge_sysroot(config):
    """Recompose the merged sysroot from the overlays currently on disk."""
    toolchain_resolve.check_base_sysroot(config.base_sysroot, config.target)
    graph = load_graph(config.packages_file)
    overlays = []
    for name in graph.packages:
        directory = overlay_dir(config.overlay_root, name)
        if os.path.isdir(directory):
            overlays.append((name, directory))
    owners = merge_all(config.base_sysroot, overlays, config.merged_sysroot)
    names = ", ".join(name for name, _ in overlays) or "none"
    click.echo(f"merged {len(owners)} overlay files into {config.merged_sysroot} "
               f"(overlays: {names})")


@cli.command()
@click.option('--all', 'clean_all', is_flag=True,
              help='Also remove overlays, the merged sysroot, outputs and the toolchain descriptor')
@click.pass_obj
def clean(config, clean_all):
    """Remove work directories, logs and stub libraries."""
    targets = [config.work_root, config.pipeline_root, config.log_dir, config.report_path]
    if os.path.isfile(config.packages_file):
        graph = load_graph(config.packages_file)
        targets += [os.path.join(config.lib_dir, pkg.stub.archive)
                    for pkg in graph.packages.values() if pkg.kind == "stub"]
    if clean_all:
        targets += [config.overlay_root, config.merged_sysroot, config.output_root,
                    config.lib_dir, config.descriptor]
    for path in targets:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
        else:
            continue
        click.echo(f"removed {path}")


def main():
    cli()


if __name__ == '__main__':
    main()
