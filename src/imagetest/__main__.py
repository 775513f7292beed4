"""Main entrypoint for the `imagetest` command."""
import os
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

import click
from rich.table import Table

from imagetest.core.config import load_config
from imagetest.core.context import Context, load_context
from imagetest.core.diagnostics import Diagnostic, Diagnostics, Severity
from imagetest.core.errors import InvalidInput
from imagetest.core.orchestrator import build_test_images, run_tests
from imagetest.core.reference import resolve_images, serialize_images
from imagetest.core.spec import TestsSpec, TestStatus, load_tests
from imagetest.utils import CONSOLE, error, print_exception, print_info, success


def _load(path: str) -> Tuple[Optional[TestsSpec], Diagnostics]:
    diagnostics = Diagnostics()

    try:
        return load_tests(path), diagnostics

    except (InvalidInput, OSError, ValueError) as exc:
        error(f"failed to load tests file={path}: {exc}")
        diagnostics.append(Diagnostic.error(f"invalid tests file {path}", str(exc)))
        return None, diagnostics


def _run(ctx: Context, path: str) -> Tuple[Optional[TestsSpec], Diagnostics]:
    spec, diagnostics = _load(path)
    if spec is None:
        return None, diagnostics

    try:
        return spec, run_tests(ctx, spec)

    except Exception as exc:  # pylint: disable=broad-except
        # the other files are still reported
        print_exception(f"unexpected failure running tests file={path}")
        diagnostics.append(Diagnostic.error(f"unexpected failure running {path}", str(exc)))
        return spec, diagnostics


def _print_diagnostics(title: str, diagnostics: Diagnostics):
    table = Table(title=title)
    table.add_column("Severity", justify="right")
    table.add_column("Summary")
    table.add_column("Detail")

    for diag in diagnostics:
        match diag.severity:
            case Severity.ERROR:
                severity = "[red] error"

            case Severity.WARNING:
                severity = "[yellow] warning"

            case _:
                raise ValueError(f"unknown severity {diag.severity}")

        table.add_row(severity, diag.summary, diag.detail)

    CONSOLE.print(table)


def _print_tests(title: str, spec: TestsSpec):
    table = Table(title=title)
    table.add_column("#", justify="right")
    table.add_column("Test")
    table.add_column("Status", justify="right")
    table.add_column("Image")

    for idx, test in enumerate(spec.tests):
        match test.status:
            case TestStatus.PENDING:
                status = "pending"

            case TestStatus.PASSED:
                status = "[green] passed"

            case TestStatus.FAILED:
                status = "[red] failed"

            case TestStatus.TIMED_OUT:
                status = "[red] timed out"

            case TestStatus.CANCELLED:
                status = "[dim] cancelled"

            case _:
                raise ValueError(f"unknown status {test.status}")

        table.add_row(str(idx), test.name, status, test.ref or "")

    CONSOLE.print(table)


@click.group()
@click.option("-c", "--config", "config_path", default="./imagetest.toml")
@click.option("--cwd", default=None)
@click.pass_context
def cli(ctx: click.Context, config_path: str, cwd: Optional[str]):
    """Entrypoint for the imagetest command."""
    if cwd is not None:
        os.chdir(cwd)

    try:
        config = load_config(path=config_path)
    except InvalidInput as exc:
        raise click.ClickException(str(exc)) from exc

    ctx.obj = load_context(config=config)


@cli.command()
@click.argument("files", nargs=-1, required=True)
@click.option("-p", "--parallel", default=1, type=click.IntRange(min=1))
@click.pass_obj
def run(ctx: Context, files: List[str], parallel: int):
    """Runs the tests files."""
    with ThreadPoolExecutor(max_workers=parallel) as executor:
        results = list(executor.map(lambda path: _run(ctx, path), files))

    failed = False

    for path, (spec, diagnostics) in zip(files, results):
        if spec is not None and not spec.skipped:
            _print_tests(f"Tests {path} ({spec.id})", spec)

        if diagnostics:
            _print_diagnostics(f"Diagnostics {path}", diagnostics)

        if diagnostics.has_error():
            failed = True
            error(f"tests failed file={path}")
        else:
            success(f"tests passed file={path} warnings={len(diagnostics.warnings())}")

    if failed:
        raise SystemExit(1)


@cli.command()
@click.argument("files", nargs=-1, required=True)
@click.pass_obj
def build(ctx: Context, files: List[str]):
    """Builds and pushes the test images without running them."""
    failed = False

    for path in files:
        spec, diagnostics = _load(path)
        if spec is not None:
            diagnostics.extend(build_test_images(ctx, spec))

            table = Table(title=f"Images {path}")
            table.add_column("Test")
            table.add_column("Reference")

            for test in spec.tests:
                table.add_row(test.name, test.ref or "[dim] not built")

            CONSOLE.print(table)

        if diagnostics:
            _print_diagnostics(f"Diagnostics {path}", diagnostics)

        failed = failed or diagnostics.has_error()

    if failed:
        raise SystemExit(1)


@cli.command()
@click.argument("file")
def images(file: str):
    """Shows the images made available to the tests through `IMAGES`."""
    try:
        resolved = resolve_images(load_tests(file).images)
    except (InvalidInput, OSError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    if not resolved:
        print_info(f"no images declared in {file}")
        return

    table = Table(title="Images")
    table.add_column("Name", no_wrap=True)
    table.add_column("Registry")
    table.add_column("Repository")
    table.add_column("Digest")
    table.add_column("Pseudo tag")

    for name, image in sorted(resolved.items()):
        table.add_row(name, image.registry, image.repo, image.digest, image.pseudo_tag)

    CONSOLE.print(table)
    CONSOLE.print_json(serialize_images(resolved))


if __name__ == "__main__":
    cli()  # pylint: disable=no-value-for-parameter
