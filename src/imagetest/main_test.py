from unittest import mock

from click.testing import CliRunner
from testfixtures import compare

from imagetest.__main__ import cli
from imagetest.core.diagnostics import Diagnostics

DIGEST = "sha256:" + "c" * 64


def _invoke(tmp_path, *args):
    return CliRunner().invoke(cli, ["-c", str(tmp_path / "imagetest.toml"), *args])


def test_images__prints_resolved_images(tmp_path):
    path = tmp_path / "tests.toml"
    path.write_text(
        f"""
driver = "docker_in_docker"

[images]
busybox = "cgr.dev/chainguard/busybox@{DIGEST}"
"""
    )

    result = _invoke(tmp_path, "images", str(path))

    compare(result.exit_code, 0)
    assert f'"pseudo_tag": "unused@{DIGEST}"' in result.output


def test_images__tag_reference_fails(tmp_path):
    path = tmp_path / "tests.toml"
    path.write_text(
        """
driver = "docker_in_docker"

[images]
busybox = "cgr.dev/chainguard/busybox:latest"
"""
    )

    result = _invoke(tmp_path, "images", str(path))

    compare(result.exit_code, 1)


def test_run__missing_tests_file_fails(tmp_path):
    result = _invoke(tmp_path, "run", str(tmp_path / "missing.toml"))

    compare(result.exit_code, 1)


def test_run__requires_files(tmp_path):
    result = _invoke(tmp_path, "run")

    compare(result.exit_code, 2)


def test_cli__invalid_configuration_fails(tmp_path):
    (tmp_path / "imagetest.toml").write_text("repo = [")

    result = _invoke(tmp_path, "images", str(tmp_path / "tests.toml"))

    compare(result.exit_code, 1)


def test_images__none_declared(tmp_path):
    path = tmp_path / "tests.toml"
    path.write_text('driver = "docker_in_docker"\n')

    result = _invoke(tmp_path, "images", str(path))

    compare(result.exit_code, 0)
    assert "no images declared" in result.output


def test_run__unexpected_failure_keeps_other_results(tmp_path):
    broken = tmp_path / "broken.toml"
    working = tmp_path / "working.toml"
    for path in (broken, working):
        path.write_text('driver = "docker_in_docker"\n')

    with mock.patch("imagetest.__main__.run_tests", side_effect=[RuntimeError("boom"), Diagnostics()]):
        result = _invoke(tmp_path, "run", str(broken), str(working))

    compare(result.exit_code, 1)
    assert "tests failed" in result.output
    assert "tests passed" in result.output
