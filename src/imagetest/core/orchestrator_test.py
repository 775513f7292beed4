import json
import threading

from testfixtures import compare

from imagetest.core.config import Config, EntrypointConfig, TestExecutionConfig
from imagetest.core.deadline import Deadline
from imagetest.core.diagnostics import Diagnostic, Severity
from imagetest.core.orchestrator import build_test_images, generate_id, run_tests
from imagetest.core.reference import parse_reference
from imagetest.core.spec import TestStatus, parse_tests
from imagetest.core.teardown import TeardownPolicy

DIGEST = "sha256:" + "c" * 64


def _spec(base_image, *tests, **kwargs):
    return parse_tests(
        {
            "driver": "fake",
            "images": {"busybox": f"cgr.dev/chainguard/busybox@{DIGEST}"},
            "tests": [{"name": name, "image": str(base_image), "cmd": cmd, **extra} for name, cmd, extra in tests],
            **kwargs,
        }
    )


def _config(entrypoint_dir, **kwargs) -> Config:
    return Config(
        repo=kwargs.pop("repo", "example.com/team"),
        entrypoint=EntrypointConfig(layers_dir=str(entrypoint_dir)),
        **kwargs,
    )


def test_generate_id__contains_name_and_driver():
    run_id = generate_id("my tests", "k3s_in_docker")

    compare(run_id.startswith("my_tests-k3s_in_docker-"), True)
    compare(len(run_id.rsplit("-", 1)[1]), 4)


def test_run_tests__basic_pass(imagetest_context, base_image, driver_calls):
    spec = _spec(base_image, ("hello", "echo hello", {}))

    diagnostics = run_tests(imagetest_context, spec)

    compare(list(diagnostics), [])
    compare(driver_calls.names(), ["setup", "run", "teardown"])
    compare(spec.tests[0].status, TestStatus.PASSED)
    compare(spec.tests[0].ref, driver_calls[1][1])
    compare(spec.id.startswith("test-fake-"), True)


def test_run_tests__failing_exit_code(imagetest_context, base_image, driver_calls):
    spec = _spec(base_image, ("fails", "exit 213", {}))

    diagnostics = run_tests(imagetest_context, spec)

    compare(len(diagnostics.errors()), 1)
    compare("213" in diagnostics[0].detail, True)
    compare(diagnostics[0].summary, "test fails failed")
    compare(driver_calls.names(), ["setup", "run", "teardown"])
    compare(spec.tests[0].status, TestStatus.FAILED)


def test_run_tests__error_references_test_image(imagetest_context, base_image):
    spec = _spec(base_image, ("fails", "exit 1", {}))

    diagnostics = run_tests(imagetest_context, spec)

    compare(spec.tests[0].ref in diagnostics[0].detail, True)


def test_run_tests__tag_only_image_is_rejected(imagetest_context, base_image, driver_calls):
    spec = _spec(base_image, ("hello", "true", {}))
    spec.images = parse_tests({"driver": "fake", "images": {"foo": "repo/bar:latest"}}).images

    diagnostics = run_tests(imagetest_context, spec)

    compare(len(diagnostics), 1)
    compare(diagnostics[0].severity, Severity.ERROR)
    compare(diagnostics[0].summary, "tag-only image reference")
    compare(driver_calls.names(), [])


def test_run_tests__tag_only_base_image_is_rejected(imagetest_context, registry, driver_calls):
    base = registry.add_image(tag="latest")
    spec = _spec(base.repository.tag("latest"), ("hello", "true", {}))

    diagnostics = run_tests(imagetest_context, spec)

    compare(diagnostics.errors()[0].summary, "tag-only image reference")
    compare(driver_calls.names(), [])


def test_run_tests__include_label_mismatch_skips(make_context, entrypoint_dir, base_image, driver_calls):
    ctx = make_context(
        config=_config(
            entrypoint_dir,
            test_execution=TestExecutionConfig(include_by_label={"foo": "baz"}),
        )
    )
    spec = _spec(base_image, ("hello", "true", {}), labels={"foo": "bar"})

    diagnostics = run_tests(ctx, spec)

    compare(
        list(diagnostics),
        [Diagnostic.warning("tests skipped", "does not match include labels: foo=baz")],
    )
    compare(spec.skipped, True)
    compare(driver_calls.names(), [])


def test_run_tests__skip_all_returns_one_warning(make_context, base_image, driver_calls):
    spec = _spec(base_image, ("hello", "exit 1", {}))

    diagnostics = run_tests(make_context(skip_all=True), spec)

    compare(list(diagnostics), [Diagnostic.warning("tests skipped", "all tests skipped")])
    compare(driver_calls.names(), [])


def test_run_tests__skip_all_ignores_invalid_run_timeout(make_context, base_image, driver_calls):
    spec = _spec(base_image, ("hello", "true", {}), timeout="bogus")

    diagnostics = run_tests(make_context(skip_all=True), spec)

    compare(list(diagnostics), [Diagnostic.warning("tests skipped", "all tests skipped")])
    compare(spec.skipped, True)
    compare(driver_calls.names(), [])


def test_run_tests__per_test_timeout(imagetest_context, base_image, driver_calls):
    spec = _spec(
        base_image,
        ("slow", "sleep 60", {"timeout": "1s"}),
        ("next", "echo never", {}),
    )

    diagnostics = run_tests(imagetest_context, spec)

    compare(len(diagnostics.errors()), 1)
    compare(diagnostics[0].summary, "test slow failed")
    compare("timeout" in diagnostics[0].detail, True)
    compare([test.status for test in spec.tests], [TestStatus.TIMED_OUT, TestStatus.CANCELLED])
    compare(driver_calls.names(), ["setup", "run", "teardown"])


def test_run_tests__skip_teardown_preserves_driver(make_context, base_image, driver_calls):
    ctx = make_context(teardown=TeardownPolicy(skip_teardown=True))
    spec = _spec(base_image, ("fails", "exit 1", {}))

    diagnostics = run_tests(ctx, spec)

    compare(len(diagnostics.errors()), 1)
    compare(
        diagnostics.warnings(),
        [Diagnostic.warning("teardown skipped", "teardown skipped because SKIP_TEARDOWN is set")],
    )
    compare(driver_calls.names(), ["setup", "run"])


def test_run_tests__skip_teardown_on_failure_tears_down_passing_runs(make_context, base_image, driver_calls):
    ctx = make_context(teardown=TeardownPolicy(skip_teardown_on_failure=True))
    spec = _spec(base_image, ("hello", "true", {}))

    compare(list(run_tests(ctx, spec)), [])
    compare(driver_calls.names(), ["setup", "run", "teardown"])


def test_run_tests__first_failure_stops_the_run(imagetest_context, base_image, driver_calls):
    spec = _spec(
        base_image,
        ("first", "true", {}),
        ("second", "exit 3", {}),
        ("third", "true", {}),
    )

    diagnostics = run_tests(imagetest_context, spec)

    compare(len(diagnostics.errors()), 1)
    compare("second" in diagnostics[0].summary, True)
    compare(driver_calls.names(), ["setup", "run", "run", "teardown"])
    compare(
        [test.status for test in spec.tests],
        [TestStatus.PASSED, TestStatus.FAILED, TestStatus.CANCELLED],
    )


def test_run_tests__cancelled_run_is_torn_down_once(imagetest_context, base_image, driver_calls):
    spec = _spec(base_image, ("hangs", "sleep 60", {}), ("next", "true", {}))
    deadline = Deadline()

    timer = threading.Timer(1.0, deadline.cancel)
    timer.start()

    diagnostics = run_tests(imagetest_context, spec, deadline=deadline)
    timer.join()

    compare(diagnostics.has_error(), True)
    compare(driver_calls.names().count("teardown"), 1)
    compare(spec.tests[0].status, TestStatus.TIMED_OUT)


def test_run_tests__setup_failure_reports_error(imagetest_context, base_image, driver_calls):
    spec = _spec(base_image, ("hello", "true", {}), drivers={"fake": {"fail_setup": True}})

    diagnostics = run_tests(imagetest_context, spec)

    compare(list(diagnostics), [Diagnostic.error("failed to setup driver", "sandbox did not start")])
    compare(driver_calls.names(), ["setup"])
    compare(spec.tests[0].status, TestStatus.PENDING)


def test_run_tests__teardown_failure_reports_error(imagetest_context, base_image, driver_calls):
    spec = _spec(base_image, ("hello", "true", {}), drivers={"fake": {"fail_teardown": True}})

    diagnostics = run_tests(imagetest_context, spec)

    compare(len(diagnostics), 1)
    compare(diagnostics[0].summary, "failed to teardown driver")
    compare("network still in use" in diagnostics[0].detail, True)
    compare(driver_calls.names(), ["setup", "run", "teardown"])


def test_run_tests__unknown_driver(imagetest_context, base_image, driver_calls):
    spec = _spec(base_image, ("hello", "true", {}))
    spec.driver = "missing"

    diagnostics = run_tests(imagetest_context, spec)

    compare(diagnostics[0].summary, "invalid input")
    compare("missing" in diagnostics[0].detail, True)
    compare(driver_calls.names(), [])


def test_run_tests__invalid_driver_config(imagetest_context, base_image, driver_calls):
    spec = _spec(base_image, ("hello", "true", {}), drivers={"fake": {"unknown": 1}})

    diagnostics = run_tests(imagetest_context, spec)

    compare(diagnostics[0].summary, "invalid input")
    compare(driver_calls.names(), [])


def test_run_tests__invalid_run_timeout(imagetest_context, base_image, driver_calls):
    spec = _spec(base_image, ("hello", "true", {}), timeout="soon")

    diagnostics = run_tests(imagetest_context, spec)

    compare(diagnostics[0].summary, "invalid timeout")
    compare(driver_calls.names(), [])


def test_run_tests__invalid_test_timeout_falls_back_to_default(imagetest_context, base_image, driver_calls):
    spec = _spec(base_image, ("hello", "true", {"timeout": "soon"}))

    diagnostics = run_tests(imagetest_context, spec)

    compare(diagnostics.has_error(), False)
    compare(diagnostics[0].summary, "invalid timeout for test hello")
    compare(driver_calls.names(), ["setup", "run", "teardown"])


def test_run_tests__missing_content_fails_assembly(imagetest_context, base_image, driver_calls, tmp_path):
    spec = _spec(base_image, ("hello", "true", {"content": [{"source": str(tmp_path / "missing")}]}))

    diagnostics = run_tests(imagetest_context, spec)

    compare(diagnostics[0].summary, "failed to assemble image for test hello")
    compare(driver_calls.names(), [])


def test_run_tests__missing_entrypoint_fails(make_context, base_image, driver_calls):
    ctx = make_context(config=Config(repo="example.com/team"))
    spec = _spec(base_image, ("hello", "true", {}))

    diagnostics = run_tests(ctx, spec)

    compare(diagnostics[0].detail, "invalid entrypoint image provided")
    compare(driver_calls.names(), [])


def test_run_tests__missing_repo_fails(make_context, entrypoint_dir, base_image, driver_calls):
    ctx = make_context(config=_config(entrypoint_dir, repo=None))
    spec = _spec(base_image, ("hello", "true", {}))

    diagnostics = run_tests(ctx, spec)

    compare(diagnostics[0].summary, "invalid input")
    compare(driver_calls.names(), [])


def test_build_test_images__injects_environment(imagetest_context, registry, base_image, driver_calls):
    spec = _spec(base_image, ("hello", "true", {"envs": {"FOO": "bar"}}))

    diagnostics = build_test_images(imagetest_context, spec)

    compare(list(diagnostics), [])
    compare(driver_calls.names(), [])

    ref = spec.tests[0].ref
    compare(ref.startswith("example.com/team/imagetest@sha256:"), True)

    config = registry.image_config(parse_reference(ref))
    env = dict(item.split("=", 1) for item in config["config"]["Env"])

    compare(env["FOO"], "bar")
    compare(env["IMAGETEST_DRIVER"], "fake")
    compare(env["IMAGETEST_REGISTRY"], "example.com")
    compare(env["IMAGETEST_REPO"], "example.com/team/imagetest")
    compare(json.loads(env["IMAGES"])["busybox"]["digest"], DIGEST)
    compare("IMAGETEST_LOCAL_REGISTRY" in env, False)
    compare("IMAGETEST_PAUSE_ON_ERROR" in env, False)


def test_build_test_images__local_registry(make_context, entrypoint_dir, registry, base_image):
    ctx = make_context(
        config=_config(entrypoint_dir, repo="localhost:5000/team"),
        teardown=TeardownPolicy(skip_teardown_on_failure=True),
    )
    spec = _spec(base_image, ("hello", "true", {}))

    compare(list(build_test_images(ctx, spec)), [])

    config = registry.image_config(parse_reference(spec.tests[0].ref))
    env = dict(item.split("=", 1) for item in config["config"]["Env"])

    compare(env["IMAGETEST_LOCAL_REGISTRY"], "1")
    compare(env["IMAGETEST_LOCAL_REGISTRY_HOSTNAME"], "localhost")
    compare(env["IMAGETEST_LOCAL_REGISTRY_PORT"], "5000")
    compare(env["IMAGETEST_PAUSE_ON_ERROR"], "true")


def test_build_test_images__annotates_test_name(imagetest_context, registry, base_image):
    spec = _spec(base_image, ("hello", "true", {}))

    build_test_images(imagetest_context, spec)

    manifest = registry.get_manifest(parse_reference(spec.tests[0].ref)).json()
    compare(manifest["annotations"], {"imagetest.test_name": "hello"})
