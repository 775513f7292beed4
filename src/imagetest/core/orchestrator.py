"""End-to-end execution of a tests resource: image assembly, driver lifecycle
and teardown policy."""
import tempfile
import uuid
from typing import Dict, List, Optional

from attrs import define

from imagetest.bundler.layer import new_layer_from_path
from imagetest.bundler.mutate import mutate
from imagetest.bundler.mutators import (
    config_mutator,
    content_mutator,
    entrypoint_mutator,
    name_annotation_mutator,
)
from imagetest.core.context import Context
from imagetest.core.deadline import Deadline
from imagetest.core.diagnostics import Diagnostic, Diagnostics
from imagetest.core.duration import format_duration, parse_duration
from imagetest.core.entrypoint import (
    ENV_DRIVER,
    ENV_IMAGES,
    ENV_LOCAL_REGISTRY,
    ENV_LOCAL_REGISTRY_HOSTNAME,
    ENV_LOCAL_REGISTRY_PORT,
    ENV_PAUSE_ON_ERROR,
    ENV_REGISTRY,
    ENV_REPO,
    EntrypointLayers,
)
from imagetest.core.errors import (
    DeadlineExceeded,
    ImageAssemblyError,
    ImagetestError,
    InvalidInput,
)
from imagetest.core.reference import (
    Reference,
    Repository,
    resolve_images,
    serialize_images,
)
from imagetest.core.skip import evaluate
from imagetest.core.spec import DEFAULT_TEST_TIMEOUT, TestsSpec, TestSpec, TestStatus
from imagetest.drivers.base import Driver, DriverContext
from imagetest.utils import error, log, print_waiting, success, warning


@define(frozen=True, kw_only=True)
class PreparedTest:
    """A test whose image has been assembled.

    Arguments:
        spec: the test as declared.
        ref: the assembled test image.
        timeout: maximum duration of the test in seconds.
    """

    __test__ = False

    spec: TestSpec
    ref: Reference
    timeout: float


@define(frozen=True, kw_only=True)
class RunModel:
    """The resolved values a run works with.

    Arguments:
        run_id: identifies the run.
        deadline: bounds the whole run.
        user_repo: the repository chosen by the user.
        target_repo: where test images are pushed.
        images: the serialized `IMAGES` map.
    """

    run_id: str
    deadline: Deadline
    user_repo: Repository
    target_repo: Repository
    images: str


def generate_id(name: str, driver: str) -> str:
    """Generates the identifier of a run, i.e. `test-k3s_in_docker-1a2b`."""
    return f"{name}-{driver}-{uuid.uuid4().hex[:4]}".replace(" ", "_")


def timeout_seconds(test: TestSpec, diagnostics: Diagnostics) -> float:
    """Gets the timeout of a test in seconds.

    An invalid timeout falls back to the default one and adds a warning.
    """
    if not test.timeout:
        return parse_duration(DEFAULT_TEST_TIMEOUT).total_seconds()

    try:
        return parse_duration(test.timeout).total_seconds()

    except InvalidInput as exc:
        diagnostics.append(
            Diagnostic.warning(
                f"invalid timeout for test {test.name}",
                f"{exc}, using the default of {DEFAULT_TEST_TIMEOUT}",
            )
        )
        return parse_duration(DEFAULT_TEST_TIMEOUT).total_seconds()


def image_envs(
    ctx: Context,
    model: RunModel,
    test: TestSpec,
    driver: str,
) -> Dict[str, str]:
    """The environment variables set in a test image."""
    envs = dict(test.envs)

    envs[ENV_IMAGES] = model.images
    envs[ENV_DRIVER] = driver
    envs[ENV_REGISTRY] = model.user_repo.registry
    envs[ENV_REPO] = str(model.target_repo)

    if model.target_repo.is_local:
        host, _, port = model.target_repo.registry.rpartition(":")
        if not host:
            host, port = port, ""

        envs[ENV_LOCAL_REGISTRY] = "1"
        envs[ENV_LOCAL_REGISTRY_HOSTNAME] = host
        envs[ENV_LOCAL_REGISTRY_PORT] = port

    if ctx.teardown.pause_on_error:
        envs[ENV_PAUSE_ON_ERROR] = "true"

    return envs


def _start(
    ctx: Context,
    spec: TestsSpec,
    deadline: Optional[Deadline],
    diagnostics: Diagnostics,
) -> Optional[RunModel]:
    spec.id = generate_id(spec.name, spec.driver)

    verdict = evaluate(
        spec.labels,
        include=ctx.config.test_execution.include_by_label,
        exclude=ctx.config.test_execution.exclude_by_label,
        skip_all=ctx.skip_all,
    )
    if verdict.skipped:
        spec.skipped = True
        warning(f"skipping tests id={spec.id} reason={verdict.reason}")
        diagnostics.append(Diagnostic.warning("tests skipped", verdict.reason))
        return None

    try:
        timeout = parse_duration(spec.timeout)
    except InvalidInput as exc:
        diagnostics.append(Diagnostic.from_exception(exc, summary="invalid timeout"))
        return None

    run_deadline = (deadline or Deadline()).child(timeout.total_seconds())

    try:
        if spec.driver not in ctx.drivers:
            raise InvalidInput(f"unknown driver {spec.driver!r}, available: {', '.join(sorted(ctx.drivers))}")

        images = serialize_images(resolve_images(spec.images))
        user_repo = ctx.user_repo(spec.repo)

    except InvalidInput as exc:
        diagnostics.append(Diagnostic.from_exception(exc))
        return None

    log(f"starting tests id={spec.id} driver={spec.driver} timeout={format_duration(timeout)}")

    return RunModel(
        run_id=spec.id,
        deadline=run_deadline,
        user_repo=user_repo,
        target_repo=user_repo.child("imagetest"),
        images=images,
    )


def build_test_image(
    ctx: Context,
    model: RunModel,
    test: TestSpec,
    driver: str,
    layers: EntrypointLayers,
    scratch: str,
) -> Reference:
    """Assembles and pushes the image of a single test.

    Raises:
        InvalidInput: if the base image is not pinned to a digest.
        ImageAssemblyError: if the image cannot be assembled or pushed.
    """
    if not test.base_image.is_digest:
        raise InvalidInput(
            f"base image {test.base_image} of test {test.name} is not pinned to a digest",
            summary="tag-only image reference",
        )

    content = [new_layer_from_path(item.source, item.target, scratch) for item in test.content]

    mutators = [
        entrypoint_mutator(layers),
        content_mutator(content),
        config_mutator(image_envs(ctx, model, test, driver), test.cmd),
        name_annotation_mutator(test.name),
    ]

    return mutate(ctx.client, test.base_image, model.target_repo, mutators)


def _build(
    ctx: Context,
    spec: TestsSpec,
    model: RunModel,
    diagnostics: Diagnostics,
) -> Optional[List[PreparedTest]]:
    try:
        layers = ctx.entrypoint.get()
    except InvalidInput as exc:
        diagnostics.append(Diagnostic.from_exception(exc))
        return None

    prepared = []

    with tempfile.TemporaryDirectory(prefix=f"imagetest-{model.run_id}-") as scratch:
        for test in spec.tests:
            try:
                model.deadline.check("building test images")

                with print_waiting(f"building test image id={model.run_id} test={test.name}"):
                    ref = build_test_image(ctx, model, test, spec.driver, layers, scratch)

            except ImagetestError as exc:
                test.status = TestStatus.FAILED
                error(f"failed to build test image id={model.run_id} test={test.name}: {exc}")
                summary = None if isinstance(exc, InvalidInput) else f"failed to assemble image for test {test.name}"
                diagnostics.append(Diagnostic.from_exception(exc, summary=summary))
                return None

            except OSError as exc:
                test.status = TestStatus.FAILED
                diagnostics.append(
                    Diagnostic.from_exception(
                        ImageAssemblyError(str(exc)),
                        summary=f"failed to assemble image for test {test.name}",
                    )
                )
                return None

            test.ref = str(ref)
            log(f"built test image id={model.run_id} test={test.name} ref={ref}")
            prepared.append(PreparedTest(spec=test, ref=ref, timeout=timeout_seconds(test, diagnostics)))

    return prepared


def build_test_images(ctx: Context, spec: TestsSpec, deadline: Optional[Deadline] = None) -> Diagnostics:
    """Assembles and pushes the images of all the tests, without running them.

    The reference of each image is recorded on its test.

    Arguments:
        ctx: the shared context.
        spec: the tests resource.
        deadline: bounds the build, the run timeout applies too.
    """
    diagnostics = Diagnostics()

    model = _start(ctx, spec, deadline, diagnostics)
    if model is not None:
        _build(ctx, spec, model, diagnostics)

    return diagnostics


def _execute(
    driver: Driver,
    model: RunModel,
    prepared: List[PreparedTest],
    diagnostics: Diagnostics,
):
    try:
        with print_waiting(f"setting up driver id={model.run_id} driver={driver.spec_name()}"):
            driver.setup(model.deadline)

    except ImagetestError as exc:
        error(f"driver setup failed id={model.run_id}: {exc}")
        diagnostics.append(Diagnostic.from_exception(exc))
        return

    for index, test in enumerate(prepared):
        test_deadline = model.deadline.child(test.timeout)

        try:
            test_deadline.check(f"test {test.spec.name}")

            log(f"running test id={model.run_id} test={test.spec.name} ref={test.ref}")
            driver.run(test_deadline, test.ref)

        except ImagetestError as exc:
            test.spec.status = TestStatus.TIMED_OUT if isinstance(exc, DeadlineExceeded) else TestStatus.FAILED
            exc.ref = exc.ref or str(test.ref)

            error(f"test failed id={model.run_id} test={test.spec.name}: {exc}")
            diagnostics.append(Diagnostic.from_exception(exc, summary=f"test {test.spec.name} failed"))

            for remaining in prepared[index + 1 :]:
                remaining.spec.status = TestStatus.CANCELLED
            return

        test.spec.status = TestStatus.PASSED
        success(f"test passed id={model.run_id} test={test.spec.name}")


def _teardown(ctx: Context, driver: Driver, model: RunModel, diagnostics: Diagnostics):
    reason = ctx.teardown.skip_reason(diagnostics.has_error())
    if reason is not None:
        warning(f"{reason} id={model.run_id}")
        diagnostics.append(Diagnostic.warning("teardown skipped", reason))
        return

    try:
        timeout = parse_duration(ctx.config.teardown_timeout).total_seconds()
    except InvalidInput:
        timeout = None

    try:
        with print_waiting(f"tearing down driver id={model.run_id}"):
            driver.teardown(Deadline.fresh(timeout))

    except ImagetestError as exc:
        error(f"teardown failed id={model.run_id}: {exc}")
        diagnostics.append(Diagnostic.from_exception(exc))


def run_tests(ctx: Context, spec: TestsSpec, deadline: Optional[Deadline] = None) -> Diagnostics:
    """Runs a tests resource.

    The tests images are built in declaration order, then the driver is set
    up and each test runs in turn. The first failure stops the run. The
    driver is torn down afterwards unless the teardown policy says otherwise,
    even if the run has been cancelled.

    Arguments:
        ctx: the shared context.
        spec: the tests resource. Its id and the status of its tests are
            updated along the way.
        deadline: cancelling it cancels the run.

    Returns:
        The diagnostics. Any error means that the run failed.
    """
    diagnostics = Diagnostics()

    model = _start(ctx, spec, deadline, diagnostics)
    if model is None:
        return diagnostics

    prepared = _build(ctx, spec, model, diagnostics)
    if prepared is None:
        return diagnostics

    try:
        driver_ctx = DriverContext(
            run_id=model.run_id,
            keychain=ctx.keychain,
            target_repo=model.target_repo,
            extra_repos=ctx.extra_repos(),
            workstation=ctx.workstation,
        )
        driver = ctx.drivers[spec.driver].from_options(driver_ctx, spec.driver_config)
    except InvalidInput as exc:
        diagnostics.append(Diagnostic.from_exception(exc))
        return diagnostics

    try:
        _execute(driver, model, prepared, diagnostics)
    finally:
        _teardown(ctx, driver, model, diagnostics)

    return diagnostics
