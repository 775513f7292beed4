"""Base class for all the driver implementations."""
import abc
import threading
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, Type

from attrs import define, field
from cattrs import Converter
from cattrs.errors import BaseValidationError
from tenacity import Retrying, retry_if_exception_type, wait_fixed

from imagetest.core.deadline import Deadline
from imagetest.core.errors import DriverSetupError, InvalidInput, TeardownError
from imagetest.core.reference import Reference, Repository
from imagetest.registry.auth import Keychain
from imagetest.utils import log

CONVERTER = Converter(forbid_extra_keys=True)


class Stack:
    """Cleanup callbacks run in reverse registration order.

    Each callback runs at most once, so unwinding twice is harmless.
    """

    def __init__(self):
        self._items: List[Tuple[str, Callable[[], Any]]] = []
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._items)

    def push(self, description: str, func: Callable[[], Any]):
        """Registers a cleanup.

        Arguments:
            description: what the cleanup does, used in logs and errors.
            func: the cleanup.
        """
        with self._lock:
            self._items.append((description, func))

    def unwind(self) -> List[str]:
        """Runs all the registered cleanups, newest first.

        Returns:
            A description of each cleanup that failed.
        """
        failures = []

        while True:
            with self._lock:
                if not self._items:
                    break

                description, func = self._items.pop()

            try:
                func()
                log(f"teardown: {description}")

            except Exception as exc:  # pylint: disable=broad-except
                failures.append(f"{description}: {exc}")

        return failures


@define(frozen=True, kw_only=True)
class DriverContext:
    """What a driver knows about the run it belongs to.

    Arguments:
        run_id: identifies the run, used to name and label resources.
        keychain: credentials for the registries used by the tests.
        target_repo: repository where the test images have been pushed.
        extra_repos: other repositories the tests need to access.
        workstation: set when imagetest itself runs inside docker-in-docker.
    """

    run_id: str
    keychain: Keychain
    target_repo: Repository
    extra_repos: List[Repository] = field(factory=list)
    workstation: bool = False

    @property
    def registries(self) -> List[str]:
        """All the registries the tests need credentials for."""
        found = [self.target_repo.registry]

        for repo in self.extra_repos:
            if repo.registry not in found:
                found.append(repo.registry)

        return found


@define(kw_only=True)
class Driver(abc.ABC):
    """Base class to be used for all drivers.

    A driver provisions the environment where test images run, runs them one
    at a time and releases everything it created on teardown.

    Arguments:
        ctx: the run the driver belongs to.
    """

    options_type: ClassVar[Type] = dict

    ctx: DriverContext
    teardowns: Stack = field(factory=Stack, init=False)

    @classmethod
    @abc.abstractmethod
    def spec_name(cls) -> str:
        """Returns the name used to select this driver."""
        raise NotImplementedError

    @classmethod
    def from_options(cls, ctx: DriverContext, raw: Optional[Dict[str, Any]]) -> "Driver":
        """Creates a driver from its declarative configuration.

        Raises:
            InvalidInput: if the configuration is not valid.
        """
        try:
            options = CONVERTER.structure(raw or {}, cls.options_type)

        except (BaseValidationError, KeyError, TypeError, ValueError) as exc:
            raise InvalidInput(f"invalid {cls.spec_name()} driver configuration: {exc!r}") from exc

        return cls(ctx=ctx, options=options)  # type: ignore[call-arg]

    @abc.abstractmethod
    def setup(self, deadline: Deadline):
        """Provisions the environment.

        Arguments:
            deadline: bounds the provisioning.

        Raises:
            DriverSetupError: if the environment cannot be provisioned.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def run(self, deadline: Deadline, ref: Reference):
        """Runs a test image and waits for it to complete.

        Arguments:
            deadline: bounds the test, the container is killed when it expires.
            ref: the test image.

        Raises:
            TestError: if the test container fails.
            DeadlineExceeded: if the test does not complete in time.
        """
        raise NotImplementedError

    def teardown(self, deadline: Deadline):
        """Releases everything created by the driver.

        Arguments:
            deadline: bounds the teardown. It is never the run's deadline, so
                that expired runs are still cleaned up.

        Raises:
            TeardownError: if some resource cannot be released.
        """
        deadline.check("teardown")

        failures = self.teardowns.unwind()
        if failures:
            raise TeardownError("; ".join(failures))


class NotReady(Exception):
    """Raised by readiness probes while the resource is still starting."""


def wait_until(deadline: Deadline, what: str, probe: Callable[[], Any], interval: float = 1.0) -> Any:
    """Calls `probe` until it stops raising `NotReady` or the deadline expires.

    Arguments:
        deadline: bounds the wait.
        what: the resource being waited for, used in errors.
        probe: returns the value to hand back once the resource is ready.
        interval: seconds between two attempts.

    Raises:
        DriverSetupError: if the resource is not ready before the deadline.
    """
    retrying = Retrying(
        stop=lambda _: deadline.expired(),
        wait=wait_fixed(interval),
        retry=retry_if_exception_type(NotReady),
        sleep=deadline.wait,
        reraise=True,
    )

    try:
        return retrying(probe)

    except NotReady as exc:
        raise DriverSetupError(f"{what} not ready before the deadline: {exc}") from exc
