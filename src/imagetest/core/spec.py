"""Data structures describing a tests resource and the functions loading it
from a declarative definition."""
import enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml
from attrs import define, field
from cattrs import Converter
from cattrs.gen import make_dict_structure_fn, override

from imagetest.core.entrypoint import DEFAULT_WORK_DIR
from imagetest.core.errors import InvalidInput
from imagetest.core.reference import Reference, parse_reference

# defaults applied to the timeouts when not specified
DEFAULT_TESTS_TIMEOUT = "30m"
DEFAULT_TEST_TIMEOUT = "15m"


@enum.unique
class TestStatus(enum.Enum):
    """Represents the state of a single test during a run.

    Attributes:

    * `PENDING`: the test has not been executed yet.
    * `PASSED`: the test container exited successfully.
    * `FAILED`: the test container exited with a failure or could not run.
    * `TIMED_OUT`: the test did not complete before its deadline.
    * `CANCELLED`: the test was not executed because of a previous failure.
    """

    __test__ = False

    PENDING = "PENDING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


@define(frozen=True, kw_only=True)
class ContentSpec:
    """A local file or directory copied into the test image.

    Arguments:
        source: path on the local filesystem.
        target: directory of the test image where the content is placed.
    """

    source: str
    target: str = DEFAULT_WORK_DIR


@define(kw_only=True)
class TestSpec:
    """A single test, run as a container built on top of a base image.

    Arguments:
        name: identifies the test within a tests resource.
        base_image: the image the test image is built from.
        content: files added to the test image.
        envs: environment variables set in the test container.
        cmd: the command run by the test container, its exit code is the verdict.
        timeout: maximum duration of the test (i.e. `"5m"`).
        status: outcome of the test, updated during the run.
        ref: reference of the assembled test image, set during the run.
    """

    __test__ = False

    name: str
    base_image: Reference
    content: List[ContentSpec] = field(factory=list)
    envs: Dict[str, str] = field(factory=dict)
    cmd: str = ""
    timeout: Optional[str] = None
    status: TestStatus = TestStatus.PENDING
    ref: Optional[str] = None


@define(kw_only=True)
class TestsSpec:
    """An ordered list of tests sharing a driver, a set of images and a timeout.

    Arguments:
        name: name of the tests resource.
        driver: name of the driver used to run the tests.
        drivers: driver specific configurations keyed by driver name.
        images: images made available to the tests through `IMAGES`.
        tests: the tests to run, in order.
        timeout: maximum duration of the whole run, driver setup and teardown included.
        labels: metadata used to select which tests resources to run.
        repo: overrides the repository where test images are pushed.
        id: identifier generated when the tests run.
        skipped: set when the run was skipped.
    """

    __test__ = False

    driver: str
    name: str = "test"
    drivers: Dict[str, Dict[str, Any]] = field(factory=dict)
    images: Dict[str, Reference] = field(factory=dict)
    tests: List[TestSpec] = field(factory=list)
    timeout: str = DEFAULT_TESTS_TIMEOUT
    labels: Dict[str, str] = field(factory=dict)
    repo: Optional[str] = None
    id: Optional[str] = None
    skipped: bool = False

    @property
    def driver_config(self) -> Dict[str, Any]:
        """The configuration of the selected driver."""
        return self.drivers.get(self.driver) or {}


CONVERTER = Converter(detailed_validation=False)
CONVERTER.register_structure_hook(Reference, lambda value, _: parse_reference(value))
CONVERTER.register_unstructure_hook(Reference, str)
CONVERTER.register_structure_hook(
    TestSpec,
    make_dict_structure_fn(TestSpec, CONVERTER, base_image=override(rename="image")),
)


def parse_tests(data: Dict[str, Any]) -> TestsSpec:
    """Creates a tests resource from its declarative definition.

    Arguments:
        data: the decoded definition.

    Raises:
        InvalidInput: if the definition is not valid.
    """
    try:
        return CONVERTER.structure(data, TestsSpec)

    except InvalidInput:
        raise

    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidInput(f"invalid tests definition: {exc!r}") from exc


def load_tests(path: Path | str) -> TestsSpec:
    """Loads a tests resource from a TOML file.

    Arguments:
        path: the file's path.
    """
    data = toml.load(path)

    return parse_tests(data)
