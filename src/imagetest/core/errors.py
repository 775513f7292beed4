"""Errors raised while assembling and running tests.

Each error carries a short summary keyed to the component that failed, the
underlying detail, and, when available, the reference of the assembled test
image so the failure can be reproduced locally.
"""
from typing import Optional


class ImagetestError(Exception):
    """Base class for all the errors raised by imagetest.

    Arguments:
        summary: short description of what failed.
        detail: the underlying cause.
        ref: reference of the test image involved, if any.
    """

    summary = "imagetest failed"

    def __init__(self, detail: str, summary: Optional[str] = None, ref: Optional[str] = None):
        super().__init__(detail)

        self.detail = detail
        self.ref = ref

        if summary is not None:
            self.summary = summary

    def __str__(self):
        if self.ref:
            return f"{self.detail} (image: {self.ref})"

        return self.detail


class InvalidInput(ImagetestError):
    """Raised when references, durations or driver names cannot be accepted."""

    summary = "invalid input"


class ImageAssemblyError(ImagetestError):
    """Raised when a test image cannot be assembled or pushed."""

    summary = "failed to assemble test image"


class DriverSetupError(ImagetestError):
    """Raised when a driver cannot provision its resources."""

    summary = "failed to setup driver"


class TestError(ImagetestError):
    """Raised when a test container exits with a non-zero code.

    Arguments:
        exit_code: the exit code of the test container, if known.
    """

    __test__ = False

    summary = "test failed"

    def __init__(
        self,
        detail: str,
        exit_code: Optional[int] = None,
        summary: Optional[str] = None,
        ref: Optional[str] = None,
    ):
        super().__init__(detail, summary=summary, ref=ref)

        self.exit_code = exit_code


class DeadlineExceeded(ImagetestError, TimeoutError):
    """Raised when a run or test deadline expires or gets cancelled."""

    summary = "deadline exceeded"


class TeardownError(ImagetestError):
    """Raised when a driver fails to release some of its resources."""

    summary = "failed to teardown driver"
