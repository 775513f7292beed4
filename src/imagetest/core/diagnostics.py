"""Diagnostics returned to the caller of a run."""
import enum
from typing import List, Optional

from attrs import define

from imagetest.core.errors import ImagetestError


@enum.unique
class Severity(enum.Enum):
    """How bad a diagnostic is. Any `ERROR` fails the run."""

    WARNING = "warning"
    ERROR = "error"


@define(frozen=True, kw_only=True)
class Diagnostic:
    """A message surfaced to the user at the end of a run.

    Arguments:
        severity: whether the diagnostic is a warning or an error.
        summary: short message keyed to the failing component.
        detail: the underlying cause.
    """

    severity: Severity
    summary: str
    detail: str = ""

    @classmethod
    def warning(cls, summary: str, detail: str = "") -> "Diagnostic":
        """Creates a warning diagnostic."""
        return cls(severity=Severity.WARNING, summary=summary, detail=detail)

    @classmethod
    def error(cls, summary: str, detail: str = "") -> "Diagnostic":
        """Creates an error diagnostic."""
        return cls(severity=Severity.ERROR, summary=summary, detail=detail)

    @classmethod
    def from_exception(cls, exc: ImagetestError, summary: Optional[str] = None) -> "Diagnostic":
        """Creates an error diagnostic from an imagetest error.

        Arguments:
            exc: the error to report.
            summary: overrides the summary carried by the error.
        """
        return cls.error(summary or exc.summary, str(exc))


class Diagnostics(List[Diagnostic]):
    """Ordered list of diagnostics collected during a run."""

    def has_error(self) -> bool:
        """Checks if any of the diagnostics is an error."""
        return any(diag.severity is Severity.ERROR for diag in self)

    def errors(self) -> List[Diagnostic]:
        """Returns only the error diagnostics."""
        return [diag for diag in self if diag.severity is Severity.ERROR]

    def warnings(self) -> List[Diagnostic]:
        """Returns only the warning diagnostics."""
        return [diag for diag in self if diag.severity is Severity.WARNING]
