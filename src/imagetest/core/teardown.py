"""Decides whether a driver is torn down at the end of a run."""
from typing import Mapping, Optional

from attrs import define

from imagetest.core.config import TestExecutionConfig


def env_flag(environ: Mapping[str, str], name: str) -> bool:
    """Checks if a flag is set, either as `IMAGETEST_{name}` or as `name`.

    Any non-empty value sets the flag.
    """
    return bool(environ.get(f"IMAGETEST_{name}") or environ.get(name))


@define(frozen=True, kw_only=True)
class TeardownPolicy:
    """When to keep the resources of a driver around for inspection.

    Arguments:
        skip_teardown: never tear down.
        skip_teardown_on_failure: do not tear down runs that failed.
    """

    skip_teardown: bool = False
    skip_teardown_on_failure: bool = False

    @classmethod
    def from_config(cls, config: TestExecutionConfig, environ: Mapping[str, str]) -> "TeardownPolicy":
        """Combines the configuration with the `SKIP_TEARDOWN*` variables."""
        return cls(
            skip_teardown=config.skip_teardown or env_flag(environ, "SKIP_TEARDOWN"),
            skip_teardown_on_failure=config.skip_teardown_on_failure
            or env_flag(environ, "SKIP_TEARDOWN_ON_FAILURE"),
        )

    @property
    def pause_on_error(self) -> bool:
        """True when failing test containers should be kept alive."""
        return self.skip_teardown or self.skip_teardown_on_failure

    def skip_reason(self, failed: bool) -> Optional[str]:
        """Gets why the teardown is skipped, None when it must run.

        Arguments:
            failed: if the run produced any error.
        """
        if self.skip_teardown:
            return "teardown skipped because SKIP_TEARDOWN is set"

        if self.skip_teardown_on_failure and failed:
            return "teardown skipped because SKIP_TEARDOWN_ON_FAILURE is set and the run failed"

        return None
