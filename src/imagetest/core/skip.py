"""Decides whether a tests resource should be skipped based on its labels."""
from typing import Mapping, Optional

from attrs import define


@define(frozen=True, kw_only=True)
class Verdict:
    """Outcome of the skip evaluation.

    Arguments:
        skipped: True when the tests must not run.
        reason: why the tests were skipped, empty if they were not.
    """

    skipped: bool
    reason: str = ""


def _pairs(labels: Mapping[str, str]) -> str:
    return " ".join(f"{key}={value}" for key, value in sorted(labels.items()))


def evaluate(
    labels: Optional[Mapping[str, str]],
    include: Optional[Mapping[str, str]] = None,
    exclude: Optional[Mapping[str, str]] = None,
    skip_all: bool = False,
) -> Verdict:
    """Evaluates the labels of a tests resource against the execution policy.

    Inclusion is evaluated before exclusion, which allows defining buckets of
    tests to run while excluding undesirable subsets, i.e. `size=small` as
    include label and `flaky=true` as exclude label runs all the small tests
    except the flaky ones.

    Arguments:
        labels: the labels attached to the tests resource.
        include: every key must be present in `labels` with the same value.
        exclude: any key present in `labels` with the same value skips the tests.
        skip_all: kill-switch skipping everything.

    Returns:
        The verdict. The same inputs always produce the same verdict.
    """
    labels = labels or {}
    include = include or {}
    exclude = exclude or {}

    if skip_all:
        return Verdict(skipped=True, reason="all tests skipped")

    missing = {key: value for key, value in include.items() if labels.get(key) != value}
    if missing:
        return Verdict(skipped=True, reason=f"does not match include labels: {_pairs(missing)}")

    matching = {
        key: value for key, value in exclude.items() if key in labels and labels[key] == value
    }
    if matching:
        return Verdict(skipped=True, reason=f"matches exclude label: {_pairs(matching)}")

    return Verdict(skipped=False)
