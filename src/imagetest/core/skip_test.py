from testfixtures import compare

from imagetest.core.skip import Verdict, evaluate


def test_evaluate__no_policy_runs_tests():
    compare(evaluate({"foo": "bar"}), Verdict(skipped=False))


def test_evaluate__skip_all_wins_over_matching_labels():
    verdict = evaluate({"foo": "bar"}, include={"foo": "bar"}, skip_all=True)

    compare(verdict, Verdict(skipped=True, reason="all tests skipped"))


def test_evaluate__include_label_with_different_value_skips():
    verdict = evaluate({"foo": "bar"}, include={"foo": "baz"})

    compare(verdict, Verdict(skipped=True, reason="does not match include labels: foo=baz"))


def test_evaluate__include_label_missing_skips():
    verdict = evaluate({}, include={"size": "medium"})

    compare(verdict, Verdict(skipped=True, reason="does not match include labels: size=medium"))


def test_evaluate__all_include_labels_must_match():
    verdict = evaluate({"size": "small", "arch": "amd64"}, include={"size": "small", "arch": "arm64"})

    compare(verdict, Verdict(skipped=True, reason="does not match include labels: arch=arm64"))


def test_evaluate__matching_include_labels_run():
    verdict = evaluate({"size": "small", "arch": "amd64"}, include={"size": "small"})

    compare(verdict, Verdict(skipped=False))


def test_evaluate__exclude_label_skips():
    verdict = evaluate({"flaky": "true"}, exclude={"flaky": "true"})

    compare(verdict, Verdict(skipped=True, reason="matches exclude label: flaky=true"))


def test_evaluate__exclude_label_with_different_value_runs():
    compare(evaluate({"flaky": "false"}, exclude={"flaky": "true"}), Verdict(skipped=False))


def test_evaluate__include_is_evaluated_before_exclude():
    verdict = evaluate(
        {"size": "small", "flaky": "true"},
        include={"size": "small"},
        exclude={"flaky": "true"},
    )

    compare(verdict, Verdict(skipped=True, reason="matches exclude label: flaky=true"))

    verdict = evaluate(
        {"size": "large", "flaky": "true"},
        include={"size": "small"},
        exclude={"flaky": "true"},
    )

    compare(verdict, Verdict(skipped=True, reason="does not match include labels: size=small"))


def test_evaluate__same_inputs_same_verdict():
    args = ({"foo": "bar"}, {"foo": "baz"}, {"spam": "eggs"}, False)

    compare(evaluate(*args), evaluate(*args))


def test_evaluate__none_labels_are_empty():
    compare(evaluate(None, include=None, exclude={"flaky": "true"}), Verdict(skipped=False))
