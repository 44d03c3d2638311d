"""Tests for result aggregation."""

import random

import pytest

from matrixci.aggregate import aggregate
from matrixci.errors import AggregateFailure
from matrixci.model import CellResult, ExecutionPlan


def _plan(i, target="x86_64-unknown-linux-gnu", toolchain="stable"):
    return ExecutionPlan(
        index=i,
        toolchain=toolchain,
        env={"TARGET": target},
        cell_env={"TARGET": target},
        install=(),
        script=("true",),
    )


def _result(i, ok=True, **kw):
    return CellResult(plan=_plan(i, **kw), success=ok, exit_code=0 if ok else 1)


class TestAggregate:
    def test_all_succeed(self):
        verdict = aggregate([_result(0), _result(1), _result(2)])

        assert verdict.success is True
        assert verdict.failures == ()
        assert verdict.exit_code == 0
        verdict.raise_for_failure()

    def test_one_failure_names_exactly_that_cell(self):
        verdict = aggregate(
            [
                _result(0),
                _result(1, ok=False, target="thumbv7em-none-eabi", toolchain="nightly"),
                _result(2),
            ]
        )

        assert verdict.success is False
        assert verdict.exit_code == 1
        assert verdict.failing_cells == ["TARGET=thumbv7em-none-eabi toolchain=nightly"]

    def test_single_failure_beats_many_successes(self):
        results = [_result(i) for i in range(50)] + [_result(50, ok=False)]
        assert aggregate(results).success is False

    def test_completion_order_irrelevant(self):
        results = [_result(i, ok=(i % 3 != 0)) for i in range(9)]
        shuffled = results[:]
        random.Random(7).shuffle(shuffled)

        a = aggregate(results)
        b = aggregate(shuffled)

        assert [r.plan.index for r in b.results] == list(range(9))
        assert a == b

    def test_raise_for_failure(self):
        verdict = aggregate([_result(0, ok=False), _result(1, ok=False, toolchain="1.22.0")])

        with pytest.raises(AggregateFailure) as exc:
            verdict.raise_for_failure()

        assert exc.value.failures == [
            "TARGET=x86_64-unknown-linux-gnu toolchain=stable",
            "TARGET=x86_64-unknown-linux-gnu toolchain=1.22.0",
        ]
        assert "2 cell(s) failed" in str(exc.value)

    def test_cells_sharing_env_and_toolchain_stay_distinguishable(self):
        verdict = aggregate([_result(0, ok=False), _result(1), _result(2, ok=False)])

        assert verdict.failing_cells == [
            "TARGET=x86_64-unknown-linux-gnu toolchain=stable #1",
            "TARGET=x86_64-unknown-linux-gnu toolchain=stable #3",
        ]
