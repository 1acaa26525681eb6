import pytest
import torch

from ctqmcTensor.core import ConsistencyError, ReductionError
from ctqmcTensor.montecarlo import ResultAggregator, WorkerResult, run_workers


def worker_result(rank=0, cycles=10, g_scale=1.0, hist=(5.0, 3.0, 2.0), sign_sum=None):
    return WorkerResult(
        rank=rank,
        measures={
            "G measure (up)": {
                "g_tau": g_scale * torch.ones((5, 1, 1), dtype=torch.float64),
                "z": torch.tensor(float(cycles), dtype=torch.float64),
                "n_measures": torch.tensor(float(cycles), dtype=torch.float64),
            },
            "Perturbation order (up)": {
                "histogram": torch.tensor(hist, dtype=torch.float64),
                "z": torch.tensor(float(cycles), dtype=torch.float64),
                "n_measures": torch.tensor(float(cycles), dtype=torch.float64),
            },
        },
        sign_sum=float(cycles) if sign_sum is None else sign_sum,
        n_sign_samples=cycles,
        n_cycles_done=cycles,
        n_steps=cycles * 4,
        move_stats={"Insert Delta_up": (20, 5), "Remove Delta_up": (20, 4)},
    )


def test_single_worker_reduction_is_identity():
    result = worker_result()
    reduced = ResultAggregator().reduce([result])
    for name, accumulators in result.measures.items():
        for key, value in accumulators.items():
            assert torch.equal(reduced.measures[name][key], value)
    assert reduced.sign_sum == result.sign_sum
    assert reduced.n_cycles_done == result.n_cycles_done
    assert reduced.move_stats == result.move_stats
    assert reduced.n_workers == 1


def test_sums_and_pads_histograms():
    reduced = ResultAggregator().reduce([
        worker_result(rank=0, hist=(5.0, 3.0, 2.0)),
        worker_result(rank=1, g_scale=2.0, hist=(6.0, 4.0)),
    ])
    assert torch.equal(reduced.measures["Perturbation order (up)"]["histogram"],
                       torch.tensor([11.0, 7.0, 2.0], dtype=torch.float64))
    assert torch.allclose(reduced.measures["G measure (up)"]["g_tau"], 3.0 * torch.ones((5, 1, 1), dtype=torch.float64))
    assert reduced.move_stats["Insert Delta_up"] == (40, 10)
    assert reduced.acceptance_rates["Remove Delta_up"] == pytest.approx(0.2)
    assert reduced.average_sign == 1.0


def test_average_sign():
    reduced = ResultAggregator().reduce([worker_result(sign_sum=4.0), worker_result(rank=1, sign_sum=-2.0)])
    assert reduced.average_sign == pytest.approx(0.1)


def test_zero_accumulators_are_valid():
    result = worker_result(g_scale=0.0, hist=(0.0,))
    reduced = ResultAggregator().reduce([result])
    assert float(reduced.measures["G measure (up)"]["g_tau"].abs().sum()) == 0.0


def test_empty_worker_list():
    with pytest.raises(ReductionError):
        ResultAggregator().reduce([])


def test_failed_worker():
    failed = WorkerResult(rank=1, error="worker crashed")
    with pytest.raises(ReductionError, match="Worker 1"):
        ResultAggregator().reduce([worker_result(), failed])


def test_failed_drift_check_keeps_its_type():
    failed = WorkerResult(
        rank=1, error="Tracked weight deviates", error_kind="ConsistencyError",
        failed_move="Remove Delta_up", expected_weight=2.0, tracked_weight=2.5,
    )
    with pytest.raises(ConsistencyError, match="Remove Delta_up") as info:
        ResultAggregator().reduce([worker_result(), failed])
    assert info.value.move_name == "Remove Delta_up"
    assert info.value.expected == 2.0
    assert info.value.tracked == 2.5
    assert isinstance(info.value.__cause__, ReductionError)


def test_mismatching_measurements():
    other = worker_result(rank=1)
    del other.measures["Perturbation order (up)"]
    with pytest.raises(ReductionError):
        ResultAggregator().reduce([worker_result(), other])


def test_mismatching_shapes():
    other = worker_result(rank=1)
    other.measures["G measure (up)"]["g_tau"] = torch.ones((7, 1, 1), dtype=torch.float64)
    with pytest.raises(ReductionError):
        ResultAggregator().reduce([worker_result(), other])


def test_sign_count_must_match_cycles():
    bad = worker_result()
    bad.n_sign_samples = 9
    with pytest.raises(ReductionError):
        ResultAggregator().reduce([bad])


def test_cycle_counts_must_agree_without_budget():
    results = [worker_result(cycles=10), worker_result(rank=1, cycles=8)]
    with pytest.raises(ReductionError):
        ResultAggregator().reduce(results)
    reduced = ResultAggregator(time_budget=5.0).reduce(results)
    assert reduced.n_cycles_done == 18


def test_run_status_propagates():
    stopped = worker_result(rank=1)
    stopped.run_status = "budget_exceeded"
    reduced = ResultAggregator(time_budget=1.0).reduce([worker_result(), stopped])
    assert reduced.run_status == "budget_exceeded"


def test_run_workers_in_process():
    results = run_workers(worker_result, [(0,), (1,)], n_workers=1)
    assert [r.rank for r in results] == [0, 1]
