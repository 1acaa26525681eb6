import threading

import pytest
import torch

from ctqmcTensor.core import ConfigurationError, ConsistencyError, DegenerateMoveError, RandomSource
from ctqmcTensor.montecarlo import MCScheduler, MeasurementABC, MoveABC, SchedulerState, clock_callback


class FixedRatioMove(MoveABC):
    def __init__(self, ratio, sign=1.0):
        self.ratio = ratio
        self.sign = sign
        self.accepted = 0
        self.rejected = 0

    def attempt(self):
        return self.ratio

    def accept(self):
        self.accepted += 1
        return self.sign

    def reject(self):
        self.rejected += 1


class DegenerateMove(FixedRatioMove):
    def attempt(self):
        raise DegenerateMoveError("nothing to do")


class CountingMeasure(MeasurementABC):
    def __init__(self):
        self.calls = 0
        self.z = 0.0

    def accumulate(self, sign):
        self.calls += 1
        self.z += sign

    def collect_results(self):
        return {"z": torch.tensor(self.z), "n_measures": torch.tensor(float(self.calls))}


def make_scheduler(**kwargs):
    options = dict(n_cycles=50, length_cycle=4, n_warmup_cycles=5)
    options.update(kwargs)
    return MCScheduler(RandomSource(1), **options)


def test_state_machine_and_counts():
    scheduler = make_scheduler()
    move, measure = FixedRatioMove(1.0), CountingMeasure()
    scheduler.add_move(move, "always")
    scheduler.add_measure(measure, "count")
    assert scheduler.state == SchedulerState.UNINITIALIZED
    status = scheduler.start()
    assert status == "completed"
    assert scheduler.state == SchedulerState.DONE
    assert measure.calls == 50
    assert scheduler.n_steps == (50 + 5) * 4
    assert move.accepted == scheduler.n_steps
    assert scheduler.acceptance_rates["always"] == 1.0


def test_registration_frozen_after_start():
    scheduler = make_scheduler(n_cycles=1, n_warmup_cycles=0)
    scheduler.add_move(FixedRatioMove(1.0), "m")
    scheduler.start()
    with pytest.raises(ConfigurationError):
        scheduler.add_move(FixedRatioMove(1.0), "other")
    with pytest.raises(ConfigurationError):
        scheduler.add_measure(CountingMeasure(), "count")
    with pytest.raises(ConfigurationError):
        scheduler.start()


def test_duplicate_names_rejected():
    scheduler = make_scheduler()
    scheduler.add_move(FixedRatioMove(1.0), "m")
    with pytest.raises(ConfigurationError):
        scheduler.add_move(FixedRatioMove(1.0), "m")
    with pytest.raises(ConfigurationError):
        scheduler.add_move(FixedRatioMove(1.0), "n", weight=0.0)


def test_no_moves_rejected():
    with pytest.raises(ConfigurationError):
        make_scheduler().start()


def test_zero_ratio_and_degenerate_moves_rejected():
    scheduler = make_scheduler()
    zero, degenerate = FixedRatioMove(0.0), DegenerateMove(1.0)
    scheduler.add_move(zero, "zero")
    scheduler.add_move(degenerate, "degenerate")
    scheduler.start()
    assert zero.accepted == 0 and degenerate.accepted == 0
    assert zero.rejected + degenerate.rejected == scheduler.n_steps
    assert scheduler.n_accepted_total == 0


def test_move_selection_follows_weights():
    scheduler = make_scheduler(n_cycles=1000, n_warmup_cycles=0)
    scheduler.add_move(FixedRatioMove(1.0), "heavy", weight=3.0)
    scheduler.add_move(FixedRatioMove(1.0), "light", weight=1.0)
    scheduler.start()
    fraction = scheduler.attempted["heavy"] / scheduler.n_steps
    assert fraction == pytest.approx(0.75, abs=0.03)


def test_sign_follows_accepted_moves():
    scheduler = make_scheduler(n_cycles=1, length_cycle=3, n_warmup_cycles=0)
    scheduler.add_move(FixedRatioMove(1.0, sign=-1.0), "flip")
    scheduler.start()
    assert scheduler.sign == -1.0
    assert scheduler.sign_sum == -1.0


def test_consistency_check_interval_and_move_name():
    calls = []
    scheduler = make_scheduler(n_cycles=10, length_cycle=10, n_warmup_cycles=0)
    scheduler.add_move(FixedRatioMove(1.0), "always")
    scheduler.add_consistency_check(lambda name: calls.append(name), interval=25)
    scheduler.start()
    # 100 accepted moves: 4 periodic checks and one final check
    assert len(calls) == 5
    assert set(calls) == {"always"}


def test_consistency_error_names_last_move():
    def failing(name):
        raise ConsistencyError("weight drifted")

    scheduler = make_scheduler()
    scheduler.add_move(FixedRatioMove(1.0), "Insert Delta_up")
    scheduler.add_consistency_check(failing, interval=3)
    with pytest.raises(ConsistencyError) as info:
        scheduler.start()
    assert info.value.move_name == "Insert Delta_up"


def test_budget_exceeded_keeps_partial_results():
    scheduler = make_scheduler(n_cycles=10 ** 9, n_warmup_cycles=0)
    measure = CountingMeasure()
    scheduler.add_move(FixedRatioMove(1.0), "m")
    scheduler.add_measure(measure, "count")
    status = scheduler.start(stop_callback=clock_callback(0.2))
    assert status == "budget_exceeded"
    assert scheduler.state == SchedulerState.DONE
    assert 0 < scheduler.n_cycles_done < 10 ** 9
    assert measure.calls == scheduler.n_cycles_done == scheduler.n_sign_samples


def test_zero_budget_stops_before_sampling():
    scheduler = make_scheduler()
    scheduler.add_move(FixedRatioMove(1.0), "m")
    assert scheduler.start(stop_callback=clock_callback(0.0)) == "budget_exceeded"
    assert scheduler.n_steps == 0
    assert scheduler.n_cycles_done == 0


def test_stop_event():
    event = threading.Event()
    event.set()
    scheduler = make_scheduler()
    scheduler.add_move(FixedRatioMove(1.0), "m")
    assert scheduler.start(stop_event=event) == "stopped"


def test_unbounded_clock_never_fires():
    assert clock_callback(-1)() is False


def test_collect_results():
    scheduler = make_scheduler()
    scheduler.add_move(FixedRatioMove(0.0), "m")
    scheduler.add_measure(CountingMeasure(), "count")
    scheduler.start()
    result = scheduler.collect_results(rank=3)
    assert result.rank == 3
    assert result.n_cycles_done == 50
    assert result.n_sign_samples == 50
    assert result.move_stats["m"] == (scheduler.n_steps, 0)
    assert float(result.measures["count"]["n_measures"]) == 50.0
