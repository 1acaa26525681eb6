"""Generic Metropolis scheduler.

MCScheduler drives registered moves and measurements through warm-up and
sampling cycles. It knows nothing about diagrams: a move is anything with
attempt / accept / reject, a measurement anything with accumulate /
collect_results.

State machine:

    UNINITIALIZED -> WARMING_UP -> SAMPLING -> FINALIZING -> DONE

A time budget or an external stop request is polled at cycle boundaries and
sends the run straight to FINALIZING with the results gathered so far.
"""

import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ctqmcTensor.core.errors import (
    BudgetExceeded,
    ConfigurationError,
    ConsistencyError,
    DegenerateMoveError,
)
from ctqmcTensor.core.random import RandomSource
from ctqmcTensor.montecarlo.aggregator import WorkerResult
from ctqmcTensor.montecarlo.measurements import MeasurementABC
from ctqmcTensor.montecarlo.moves import MoveABC


class SchedulerState(Enum):
    UNINITIALIZED = "uninitialized"
    WARMING_UP = "warming_up"
    SAMPLING = "sampling"
    FINALIZING = "finalizing"
    DONE = "done"


def clock_callback(max_time: float) -> Callable[[], bool]:
    """Callback that returns True once `max_time` seconds have elapsed.

    A negative max_time gives a callback that never fires.
    """
    if max_time < 0:
        return lambda: False
    start = time.monotonic()
    return lambda: time.monotonic() - start >= max_time


class MCScheduler:
    """Markov-chain driver with weighted move selection.

    Attributes:
        rng: Random source of the chain (move choice and acceptance draws)
        n_cycles: Number of sampling cycles
        length_cycle: Elementary steps per cycle
        n_warmup_cycles: Warm-up cycles (no measurement)
        verbosity: Print level
        state: Current SchedulerState
        sign: Current Monte Carlo sign
        run_status: 'completed', 'budget_exceeded' or 'stopped' once done
    """

    def __init__(
        self,
        rng: RandomSource,
        n_cycles: int,
        length_cycle: int,
        n_warmup_cycles: int,
        verbosity: int = 0,
    ) -> None:
        self.rng = rng
        self.n_cycles = n_cycles
        self.length_cycle = length_cycle
        self.n_warmup_cycles = n_warmup_cycles
        self.verbosity = verbosity

        self.state = SchedulerState.UNINITIALIZED
        self._moves: List[Tuple[str, MoveABC, float]] = []
        self._measures: Dict[str, MeasurementABC] = {}
        self._checks: List[Tuple[Callable[[Optional[str]], float], int]] = []

        self.attempted: Dict[str, int] = {}
        self.accepted: Dict[str, int] = {}
        self.sign = 1.0
        self.sign_sum = 0.0
        self.n_sign_samples = 0
        self.n_cycles_done = 0
        self.n_warmup_done = 0
        self.n_steps = 0
        self.n_accepted_total = 0
        self.last_accepted: Optional[str] = None
        self.run_status = "completed"
        self.elapsed = 0.0

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #

    def _check_open(self) -> None:
        if self.state != SchedulerState.UNINITIALIZED:
            raise ConfigurationError("Moves and measurements cannot be added after start()")

    def add_move(self, move: MoveABC, name: str, weight: float = 1.0) -> None:
        self._check_open()
        if weight <= 0:
            raise ConfigurationError(f"Move '{name}' needs a positive weight, got {weight}")
        if name in self.attempted:
            raise ConfigurationError(f"Move '{name}' is already registered")
        self._moves.append((name, move, float(weight)))
        self.attempted[name] = 0
        self.accepted[name] = 0

    def add_measure(self, measure: MeasurementABC, name: str) -> None:
        self._check_open()
        if name in self._measures:
            raise ConfigurationError(f"Measurement '{name}' is already registered")
        self._measures[name] = measure

    def add_consistency_check(self, callback: Callable[[Optional[str]], float], interval: int) -> None:
        """Call `callback(last_move_name)` every `interval` accepted moves."""
        self._check_open()
        if interval <= 0:
            raise ConfigurationError("Consistency check interval must be positive")
        self._checks.append((callback, interval))

    @property
    def move_names(self) -> List[str]:
        return [name for name, _, _ in self._moves]

    @property
    def measure_names(self) -> List[str]:
        return list(self._measures)

    # ------------------------------------------------------------------ #
    # Running
    # ------------------------------------------------------------------ #

    def _select_move(self) -> Tuple[str, MoveABC]:
        total = sum(w for _, _, w in self._moves)
        u = self.rng.uniform(total)
        for name, move, w in self._moves:
            if u < w:
                return name, move
            u -= w
        name, move, _ = self._moves[-1]
        return name, move

    def _run_checks(self) -> None:
        for callback, interval in self._checks:
            if self.n_accepted_total % interval == 0:
                self._call_check(callback)

    def _call_check(self, callback) -> None:
        try:
            callback(self.last_accepted)
        except ConsistencyError as err:
            if err.move_name is None:
                raise ConsistencyError(
                    str(err), move_name=self.last_accepted, expected=err.expected, tracked=err.tracked
                ) from err
            raise

    def step(self) -> None:
        """One elementary Metropolis step."""
        name, move = self._select_move()
        self.attempted[name] += 1
        self.n_steps += 1
        try:
            ratio = move.attempt()
        except DegenerateMoveError:
            move.reject()
            return

        if ratio != 0.0 and self.rng.uniform() < min(1.0, abs(ratio)):
            self.sign *= move.accept()
            self.accepted[name] += 1
            self.n_accepted_total += 1
            self.last_accepted = name
            self._run_checks()
        else:
            move.reject()

    def _poll(self, stop_callback, stop_event) -> None:
        if stop_event is not None and stop_event.is_set():
            self.run_status = "stopped"
            raise BudgetExceeded("Stop requested")
        if stop_callback is not None and stop_callback():
            self.run_status = "budget_exceeded"
            raise BudgetExceeded("Time budget exhausted")

    def _report_progress(self, cycle: int, t_start: float) -> None:
        done = cycle + 1
        elapsed = time.monotonic() - t_start
        eta = elapsed / done * (self.n_cycles - done)
        print(f"  {100 * done // self.n_cycles:3d}% done, cycle {done}/{self.n_cycles}, "
              f"elapsed {elapsed:.1f}s, ETA {eta:.1f}s")

    def start(
        self,
        sign_init: float = 1.0,
        stop_callback: Optional[Callable[[], bool]] = None,
        stop_event=None,
    ) -> str:
        """Run warm-up and sampling.

        Args:
            sign_init: Sign of the initial configuration
            stop_callback: Returns True when the time budget is exhausted
            stop_event: Object with is_set(), for an external stop request

        Returns:
            The run status

        Raises:
            ConsistencyError: If a consistency check fails
        """
        if self.state != SchedulerState.UNINITIALIZED:
            raise ConfigurationError("A scheduler can only be started once")
        if not self._moves:
            raise ConfigurationError("No moves registered")

        self.sign = sign_init
        t_start = time.monotonic()
        report_every = max(1, self.n_cycles // 10)

        try:
            self.state = SchedulerState.WARMING_UP
            for _ in range(self.n_warmup_cycles):
                self._poll(stop_callback, stop_event)
                for _ in range(self.length_cycle):
                    self.step()
                self.n_warmup_done += 1

            self.state = SchedulerState.SAMPLING
            t_sampling = time.monotonic()
            for cycle in range(self.n_cycles):
                self._poll(stop_callback, stop_event)
                for _ in range(self.length_cycle):
                    self.step()
                for measure in self._measures.values():
                    measure.accumulate(self.sign)
                self.sign_sum += self.sign
                self.n_sign_samples += 1
                self.n_cycles_done += 1
                if self.verbosity >= 3 and (cycle + 1) % report_every == 0:
                    self._report_progress(cycle, t_sampling)
        except BudgetExceeded as signal:
            if self.verbosity >= 1:
                print(f"{signal} after {self.n_cycles_done} sampling cycles")

        self.state = SchedulerState.FINALIZING
        # Final drift check on the configuration the run ends with
        if self.n_accepted_total > 0:
            for callback, _ in self._checks:
                self._call_check(callback)
        self.elapsed = time.monotonic() - t_start

        if self.verbosity >= 2:
            self.print_summary()
        self.state = SchedulerState.DONE
        return self.run_status

    @property
    def acceptance_rates(self) -> Dict[str, float]:
        return {
            name: (self.accepted[name] / self.attempted[name] if self.attempted[name] else 0.0)
            for name in self.attempted
        }

    @property
    def average_sign(self) -> float:
        return self.sign_sum / self.n_sign_samples if self.n_sign_samples else 1.0

    def print_summary(self) -> None:
        print("Move statistics:")
        for name, rate in self.acceptance_rates.items():
            print(f"  {name}: {self.accepted[name]}/{self.attempted[name]} accepted ({rate:.4f})")
        print(f"Average sign: {self.average_sign:.6f}")
        print(f"Run time: {self.elapsed:.2f}s")

    def collect_results(self, rank: int = 0) -> WorkerResult:
        """Raw accumulators and counters of this chain."""
        return WorkerResult(
            rank=rank,
            measures={name: m.collect_results() for name, m in self._measures.items()},
            sign_sum=self.sign_sum,
            n_sign_samples=self.n_sign_samples,
            n_cycles_done=self.n_cycles_done,
            n_warmup_done=self.n_warmup_done,
            n_steps=self.n_steps,
            move_stats={name: (self.attempted[name], self.accepted[name]) for name in self.attempted},
            run_status=self.run_status,
            elapsed=self.elapsed,
        )
