"""Collective reduction of independent Markov chains.

Each worker runs one chain and returns a WorkerResult holding raw
accumulators. ResultAggregator.reduce sums them into one AggregatedResult;
normalization of the measurements happens afterwards, exactly once.

run_workers starts the chains, one per process, using a spawn context so
that every worker begins from a clean interpreter state.
"""

import concurrent.futures
import multiprocessing
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import torch

from ctqmcTensor.core.errors import ConsistencyError, ReductionError


@dataclass
class WorkerResult:
    """Raw output of one Markov chain.

    Attributes:
        rank: Worker rank
        measures: measurement name -> accumulator name -> tensor
        sign_sum: Sum of the Monte Carlo sign over measured cycles
        n_sign_samples: Number of terms in sign_sum
        n_cycles_done: Completed sampling cycles
        n_warmup_done: Completed warm-up cycles
        n_steps: Elementary steps performed (warm-up included)
        move_stats: move name -> (attempted, accepted)
        run_status: 'completed', 'budget_exceeded' or 'stopped'
        histograms: Diagnostic histograms of the weight computation
        elapsed: Wall-clock seconds of the run
        error: Error description if the chain failed, else None
        error_kind: Exception class name of the failure, else None
        failed_move: Last accepted move before a failed drift check
        expected_weight: Recomputed weight of a failed drift check
        tracked_weight: Tracked weight of a failed drift check
    """
    rank: int
    measures: Dict[str, Dict[str, torch.Tensor]] = field(default_factory=dict)
    sign_sum: float = 0.0
    n_sign_samples: int = 0
    n_cycles_done: int = 0
    n_warmup_done: int = 0
    n_steps: int = 0
    move_stats: Dict[str, Tuple[int, int]] = field(default_factory=dict)
    run_status: str = "completed"
    histograms: Dict[str, torch.Tensor] = field(default_factory=dict)
    elapsed: float = 0.0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    failed_move: Optional[str] = None
    expected_weight: Optional[float] = None
    tracked_weight: Optional[float] = None


@dataclass
class AggregatedResult:
    """Sum of all worker results.

    Attributes:
        measures: measurement name -> accumulator name -> summed tensor
        sign_sum: Total sign sum
        n_sign_samples: Total number of measured cycles
        average_sign: sign_sum / n_sign_samples (1.0 when nothing was measured)
        n_cycles_done: Total completed sampling cycles
        n_steps: Total elementary steps
        move_stats: move name -> (attempted, accepted), summed
        run_status: 'completed' if every worker completed, otherwise the
            first non-completed worker status
        histograms: Summed diagnostic histograms
        n_workers: Number of reduced workers
    """
    measures: Dict[str, Dict[str, torch.Tensor]]
    sign_sum: float
    n_sign_samples: int
    average_sign: float
    n_cycles_done: int
    n_steps: int
    move_stats: Dict[str, Tuple[int, int]]
    run_status: str
    histograms: Dict[str, torch.Tensor]
    n_workers: int

    @property
    def acceptance_rates(self) -> Dict[str, float]:
        return {
            name: (accepted / attempted if attempted > 0 else 0.0)
            for name, (attempted, accepted) in self.move_stats.items()
        }


def _pad_to(t: torch.Tensor, length: int) -> torch.Tensor:
    if t.shape[0] == length:
        return t
    padded = torch.zeros((length,) + tuple(t.shape[1:]), dtype=t.dtype)
    padded[: t.shape[0]] = t
    return padded


def _sum_tensors(name: str, key: str, tensors: List[torch.Tensor]) -> torch.Tensor:
    shapes = {tuple(t.shape) for t in tensors}
    if len(shapes) > 1:
        if all(t.dim() == 1 for t in tensors):
            length = max(t.shape[0] for t in tensors)
            tensors = [_pad_to(t, length) for t in tensors]
        else:
            raise ReductionError(
                f"Accumulator '{key}' of measurement '{name}' has mismatching shapes {sorted(shapes)}"
            )
    total = tensors[0].clone()
    for t in tensors[1:]:
        total = total + t
    return total


class ResultAggregator:
    """Element-wise reduction of WorkerResults.

    Attributes:
        time_budget: Wall-clock budget of the run in seconds, or None. Without
            a budget every worker must have completed the same number of cycles.
    """

    def __init__(self, time_budget: Optional[float] = None) -> None:
        self.time_budget = time_budget

    def _validate(self, results: Sequence[WorkerResult]) -> None:
        if not results:
            raise ReductionError("No worker results to reduce")

        for r in results:
            if r.error is not None:
                failure = ReductionError(f"Worker {r.rank} failed: {r.error_kind or 'Error'}: {r.error}")
                if r.error_kind == "ConsistencyError":
                    raise ConsistencyError(
                        f"Worker {r.rank}: {r.error}",
                        move_name=r.failed_move,
                        expected=r.expected_weight,
                        tracked=r.tracked_weight,
                    ) from failure
                raise failure
            if r.n_sign_samples != r.n_cycles_done:
                raise ReductionError(
                    f"Worker {r.rank} reports {r.n_sign_samples} sign samples "
                    f"but {r.n_cycles_done} completed cycles"
                )

        reference = results[0]
        names = set(reference.measures)
        for r in results[1:]:
            if set(r.measures) != names:
                raise ReductionError(
                    f"Worker {r.rank} measured {sorted(r.measures)}, "
                    f"worker {reference.rank} measured {sorted(names)}"
                )
            for name in names:
                if set(r.measures[name]) != set(reference.measures[name]):
                    raise ReductionError(f"Measurement '{name}' has mismatching accumulators on worker {r.rank}")

        if self.time_budget is None:
            cycles = {r.n_cycles_done for r in results}
            if len(cycles) > 1:
                raise ReductionError(
                    f"Workers disagree on the number of completed cycles: {sorted(cycles)}"
                )

    def reduce(self, results: Sequence[WorkerResult]) -> AggregatedResult:
        """Sum all accumulators, sign sums and counters.

        Raises:
            ConsistencyError: If a worker failed its drift check
            ReductionError: On failed, empty or inconsistent worker results
        """
        results = list(results)
        self._validate(results)

        measures: Dict[str, Dict[str, torch.Tensor]] = {}
        for name, accumulators in results[0].measures.items():
            measures[name] = {
                key: _sum_tensors(name, key, [r.measures[name][key] for r in results])
                for key in accumulators
            }

        move_stats: Dict[str, Tuple[int, int]] = {}
        for r in results:
            for name, (attempted, accepted) in r.move_stats.items():
                a, b = move_stats.get(name, (0, 0))
                move_stats[name] = (a + attempted, b + accepted)

        histograms: Dict[str, torch.Tensor] = {}
        for r in results:
            for key, hist in r.histograms.items():
                histograms[key] = hist.clone() if key not in histograms else _sum_tensors("histograms", key, [histograms[key], hist])

        sign_sum = sum(r.sign_sum for r in results)
        n_sign_samples = sum(r.n_sign_samples for r in results)
        statuses = [r.run_status for r in results if r.run_status != "completed"]

        return AggregatedResult(
            measures=measures,
            sign_sum=sign_sum,
            n_sign_samples=n_sign_samples,
            average_sign=sign_sum / n_sign_samples if n_sign_samples > 0 else 1.0,
            n_cycles_done=sum(r.n_cycles_done for r in results),
            n_steps=sum(r.n_steps for r in results),
            move_stats=move_stats,
            run_status=statuses[0] if statuses else "completed",
            histograms=histograms,
            n_workers=len(results),
        )


def run_workers(
    worker: Callable[..., WorkerResult],
    tasks: Sequence[Tuple[Any, ...]],
    n_workers: int = 1,
) -> List[WorkerResult]:
    """Run `worker(*task)` for every task, one process per task.

    `worker` must be a module-level function so that it can be pickled.
    With n_workers == 1 the tasks run in the calling process.

    Returns:
        Worker results in task order
    """
    if n_workers <= 1:
        return [worker(*task) for task in tasks]

    context = multiprocessing.get_context("spawn")
    with concurrent.futures.ProcessPoolExecutor(max_workers=n_workers, mp_context=context) as executor:
        futures = [executor.submit(worker, *task) for task in tasks]
        return [future.result() for future in futures]
