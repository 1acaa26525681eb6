"""Monte Carlo engine: configuration, weights, moves, measurements, scheduling."""

from ctqmcTensor.montecarlo.params import RunParameters, solve_parameters
from ctqmcTensor.montecarlo.configuration import Configuration, OperatorInsertion
from ctqmcTensor.montecarlo.weight import (
    TraceEvaluator,
    ExactTraceEvaluator,
    TruncatedTraceEvaluator,
    make_trace_evaluator,
    BlockDeterminant,
    WeightEvaluator,
)
from ctqmcTensor.montecarlo.moves import MoveABC, InsertMove, RemoveMove
from ctqmcTensor.montecarlo.measurements import (
    MeasurementABC,
    MeasureGTau,
    MeasurePerturbationHistogram,
    finalize_g_tau,
    finalize_perturbation_order,
    save_histogram,
)
from ctqmcTensor.montecarlo.aggregator import (
    WorkerResult,
    AggregatedResult,
    ResultAggregator,
    run_workers,
)
from ctqmcTensor.montecarlo.scheduler import MCScheduler, SchedulerState, clock_callback

__all__ = [
    "RunParameters",
    "solve_parameters",
    "Configuration",
    "OperatorInsertion",
    "TraceEvaluator",
    "ExactTraceEvaluator",
    "TruncatedTraceEvaluator",
    "make_trace_evaluator",
    "BlockDeterminant",
    "WeightEvaluator",
    "MoveABC",
    "InsertMove",
    "RemoveMove",
    "MeasurementABC",
    "MeasureGTau",
    "MeasurePerturbationHistogram",
    "finalize_g_tau",
    "finalize_perturbation_order",
    "save_histogram",
    "WorkerResult",
    "AggregatedResult",
    "ResultAggregator",
    "run_workers",
    "MCScheduler",
    "SchedulerState",
    "clock_callback",
]
