"""Hybridization-expansion continuous-time quantum Monte Carlo (CT-HYB).

The partition function is expanded in powers of the hybridization:

    Z = Σ_k ∫ dτ₁..dτ'_k  P · Tr_loc[T e^{-βH_loc} Π c(τ_i) c†(τ'_i)] · Π_b det D_b

with D_b[j, i] = Δ_{a'_j a_i}(τ'_j - τ_i). Diagrams are sampled with pairs of
insert/remove moves per block, the Green's function is measured by removing
hybridization lines:

    G_ab(τ) = -(1/β) ⟨ Σ_ij M_ij δ⁻(τ, τ_i - τ'_j) ⟩,   M = D^{-1}

**Run structure:**
- Each worker runs one independent Markov chain (own seed, own configuration)
- Accumulators are reduced once at the end of the run
- G(τ) and the perturbation-order histogram are normalized after reduction

Usage Example:
    >>> solver = CTHYBSolver(beta=10.0, gf_struct={"up": [0], "down": [0]},
    ...                      n_iw=50, n_tau=201)
    >>> delta = HybridizationFunction.from_bath_levels(
    ...     10.0, solver.gf_struct, {"up": [(0.0, [1.0])], "down": [(0.0, [1.0])]}, 201)
    >>> solver.solve(h_matrix, delta_tau=delta, n_cycles=10000)
    >>> G_up = solver.G_tau["up"]

References:
    - Werner et al., Phys. Rev. Lett. 97, 076405 (2006)
    - Gull et al., Rev. Mod. Phys. 83, 349 (2011)
    - Seth et al., "TRIQS/CTHYB", Comput. Phys. Commun. 200, 274 (2016)
"""

import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import torch

from ctqmcTensor.core.base import BaseTensor, BlockGf
from ctqmcTensor.core.errors import ConfigurationError, ConsistencyError
from ctqmcTensor.core.random import RandomSource
from ctqmcTensor.manybody.hybridization import HybridizationFunction
from ctqmcTensor.manybody.operators import MAX_FLAVORS, FockSpace, LocalHamiltonian
from ctqmcTensor.montecarlo.aggregator import (
    AggregatedResult,
    ResultAggregator,
    WorkerResult,
    run_workers,
)
from ctqmcTensor.montecarlo.measurements import (
    MeasureGTau,
    MeasurePerturbationHistogram,
    finalize_g_tau,
    finalize_perturbation_order,
    save_histogram,
)
from ctqmcTensor.montecarlo.moves import InsertMove, RemoveMove
from ctqmcTensor.montecarlo.params import RunParameters
from ctqmcTensor.montecarlo.scheduler import MCScheduler, clock_callback
from ctqmcTensor.montecarlo.weight import WeightEvaluator, make_trace_evaluator

from .base import ImpuritySolverABC


def insert_move_name(block: str) -> str:
    return f"Insert Delta_{block}"


def remove_move_name(block: str) -> str:
    return f"Remove Delta_{block}"


def g_measure_name(block: str) -> str:
    return f"G measure ({block})"


def pert_order_name(block: str) -> str:
    return f"Perturbation order ({block})"


def build_scheduler(
    h_loc: LocalHamiltonian,
    delta: HybridizationFunction,
    n_tau: int,
    params: RunParameters,
) -> Tuple[MCScheduler, WeightEvaluator]:
    """Assemble one Markov chain: weight evaluator, moves and measurements.

    Args:
        h_loc: Local Hamiltonian
        delta: Hybridization function
        n_tau: Number of τ points of the measured G(τ)
        params: Run parameters of this chain

    Returns:
        (scheduler, weight evaluator), ready to start
    """
    beta = delta.beta
    trace_evaluator = make_trace_evaluator(
        h_loc,
        beta,
        use_trace_estimator=params.use_trace_estimator,
        cutoff=params.trace_estimator_cutoff,
        make_histograms=params.make_histograms,
    )
    data = WeightEvaluator(beta, h_loc, delta, trace_evaluator)
    rng = RandomSource(params.random_seed, params.random_name)

    scheduler = MCScheduler(
        rng,
        n_cycles=params.n_cycles,
        length_cycle=params.length_cycle,
        n_warmup_cycles=params.n_warmup_cycles,
        verbosity=params.verbosity,
    )
    w_insert = params.weight_of("insert")
    w_remove = params.weight_of("remove")
    for b, name in enumerate(h_loc.fock.block_names):
        size = delta.block_size(b)
        scheduler.add_move(
            InsertMove(b, size, data, rng, max_order=params.max_order,
                       selection_ratio=w_remove / w_insert),
            insert_move_name(name),
            weight=w_insert,
        )
        scheduler.add_move(
            RemoveMove(b, size, data, rng, selection_ratio=w_insert / w_remove),
            remove_move_name(name),
            weight=w_remove,
        )

    for b, name in enumerate(h_loc.fock.block_names):
        if params.measure_g_tau:
            scheduler.add_measure(MeasureGTau(b, n_tau, data), g_measure_name(name))
        if params.measure_pert_order:
            scheduler.add_measure(MeasurePerturbationHistogram(b, data), pert_order_name(name))

    scheduler.add_consistency_check(
        lambda move_name: data.check_consistency(params.consistency_tolerance, move_name),
        params.consistency_check_interval,
    )
    return scheduler, data


def run_chain(
    h_loc: LocalHamiltonian,
    delta: HybridizationFunction,
    n_tau: int,
    params: RunParameters,
    stop_event=None,
) -> WorkerResult:
    """Run one Markov chain to completion and return its raw results.

    A failed drift check is reported in the error fields of WorkerResult;
    the reduction then raises it again as ConsistencyError.
    """
    scheduler, data = build_scheduler(h_loc, delta, n_tau, params)
    try:
        scheduler.start(
            sign_init=data.sign,
            stop_callback=clock_callback(params.max_time),
            stop_event=stop_event,
        )
    except ConsistencyError as err:
        return WorkerResult(
            rank=params.rank,
            error=err.detail,
            error_kind="ConsistencyError",
            failed_move=err.move_name,
            expected_weight=err.expected,
            tracked_weight=err.tracked,
        )

    result = scheduler.collect_results(params.rank)
    result.histograms = {**data.histograms, **data.trace_evaluator.histograms}
    return result


class CTHYBSolver(ImpuritySolverABC):
    """Hybridization-expansion CTQMC impurity solver.

    Attributes:
        beta: Inverse temperature
        gf_struct: Ordered mapping block name -> inner indices
        n_iw: Number of Matsubara frequencies
        n_tau: Number of τ points of G(τ) and Δ(τ)
        Delta_tau: BlockGf of Δ(τ), may be filled in place before solve()
        G_tau: BlockGf of the measured G(τ)
        perturbation_order: Block name -> normalized histogram (if measured)
        average_sign: Average Monte Carlo sign
        acceptance_rates: Move name -> acceptance rate
        run_status: 'completed', 'budget_exceeded' or 'stopped'
        n_cycles_done: Sampling cycles completed by all workers together
        trace_histograms: Diagnostic histograms (if make_histograms)
        results: Reduced raw results of the last run
    """

    def __init__(
        self,
        beta: float,
        gf_struct: Dict[str, Sequence[Any]],
        n_iw: int = 1025,
        n_tau: int = 10001,
    ) -> None:
        """Initialize the solver and allocate the τ containers.

        Args:
            beta: Inverse temperature (β = 1/k_B T)
            gf_struct: Ordered mapping block name -> inner indices
            n_iw: Number of Matsubara frequencies
            n_tau: Number of imaginary-time points

        Raises:
            ConfigurationError: If n_iw < 1, n_tau <= 2 * n_iw or the input is malformed
        """
        if beta <= 0:
            raise ConfigurationError(f"beta must be positive, got {beta}")
        if n_iw < 1:
            raise ConfigurationError(f"n_iw must be at least 1, got {n_iw}")
        if n_tau < 2:
            raise ConfigurationError(f"n_tau must be at least 2, got {n_tau}")
        if n_tau <= 2 * n_iw:
            raise ConfigurationError(
                f"n_tau ({n_tau}) must be larger than 2 * n_iw ({2 * n_iw})"
            )
        if not gf_struct or any(len(idx) == 0 for idx in gf_struct.values()):
            raise ConfigurationError("gf_struct must declare non-empty blocks")

        self.beta = float(beta)
        self.gf_struct = {name: list(idx) for name, idx in gf_struct.items()}
        self.n_iw = n_iw
        self.n_tau = n_tau

        self.G_tau = self._allocate()
        self.Delta_tau = self._allocate()

        self.perturbation_order: Dict[str, torch.Tensor] = {}
        self.average_sign: Optional[float] = None
        self.acceptance_rates: Dict[str, float] = {}
        self.run_status: Optional[str] = None
        self.n_cycles_done = 0
        self.trace_histograms: Dict[str, torch.Tensor] = {}
        self.results: Optional[AggregatedResult] = None
        self.last_solve_parameters: Optional[RunParameters] = None

    def _allocate(self) -> BlockGf:
        return BlockGf({
            name: BaseTensor.imaginary_time(
                self.beta, self.n_tau, len(idx), orbital_names=[str(i) for i in idx]
            )
            for name, idx in self.gf_struct.items()
        })

    @property
    def solver_name(self) -> str:
        return "CTHYB"

    @property
    def supported_orbitals(self) -> int:
        return MAX_FLAVORS

    def _local_hamiltonian(
        self,
        h_loc: Union[torch.Tensor, LocalHamiltonian],
        quantum_numbers: Optional[Sequence[torch.Tensor]],
        use_quantum_numbers: bool,
    ) -> LocalHamiltonian:
        if isinstance(h_loc, LocalHamiltonian):
            if h_loc.fock.gf_struct != self.gf_struct:
                raise ConfigurationError("h_loc was built for a different gf_struct")
            return h_loc
        return LocalHamiltonian(
            FockSpace(self.gf_struct),
            h_loc,
            quantum_numbers=quantum_numbers,
            use_quantum_numbers=use_quantum_numbers,
        )

    def _hybridization(self, delta_tau: Optional[HybridizationFunction]) -> HybridizationFunction:
        if delta_tau is None:
            return HybridizationFunction(self.beta, self.gf_struct, self.Delta_tau)
        if abs(delta_tau.beta - self.beta) > 1e-12:
            raise ConfigurationError(f"delta_tau was built for beta={delta_tau.beta}, solver has beta={self.beta}")
        for name, block in delta_tau.blocks.items():
            if block.shape == self.Delta_tau[name].shape:
                self.Delta_tau[name] = block.copy()
        return delta_tau

    def solve(
        self,
        h_loc: Union[torch.Tensor, LocalHamiltonian],
        params: Optional[RunParameters] = None,
        quantum_numbers: Optional[Sequence[torch.Tensor]] = None,
        use_quantum_numbers: bool = False,
        delta_tau: Optional[HybridizationFunction] = None,
        n_workers: int = 1,
        stop_event=None,
        **param_kwargs,
    ) -> BlockGf:
        """Sample the impurity problem and measure G(τ).

        Args:
            h_loc: Local Hamiltonian, a dense matrix on the Fock space of
                gf_struct or a LocalHamiltonian
            params: Run parameters; alternatively give them as keywords
            quantum_numbers: Diagonal operators commuting with h_loc
            use_quantum_numbers: Use quantum numbers to partition the Hilbert
                space (otherwise it is partitioned automatically)
            delta_tau: Hybridization function; defaults to self.Delta_tau
            n_workers: Number of independent Markov chains (one per process)
            stop_event: Object with is_set() polled at cycle boundaries
            **param_kwargs: RunParameters options, e.g. n_cycles=10000

        Returns:
            BlockGf with G(τ), labels=['tau', 'orb_i', 'orb_j'] per block

        Raises:
            ConfigurationError: On invalid input or parameters
            ConsistencyError: If a worker failed its drift check
            ReductionError: If the worker results cannot be combined
        """
        if params is None:
            params = RunParameters.from_dict(param_kwargs)
        elif param_kwargs:
            raise ConfigurationError("Give run parameters either as params or as keywords, not both")
        if n_workers < 1:
            raise ConfigurationError(f"n_workers must be >= 1, got {n_workers}")

        local = self._local_hamiltonian(h_loc, quantum_numbers, use_quantum_numbers)
        delta = self._hybridization(delta_tau)
        self.last_solve_parameters = params

        verbose = params.verbosity
        if verbose >= 1:
            print(f"CTHYB: beta={self.beta}, blocks={list(self.gf_struct)}, "
                  f"{local.n_sectors} sectors, {n_workers} worker(s)")
            print(f"  n_cycles={params.n_cycles}, length_cycle={params.length_cycle}, "
                  f"n_warmup_cycles={params.n_warmup_cycles}")

        t_start = time.monotonic()
        tasks = [
            (local, delta, self.n_tau, params.for_rank(rank) if rank else params, stop_event)
            for rank in range(n_workers)
        ]
        worker_results = run_workers(run_chain, tasks, n_workers=n_workers)
        self.results = ResultAggregator(params.time_budget).reduce(worker_results)
        self._collect(self.results)

        if verbose >= 1:
            print(f"CTHYB finished ({self.run_status}): {self.n_cycles_done} cycles "
                  f"in {time.monotonic() - t_start:.2f}s")
        if verbose >= 2:
            for name, rate in self.acceptance_rates.items():
                print(f"  {name}: acceptance {rate:.4f}")
            print(f"  Average sign: {self.average_sign:.6f}")
        return self.G_tau

    def _collect(self, results: AggregatedResult) -> None:
        """Normalize the reduced accumulators into the output attributes."""
        self.average_sign = results.average_sign
        self.acceptance_rates = results.acceptance_rates
        self.run_status = results.run_status
        self.n_cycles_done = results.n_cycles_done
        self.trace_histograms = results.histograms

        self.perturbation_order = {}
        for name, idx in self.gf_struct.items():
            g_name = g_measure_name(name)
            if g_name in results.measures:
                self.G_tau[name] = finalize_g_tau(
                    results.measures[g_name], self.beta, orbital_names=[str(i) for i in idx]
                )
            p_name = pert_order_name(name)
            if p_name in results.measures:
                self.perturbation_order[name] = finalize_perturbation_order(results.measures[p_name])

    def save_perturbation_order(self, directory: Union[str, Path] = ".") -> List[Path]:
        """Write every measured histogram to histo_pert_order_<block>.dat.

        Returns:
            Paths of the written files
        """
        directory = Path(directory)
        return [
            save_histogram(hist, directory / f"histo_pert_order_{name}.dat")
            for name, hist in self.perturbation_order.items()
        ]
