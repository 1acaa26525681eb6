"""Run parameters of a CTQMC solve.

RunParameters is an immutable, validated bundle. Worker-dependent defaults
(seed, verbosity) are derived from the explicit `rank` field, never from
global process state.
"""

from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional

from ctqmcTensor.core.errors import ConfigurationError
from ctqmcTensor.core.random import BIT_GENERATORS, default_seed

# name -> (default, help)
PARAMETER_TABLE = {
    "n_cycles": (None, "Number of QMC cycles"),
    "length_cycle": (50, "Length of a single QMC cycle"),
    "n_warmup_cycles": (5000, "Number of cycles for thermalization"),
    "random_seed": (None, "Seed for random number generator (default: 34788 + 928374 * rank)"),
    "random_name": ("", "Name of random number generator"),
    "max_time": (-1, "Maximum runtime in seconds, use -1 to set infinite"),
    "verbosity": (None, "Verbosity level (default: 3 on rank 0, 0 otherwise)"),
    "use_trace_estimator": (False, "Calculate the full trace or use an estimate?"),
    "measure_g_tau": (True, "Whether to measure G(tau)"),
    "measure_pert_order": (False, "Whether to measure perturbation order"),
    "make_histograms": (False, "Make the analysis histograms of the trace computation"),
    "rank": (0, "Worker rank of this Markov chain"),
    "consistency_check_interval": (1000, "Accepted moves between two weight recomputations"),
    "consistency_tolerance": (1e-6, "Relative tolerance of the weight recomputation check"),
    "max_order": (1000, "Soft limit on the number of operator pairs per block"),
    "trace_estimator_cutoff": (1e-10, "Boltzmann weight below which states are dropped by the trace estimator"),
    "move_weights": (None, "Relative attempt weights {'insert': w, 'remove': w}"),
}


@dataclass(frozen=True)
class RunParameters:
    """Immutable parameter bundle of one Monte Carlo run.

    Attributes:
        n_cycles: Number of measurement cycles (required, positive)
        length_cycle: Elementary steps per cycle
        n_warmup_cycles: Thermalization cycles (no measurements)
        random_seed: RNG seed; None derives it from `rank`
        random_name: Bit-generator name ('' = engine default)
        max_time: Wall-clock budget in seconds, -1 for unbounded
        verbosity: Output level; None derives it from `rank`
        use_trace_estimator: Use the truncated trace instead of the full trace
        measure_g_tau: Accumulate G(τ)
        measure_pert_order: Accumulate the perturbation-order histogram
        make_histograms: Record diagnostic histograms of the trace computation
        rank: Worker rank of this chain
        consistency_check_interval: Accepted moves between drift checks
        consistency_tolerance: Relative tolerance of the drift check
        max_order: Soft limit on the number of pairs per block
        trace_estimator_cutoff: Boltzmann cutoff of the trace estimator
        move_weights: Relative attempt weights of insert and remove moves
    """
    n_cycles: int
    length_cycle: int = 50
    n_warmup_cycles: int = 5000
    random_seed: Optional[int] = None
    random_name: str = ""
    max_time: float = -1
    verbosity: Optional[int] = None
    use_trace_estimator: bool = False
    measure_g_tau: bool = True
    measure_pert_order: bool = False
    make_histograms: bool = False
    rank: int = 0
    consistency_check_interval: int = 1000
    consistency_tolerance: float = 1e-6
    max_order: int = 1000
    trace_estimator_cutoff: float = 1e-10
    move_weights: Dict[str, float] = field(default_factory=lambda: {"insert": 1.0, "remove": 1.0})

    def __post_init__(self) -> None:
        if isinstance(self.n_cycles, bool) or not isinstance(self.n_cycles, int) or self.n_cycles <= 0:
            raise ConfigurationError(f"n_cycles must be a positive integer, got {self.n_cycles!r}")
        if self.length_cycle <= 0:
            raise ConfigurationError(f"length_cycle must be positive, got {self.length_cycle}")
        if self.n_warmup_cycles < 0:
            raise ConfigurationError(f"n_warmup_cycles must be >= 0, got {self.n_warmup_cycles}")
        if self.rank < 0:
            raise ConfigurationError(f"rank must be >= 0, got {self.rank}")
        if self.random_name not in BIT_GENERATORS:
            raise ConfigurationError(
                f"Unknown random_name '{self.random_name}'. "
                f"Available: {sorted(k for k in BIT_GENERATORS if k)}"
            )
        if self.max_time != -1 and self.max_time < 0:
            raise ConfigurationError(f"max_time must be -1 or >= 0, got {self.max_time}")
        if self.consistency_check_interval <= 0:
            raise ConfigurationError("consistency_check_interval must be positive")
        if self.consistency_tolerance <= 0:
            raise ConfigurationError("consistency_tolerance must be positive")
        if self.max_order <= 0:
            raise ConfigurationError("max_order must be positive")
        if not 0 < self.trace_estimator_cutoff < 1:
            raise ConfigurationError("trace_estimator_cutoff must lie in (0, 1)")
        unknown = set(self.move_weights) - {"insert", "remove"}
        if unknown:
            raise ConfigurationError(f"Unknown move kinds in move_weights: {sorted(unknown)}")
        if any(w <= 0 for w in self.move_weights.values()):
            raise ConfigurationError("move_weights must be positive")

        # Worker-derived defaults
        if self.random_seed is None:
            object.__setattr__(self, "random_seed", default_seed(self.rank))
        if self.verbosity is None:
            object.__setattr__(self, "verbosity", 3 if self.rank == 0 else 0)

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> "RunParameters":
        """Build from a plain dict of options.

        Raises:
            ConfigurationError: On unknown option names or a missing n_cycles
        """
        known = {f.name for f in fields(cls)}
        unknown = set(params) - known
        if unknown:
            raise ConfigurationError(f"Unknown parameters: {sorted(unknown)}")
        if "n_cycles" not in params:
            raise ConfigurationError("Parameter 'n_cycles' is required")
        return cls(**params)

    def for_rank(self, rank: int) -> "RunParameters":
        """Copy for another worker; seed and verbosity follow the new rank
        unless they were given explicitly for rank 0."""
        seed = self.random_seed
        if seed == default_seed(self.rank):
            seed = default_seed(rank)
        else:
            seed = seed + rank
        verbosity = self.verbosity if rank == 0 else 0
        return replace(self, rank=rank, random_seed=seed, verbosity=verbosity)

    def weight_of(self, kind: str) -> float:
        return float(self.move_weights.get(kind, 1.0))

    @property
    def time_budget(self) -> Optional[float]:
        """Budget in seconds, or None when unbounded."""
        return None if self.max_time < 0 else float(self.max_time)


def solve_parameters() -> Dict[str, Dict[str, Any]]:
    """Table of the recognized run options with defaults and help strings."""
    return {
        name: {"default": default, "required": name == "n_cycles", "help": text}
        for name, (default, text) in PARAMETER_TABLE.items()
    }
