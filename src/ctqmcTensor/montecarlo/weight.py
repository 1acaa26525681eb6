"""Monte Carlo weight of a hybridization-expansion diagram.

A diagram with k_b pairs (c, c†) in every block b has the weight

    W = P · Tr_loc[ T_τ e^{-βH_loc} Π c(τ_i) c†(τ'_i) ] · Π_b det D_b

    D_b[j, i] = Δ_{a'_j a_i}(τ'_j - τ_i)      (row j: c†, column i: c)

where P = ±1 is the parity of the permutation that brings the operators from
the reference order (c_0 c†_0 c_1 c†_1 ..., block after block, in determinant
order) into descending time order. The trace is then an ordinary product of
eigenbasis matrices and evolution factors e^{-Δτ E}.

- The trace is evaluated by a pluggable TraceEvaluator (exact, or truncated
  to low-lying states) that only follows sector chains allowed by the
  quantum numbers.
- Each determinant is carried together with its inverse and updated with
  Schur-complement formulas on insertion/removal of one row and one column.
- Everything can be recomputed from scratch; the periodic comparison of both
  is the consistency check of the run.

References:
    - P. Werner et al., Phys. Rev. Lett. 97, 076405 (2006)
    - E. Gull et al., Rev. Mod. Phys. 83, 349 (2011), Sec. III.B
"""

from abc import ABC, abstractmethod
import math
from typing import Dict, List, Optional, Sequence, Tuple
import torch

from ctqmcTensor.core.errors import ConfigurationError, ConsistencyError, DegenerateMoveError
from ctqmcTensor.manybody.hybridization import HybridizationFunction
from ctqmcTensor.manybody.operators import LocalHamiltonian
from ctqmcTensor.montecarlo.configuration import Configuration, OperatorInsertion

# log10 |trace ratio| histogram range of the diagnostic histograms
LOG_RATIO_BINS = 100
LOG_RATIO_RANGE = (-25.0, 25.0)


class TraceEvaluator(ABC):
    """Strategy computing Tr_loc over a time-ordered operator sequence.

    Subclasses choose which eigenstates of each sector take part in the
    trace; the sector-chain propagation is shared.

    Attributes:
        h_loc: Local Hamiltonian in its sector eigenbasis
        beta: Inverse temperature
        histograms: Diagnostic histograms when `make_histograms` is set
    """

    def __init__(self, h_loc: LocalHamiltonian, beta: float, make_histograms: bool = False) -> None:
        self.h_loc = h_loc
        self.beta = beta
        self.make_histograms = make_histograms

        fock = h_loc.fock
        self._flavors = [
            [fock.flavor(b, inner) for inner in range(fock.block_size(b))]
            for b in range(len(fock.block_names))
        ]

        kept = [self._kept_states(sector) for sector in h_loc.sectors]
        self._energies = [s.energies[idx] for s, idx in zip(h_loc.sectors, kept)]
        self._dims = [len(idx) for idx in kept]

        self._targets: Dict[Tuple[bool, int], List[int]] = {}
        self._blocks: Dict[Tuple[bool, int], List[Optional[torch.Tensor]]] = {}
        for flavor in range(fock.n_flavors):
            for dagger in (False, True):
                targets, blocks = [], []
                for s in range(h_loc.n_sectors):
                    t = h_loc.target_sector(dagger, flavor, s)
                    if t < 0 or self._dims[s] == 0 or self._dims[t] == 0:
                        targets.append(-1)
                        blocks.append(None)
                        continue
                    block = h_loc.operator_block(dagger, flavor, s)
                    targets.append(t)
                    blocks.append(block[kept[t]][:, kept[s]].contiguous())
                self._targets[(dagger, flavor)] = targets
                self._blocks[(dagger, flavor)] = blocks

        self.histograms: Dict[str, torch.Tensor] = {}
        if make_histograms:
            self.histograms["contributing_sectors"] = torch.zeros(h_loc.n_sectors + 1, dtype=torch.float64)

    @abstractmethod
    def _kept_states(self, sector) -> torch.Tensor:
        """Indices of the sector eigenstates entering the trace."""
        raise NotImplementedError("Trace evaluators must implement _kept_states()")

    @property
    @abstractmethod
    def name(self) -> str:
        raise NotImplementedError("Trace evaluators must implement name")

    def _sector_path(self, start: int, keys: Sequence[Tuple[bool, int]]) -> Optional[List[int]]:
        """Sectors visited from `start`; None if the chain dies or does not close."""
        path = [start]
        current = start
        for key in keys:
            current = self._targets[key][current]
            if current < 0:
                return None
            path.append(current)
        if current != start:
            return None
        return path

    def trace(self, ops_descending: Sequence[OperatorInsertion]) -> float:
        """Tr[e^{-(β-τ_1)H} O_1 e^{-(τ_1-τ_2)H} O_2 ... O_m e^{-τ_m H}].

        Args:
            ops_descending: Operators sorted by decreasing τ (τ_1 > τ_2 > ...)

        Returns:
            The trace in units of exp(-β E0)
        """
        ascending = list(reversed(ops_descending))
        keys = [(op.dagger, self._flavors[op.block][op.inner]) for op in ascending]

        total = 0.0
        n_contributing = 0
        for start in range(len(self._dims)):
            if self._dims[start] == 0:
                continue
            path = self._sector_path(start, keys)
            if path is None:
                continue
            n_contributing += 1
            total += self._propagate(path, keys, ascending)

        if self.make_histograms:
            self.histograms["contributing_sectors"][n_contributing] += 1
        return total

    def _propagate(self, path: List[int], keys, ascending) -> float:
        X: Optional[torch.Tensor] = None
        previous = 0.0
        for step, (key, op) in enumerate(zip(keys, ascending)):
            sector = path[step]
            evolution = torch.exp(-(op.tau - previous) * self._energies[sector])
            block = self._blocks[key][sector]
            if X is None:
                X = block * evolution[None, :]
            else:
                X = block @ (evolution[:, None] * X)
            previous = op.tau
        evolution = torch.exp(-(self.beta - previous) * self._energies[path[-1]])
        if X is None:
            return float(evolution.sum())
        return float((evolution * torch.diagonal(X)).sum())


class ExactTraceEvaluator(TraceEvaluator):
    """Full trace over every eigenstate of every sector."""

    name = "exact"

    def _kept_states(self, sector) -> torch.Tensor:
        return torch.arange(sector.dim, dtype=torch.long)


class TruncatedTraceEvaluator(TraceEvaluator):
    """Trace estimate restricted to low-lying eigenstates.

    Eigenstates whose Boltzmann weight exp(-β(E - E0)) is below `cutoff`
    are dropped from every sector, which shrinks the matrices propagated
    along each sector chain. The ground state is always kept.
    """

    name = "truncated"

    def __init__(
        self,
        h_loc: LocalHamiltonian,
        beta: float,
        cutoff: float = 1e-10,
        make_histograms: bool = False,
    ) -> None:
        self.cutoff = cutoff
        self._max_energy = -math.log(cutoff) / beta
        super().__init__(h_loc, beta, make_histograms)

    def _kept_states(self, sector) -> torch.Tensor:
        return torch.nonzero(sector.energies <= self._max_energy).flatten()


def make_trace_evaluator(
    h_loc: LocalHamiltonian,
    beta: float,
    use_trace_estimator: bool = False,
    cutoff: float = 1e-10,
    make_histograms: bool = False,
) -> TraceEvaluator:
    """Trace strategy selected by the `use_trace_estimator` run option."""
    if use_trace_estimator:
        return TruncatedTraceEvaluator(h_loc, beta, cutoff=cutoff, make_histograms=make_histograms)
    return ExactTraceEvaluator(h_loc, beta, make_histograms=make_histograms)


class BlockDeterminant:
    """det D of one block together with M = D^{-1}.

    Rows are creation operators, columns annihilation operators. New pairs
    are appended as the last row and column; removal deletes a row and a
    column in place, keeping the order of the others.

    Attributes:
        block: Block position
        det: Current determinant
        minv: Current inverse, shape (k, k), indexed [column, row]
        row_ids, col_ids: Configuration ids of the c† / c operators
    """

    def __init__(self, block: int, delta: HybridizationFunction) -> None:
        self.block = block
        self.delta = delta
        self.det = 1.0
        self.minv = torch.zeros((0, 0), dtype=torch.float64)
        self.row_ids: List[int] = []
        self.col_ids: List[int] = []
        self._row_tau: List[float] = []
        self._row_inner: List[int] = []
        self._col_tau: List[float] = []
        self._col_inner: List[int] = []
        self._pending: Optional[tuple] = None

    @property
    def size(self) -> int:
        return len(self.row_ids)

    def _entries(self, row_tau, row_inner, col_tau, col_inner) -> torch.Tensor:
        """D[j, i] = Δ_{a'_j a_i}(τ'_j - τ_i) for all row/column combinations."""
        row_tau = torch.as_tensor(row_tau, dtype=torch.float64)
        col_tau = torch.as_tensor(col_tau, dtype=torch.float64)
        row_inner = torch.as_tensor(row_inner, dtype=torch.long)
        col_inner = torch.as_tensor(col_inner, dtype=torch.long)
        return self.delta.evaluate(
            self.block,
            row_inner[:, None],
            col_inner[None, :],
            row_tau[:, None] - col_tau[None, :],
        )

    def matrix(self) -> torch.Tensor:
        """D built from scratch."""
        if self.size == 0:
            return torch.zeros((0, 0), dtype=torch.float64)
        return self._entries(self._row_tau, self._row_inner, self._col_tau, self._col_inner)

    def row_data(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """Times and inner indices of the c† operators."""
        return (torch.tensor(self._row_tau, dtype=torch.float64),
                torch.tensor(self._row_inner, dtype=torch.long))

    def col_data(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """Times and inner indices of the c operators."""
        return (torch.tensor(self._col_tau, dtype=torch.float64),
                torch.tensor(self._col_inner, dtype=torch.long))

    def try_insert(self, cdag: OperatorInsertion, c: OperatorInsertion) -> float:
        """det D'/det D for one more row (c†) and column (c)."""
        d = float(self._entries([cdag.tau], [cdag.inner], [c.tau], [c.inner])[0, 0])
        if self.size == 0:
            self._pending = ("insert", cdag, c, None, None, d)
            return d
        B = self._entries(self._row_tau, self._row_inner, [c.tau], [c.inner])[:, 0]
        C = self._entries([cdag.tau], [cdag.inner], self._col_tau, self._col_inner)[0, :]
        MB = self.minv @ B
        CM = C @ self.minv
        s = d - float(C @ MB)
        self._pending = ("insert", cdag, c, MB, CM, s)
        return s

    def complete_insert(self, row_id: int, col_id: int) -> None:
        _, cdag, c, MB, CM, s = self._pending
        k = self.size
        S = 1.0 / s
        minv = torch.empty((k + 1, k + 1), dtype=torch.float64)
        if k > 0:
            minv[:k, :k] = self.minv + S * torch.outer(MB, CM)
            minv[:k, k] = -S * MB
            minv[k, :k] = -S * CM
        minv[k, k] = S
        self.minv = minv
        self.det *= s
        self.row_ids.append(row_id)
        self._row_tau.append(cdag.tau)
        self._row_inner.append(cdag.inner)
        self.col_ids.append(col_id)
        self._col_tau.append(c.tau)
        self._col_inner.append(c.inner)
        self._pending = None

    def try_remove(self, row: int, col: int) -> float:
        """det D'/det D without row `row` and column `col`."""
        ratio = float(self.minv[col, row])
        if (row + col) % 2:
            ratio = -ratio
        self._pending = ("remove", row, col, ratio)
        return ratio

    def complete_remove(self) -> None:
        _, row, col, ratio = self._pending
        keep_cols = [i for i in range(self.size) if i != col]
        keep_rows = [j for j in range(self.size) if j != row]
        M = self.minv
        pivot = M[col, row]
        self.minv = (
            M[keep_cols][:, keep_rows]
            - torch.outer(M[keep_cols, row], M[col, keep_rows]) / pivot
        )
        self.det *= ratio
        for seq in (self.row_ids, self._row_tau, self._row_inner):
            del seq[row]
        for seq in (self.col_ids, self._col_tau, self._col_inner):
            del seq[col]
        self._pending = None

    def reject(self) -> None:
        self._pending = None

    def recompute(self) -> Tuple[float, torch.Tensor]:
        """(det D, D^{-1}) computed from scratch."""
        if self.size == 0:
            return 1.0, torch.zeros((0, 0), dtype=torch.float64)
        D = self.matrix()
        return float(torch.linalg.det(D)), torch.linalg.inv(D)


def permutation_parity(reference: Sequence[int], ordered: Sequence[int]) -> int:
    """+1/-1 parity of the permutation taking `reference` to `ordered`."""
    position = {op_id: i for i, op_id in enumerate(ordered)}
    perm = [position[op_id] for op_id in reference]
    seen = [False] * len(perm)
    transpositions = 0
    for i in range(len(perm)):
        if seen[i]:
            continue
        j, length = i, 0
        while not seen[j]:
            seen[j] = True
            j = perm[j]
            length += 1
        transpositions += length - 1
    return -1 if transpositions % 2 else 1


class WeightEvaluator:
    """Configuration plus everything needed to evaluate weight ratios.

    Proposals are evaluated with try_insert / try_remove without touching the
    configuration; complete_* commits the pending proposal and reject drops it.

    Only the determinants are updated incrementally. The local trace of every
    proposal is recomputed in full over the time-ordered operator list, at a
    cost linear in the number of operators. No partial products are cached,
    so the tracked trace never depends on earlier proposals.

    Attributes:
        beta: Inverse temperature
        config: The current Configuration
        dets: One BlockDeterminant per block
        trace: Current local trace
        perm_sign: Current fermionic permutation sign
    """

    # Placeholder ids of the two operators of an insertion proposal
    _NEW_CDAG = -1
    _NEW_C = -2

    def __init__(
        self,
        beta: float,
        h_loc: LocalHamiltonian,
        delta: HybridizationFunction,
        trace_evaluator: TraceEvaluator,
    ) -> None:
        if abs(delta.beta - beta) > 1e-12:
            raise ConfigurationError(f"Delta_tau was built for beta={delta.beta}, solver uses beta={beta}")
        if len(h_loc.fock.block_names) != delta.n_blocks:
            raise ConfigurationError("Delta_tau and h_loc disagree on the number of blocks")

        self.beta = beta
        self.h_loc = h_loc
        self.delta = delta
        self.trace_evaluator = trace_evaluator
        self.config = Configuration(beta, delta.n_blocks)
        self.dets = [BlockDeterminant(b, delta) for b in range(delta.n_blocks)]
        self.trace = trace_evaluator.trace([])
        if self.trace <= 0:
            raise ConfigurationError("The trace of the empty diagram must be positive")
        self.perm_sign = 1
        self._pending: Optional[tuple] = None

        self.histograms: Dict[str, torch.Tensor] = {}
        if trace_evaluator.make_histograms:
            self.histograms["log10_trace_ratio"] = torch.zeros(LOG_RATIO_BINS, dtype=torch.float64)

    # ------------------------------------------------------------------ #
    # Weight
    # ------------------------------------------------------------------ #

    @property
    def weight(self) -> float:
        return self.perm_sign * self.trace * math.prod(d.det for d in self.dets)

    @property
    def sign(self) -> float:
        return 1.0 if self.weight >= 0 else -1.0

    def reference_ids(self, block: Optional[int] = None, rows=None, cols=None) -> List[int]:
        """Operator ids in reference order, block `block` optionally replaced."""
        ids = []
        for d in self.dets:
            r = rows if d.block == block else d.row_ids
            c = cols if d.block == block else d.col_ids
            for col_id, row_id in zip(c, r):
                ids.append(col_id)
                ids.append(row_id)
        return ids

    def _record_trace_ratio(self, new_trace: float) -> None:
        if "log10_trace_ratio" not in self.histograms or new_trace == 0:
            return
        lo, hi = LOG_RATIO_RANGE
        x = math.log10(abs(new_trace / self.trace))
        index = int((x - lo) / (hi - lo) * LOG_RATIO_BINS)
        self.histograms["log10_trace_ratio"][min(max(index, 0), LOG_RATIO_BINS - 1)] += 1

    # ------------------------------------------------------------------ #
    # Insertion
    # ------------------------------------------------------------------ #

    def try_insert(self, block: int, cdag: OperatorInsertion, c: OperatorInsertion) -> float:
        """Signed weight ratio W'/W of adding the pair (c, c†) to `block`.

        Raises:
            DegenerateMoveError: If a new time coincides with an existing one
        """
        if cdag.tau == c.tau or self.config.has_time(cdag.tau) or self.config.has_time(c.tau):
            raise DegenerateMoveError("Proposed time coincides with an existing operator")

        new_ops = self.config.descending(extra=[(self._NEW_CDAG, cdag), (self._NEW_C, c)])
        new_trace = self.trace_evaluator.trace([op for _, op in new_ops])
        self._record_trace_ratio(new_trace)
        if new_trace == 0.0:
            self._pending = None
            return 0.0

        det_ratio = self.dets[block].try_insert(cdag, c)
        det = self.dets[block]
        reference = self.reference_ids(
            block, rows=det.row_ids + [self._NEW_CDAG], cols=det.col_ids + [self._NEW_C]
        )
        new_perm = permutation_parity(reference, [op_id for op_id, _ in new_ops])

        self._pending = ("insert", block, cdag, c, new_trace, new_perm)
        return (new_perm * self.perm_sign) * (new_trace / self.trace) * det_ratio

    def complete_insert(self) -> None:
        _, block, cdag, c, new_trace, new_perm = self._pending
        row_id = self.config.insert(cdag)
        col_id = self.config.insert(c)
        self.dets[block].complete_insert(row_id, col_id)
        self.trace = new_trace
        self.perm_sign = new_perm
        self._pending = None

    # ------------------------------------------------------------------ #
    # Removal
    # ------------------------------------------------------------------ #

    def try_remove(self, block: int, row: int, col: int) -> float:
        """Signed weight ratio W'/W of removing row `row` (c†) and column
        `col` (c) of the block determinant."""
        det = self.dets[block]
        row_id, col_id = det.row_ids[row], det.col_ids[col]

        new_ops = self.config.descending(exclude=(row_id, col_id))
        new_trace = self.trace_evaluator.trace([op for _, op in new_ops])
        self._record_trace_ratio(new_trace)
        if new_trace == 0.0:
            self._pending = None
            return 0.0

        det_ratio = det.try_remove(row, col)
        rows = [r for j, r in enumerate(det.row_ids) if j != row]
        cols = [c for i, c in enumerate(det.col_ids) if i != col]
        new_perm = permutation_parity(
            self.reference_ids(block, rows=rows, cols=cols),
            [op_id for op_id, _ in new_ops],
        )

        self._pending = ("remove", block, row_id, col_id, new_trace, new_perm)
        return (new_perm * self.perm_sign) * (new_trace / self.trace) * det_ratio

    def complete_remove(self) -> None:
        _, block, row_id, col_id, new_trace, new_perm = self._pending
        self.dets[block].complete_remove()
        self.config.remove(row_id)
        self.config.remove(col_id)
        self.trace = new_trace
        self.perm_sign = new_perm
        self._pending = None

    def reject(self) -> None:
        if self._pending is not None:
            self.dets[self._pending[1]].reject()
        self._pending = None

    # ------------------------------------------------------------------ #
    # From-scratch recomputation
    # ------------------------------------------------------------------ #

    def recompute(self) -> Tuple[float, float, List[Tuple[float, torch.Tensor]], int]:
        """(weight, trace, [(det, minv) per block], permutation sign) from scratch."""
        ops = self.config.descending()
        trace = self.trace_evaluator.trace([op for _, op in ops])
        dets = [d.recompute() for d in self.dets]
        perm = permutation_parity(self.reference_ids(), [op_id for op_id, _ in ops])
        weight = perm * trace * math.prod(det for det, _ in dets)
        return weight, trace, dets, perm

    def check_consistency(self, tolerance: float, move_name: Optional[str] = None) -> float:
        """Compare the tracked weight with a recomputation and resynchronize.

        Returns:
            The relative deviation found

        Raises:
            ConsistencyError: If weight, sign or inverse matrices disagree
        """
        weight, trace, dets, perm = self.recompute()
        tracked = self.weight
        scale = max(abs(weight), abs(tracked))
        deviation = abs(weight - tracked) / scale if scale > 0 else 0.0

        if weight == 0.0 or (weight > 0) != (tracked > 0):
            raise ConsistencyError(
                f"Sign of the tracked weight ({tracked:.6e}) disagrees with the recomputed weight "
                f"({weight:.6e})",
                move_name=move_name, expected=weight, tracked=tracked,
            )
        if deviation > tolerance:
            raise ConsistencyError(
                f"Tracked weight {tracked:.10e} deviates from recomputed weight {weight:.10e} "
                f"(relative deviation {deviation:.3e} > {tolerance:.1e})",
                move_name=move_name, expected=weight, tracked=tracked,
            )
        for d, (_, minv) in zip(self.dets, dets):
            if d.size == 0:
                continue
            drift = float((d.minv - minv).abs().max() / minv.abs().max())
            if drift > tolerance:
                raise ConsistencyError(
                    f"Inverse hybridization matrix of block {d.block} drifted by {drift:.3e}",
                    move_name=move_name, expected=weight, tracked=tracked,
                )

        self.trace = trace
        self.perm_sign = perm
        for d, (det, minv) in zip(self.dets, dets):
            d.det = det
            d.minv = minv
        return deviation
