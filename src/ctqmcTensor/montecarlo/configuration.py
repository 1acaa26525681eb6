"""Diagram configuration: operator insertions on the imaginary-time interval.

The configuration is an arena of operator insertions. Each insertion gets a
stable integer id when it enters the arena; the id stays valid until the
insertion is removed, so the determinant rows/columns can refer to operators
by id while the time-ordered view changes around them.
"""

from bisect import bisect_left, insort
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Tuple


@dataclass(frozen=True)
class OperatorInsertion:
    """One c or c† inserted at imaginary time tau.

    Attributes:
        tau: Imaginary time in [0, β)
        block: Block position
        inner: Inner index within the block
        dagger: True for a creation operator
    """
    tau: float
    block: int
    inner: int
    dagger: bool


class Configuration:
    """Time-ordered multiset of operator insertions.

    Attributes:
        beta: Length of the imaginary-time interval
    """

    def __init__(self, beta: float, n_blocks: int) -> None:
        self.beta = beta
        self._arena: Dict[int, OperatorInsertion] = {}
        self._order: List[Tuple[float, int]] = []  # (tau, id), ascending tau
        self._next_id = 0
        self._block_order = [0] * n_blocks

    def insert(self, op: OperatorInsertion) -> int:
        """Insert an operator at its sorted position and return its id.

        Raises:
            ValueError: If another operator sits at exactly the same time
        """
        if self.has_time(op.tau):
            raise ValueError(f"An operator already sits at tau={op.tau}")
        op_id = self._next_id
        self._next_id += 1
        self._arena[op_id] = op
        insort(self._order, (op.tau, op_id))
        if op.dagger:
            self._block_order[op.block] += 1
        return op_id

    def remove(self, op_id: int) -> OperatorInsertion:
        """Remove an operator by id and return it."""
        op = self._arena.pop(op_id)
        pos = bisect_left(self._order, (op.tau, op_id))
        del self._order[pos]
        if op.dagger:
            self._block_order[op.block] -= 1
        return op

    def has_time(self, tau: float) -> bool:
        pos = bisect_left(self._order, (tau, -1))
        return pos < len(self._order) and self._order[pos][0] == tau

    def __getitem__(self, op_id: int) -> OperatorInsertion:
        return self._arena[op_id]

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[OperatorInsertion]:
        """Operators in ascending time."""
        return (self._arena[op_id] for _, op_id in self._order)

    def ids(self) -> List[int]:
        """Operator ids in ascending time."""
        return [op_id for _, op_id in self._order]

    def perturbation_order(self, block: int) -> int:
        """Number of (c, c†) pairs of a block."""
        return self._block_order[block]

    def total_order(self) -> int:
        return sum(self._block_order)

    def descending(
        self,
        extra: Iterable[Tuple[int, OperatorInsertion]] = (),
        exclude: Iterable[int] = (),
    ) -> List[Tuple[int, OperatorInsertion]]:
        """(id, operator) pairs in descending time, optionally with extra
        candidates merged in and some ids left out.

        The configuration itself is not modified, which lets moves evaluate
        a proposal before deciding on it.
        """
        excluded = set(exclude)
        ops = [(op_id, self._arena[op_id]) for _, op_id in self._order if op_id not in excluded]
        ops.extend(extra)
        ops.sort(key=lambda item: item[1].tau, reverse=True)
        return ops

    def __repr__(self) -> str:
        ops = ", ".join(
            f"{'c+' if op.dagger else 'c'}[{op.block},{op.inner}]@{op.tau:.4f}" for op in self
        )
        return f"Configuration(beta={self.beta}, ops=[{ops}])"
