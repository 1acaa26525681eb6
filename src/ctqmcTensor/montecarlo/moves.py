"""Monte Carlo moves of the hybridization expansion.

Every move follows the attempt / accept / reject protocol of the scheduler:

    r = move.attempt()          # signed ratio incl. proposal probabilities
    if accepted(|r|):
        sign *= move.accept()   # commits, returns the sign of r
    else:
        move.reject()           # drops the proposal, nothing changed

Insert and Remove are each other's exact reverse. For a block of size n with
k pairs before an insertion:

    R_insert = W'/W · (β n)² / (k+1)²
    R_remove = W'/W · k² / (β n)²

so that R_insert(C→C') · R_remove(C'→C) = 1 (detailed balance). When the two
moves are selected with different weights, each ratio is multiplied by
`selection_ratio` = (weight of the reverse move) / (weight of the move).
"""

from abc import ABC, abstractmethod
from typing import Optional

from ctqmcTensor.core.errors import DegenerateMoveError
from ctqmcTensor.core.random import RandomSource
from ctqmcTensor.montecarlo.configuration import OperatorInsertion
from ctqmcTensor.montecarlo.weight import WeightEvaluator


class MoveABC(ABC):
    """Interface of a Monte Carlo move."""

    @abstractmethod
    def attempt(self) -> float:
        """Propose an update and return the signed acceptance ratio.

        Raises:
            DegenerateMoveError: If there is no valid candidate
        """
        raise NotImplementedError("Moves must implement attempt()")

    @abstractmethod
    def accept(self) -> float:
        """Commit the proposal; return the sign of the accepted ratio."""
        raise NotImplementedError("Moves must implement accept()")

    @abstractmethod
    def reject(self) -> None:
        """Drop the proposal."""
        raise NotImplementedError("Moves must implement reject()")


class InsertMove(MoveABC):
    """Insert one c† and one c of the same block at uniform random times.

    Random numbers are drawn in a fixed order: inner index of c†, inner index
    of c, τ of c†, τ of c.
    """

    def __init__(
        self,
        block: int,
        block_size: int,
        data: WeightEvaluator,
        rng: RandomSource,
        max_order: int = 1000,
        selection_ratio: float = 1.0,
    ) -> None:
        self.block = block
        self.block_size = block_size
        self.data = data
        self.rng = rng
        self.max_order = max_order
        self.selection_ratio = selection_ratio
        self._ratio: Optional[float] = None

    def attempt(self) -> float:
        if self.data.config.perturbation_order(self.block) >= self.max_order:
            raise DegenerateMoveError(f"Block {self.block} reached max_order={self.max_order}")
        beta = self.data.beta
        inner_cdag = self.rng.integer(self.block_size)
        inner_c = self.rng.integer(self.block_size)
        tau_cdag = self.rng.tau(beta)
        tau_c = self.rng.tau(beta)
        return self.attempt_with(inner_cdag, inner_c, tau_cdag, tau_c)

    def attempt_with(self, inner_cdag: int, inner_c: int, tau_cdag: float, tau_c: float) -> float:
        """Ratio of inserting exactly these two operators (no random draws)."""
        cdag = OperatorInsertion(tau=tau_cdag, block=self.block, inner=inner_cdag, dagger=True)
        c = OperatorInsertion(tau=tau_c, block=self.block, inner=inner_c, dagger=False)
        weight_ratio = self.data.try_insert(self.block, cdag, c)

        k_new = self.data.config.perturbation_order(self.block) + 1
        proposal = self.selection_ratio * (self.data.beta * self.block_size) ** 2 / k_new ** 2
        self._ratio = weight_ratio * proposal
        return self._ratio

    def accept(self) -> float:
        self.data.complete_insert()
        return 1.0 if self._ratio > 0 else -1.0

    def reject(self) -> None:
        self.data.reject()


class RemoveMove(MoveABC):
    """Remove one c† and one c of a block, chosen uniformly.

    On an empty block the move is rejected before any random draw.
    """

    def __init__(
        self,
        block: int,
        block_size: int,
        data: WeightEvaluator,
        rng: RandomSource,
        selection_ratio: float = 1.0,
    ) -> None:
        self.block = block
        self.block_size = block_size
        self.data = data
        self.rng = rng
        self.selection_ratio = selection_ratio
        self._ratio: Optional[float] = None

    def attempt(self) -> float:
        k = self.data.config.perturbation_order(self.block)
        if k == 0:
            raise DegenerateMoveError(f"Block {self.block} holds no operators")
        row = self.rng.integer(k)
        col = self.rng.integer(k)
        return self.attempt_with(row, col)

    def attempt_with(self, row: int, col: int) -> float:
        """Ratio of removing determinant row `row` (c†) and column `col` (c)."""
        k = self.data.config.perturbation_order(self.block)
        weight_ratio = self.data.try_remove(self.block, row, col)
        proposal = self.selection_ratio * k ** 2 / (self.data.beta * self.block_size) ** 2
        self._ratio = weight_ratio * proposal
        return self._ratio

    def accept(self) -> float:
        self.data.complete_remove()
        return 1.0 if self._ratio > 0 else -1.0

    def reject(self) -> None:
        self.data.reject()
