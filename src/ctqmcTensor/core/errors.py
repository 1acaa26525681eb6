"""Exception taxonomy of the CTQMC engine.

- ConfigurationError: malformed input, raised before any sampling starts.
- ConsistencyError: the incrementally tracked weight disagrees with a
  from-scratch recomputation; aborts the run.
- DegenerateMoveError: a move has no valid candidate; the step is rejected
  and the loop continues.
- BudgetExceeded: time budget or stop request reached; ends sampling early
  with partial but valid results.
- ReductionError: the post-run reduction found a failed or inconsistent worker.
"""

from typing import Optional


class CTQMCError(Exception):
    """Base class of all errors raised by ctqmcTensor."""


class ConfigurationError(CTQMCError, ValueError):
    """Invalid solver input or run parameters."""


class ConsistencyError(CTQMCError, RuntimeError):
    """Tracked Monte Carlo weight drifted away from its recomputed value.

    Attributes:
        detail: Message without the move name
        move_name: Name of the last accepted move before the check
        expected: Weight recomputed from scratch
        tracked: Weight carried through the incremental updates
    """

    def __init__(
        self,
        message: str,
        move_name: Optional[str] = None,
        expected: Optional[float] = None,
        tracked: Optional[float] = None,
    ) -> None:
        self.detail = message
        if move_name is not None:
            message = f"{message} (last accepted move: {move_name})"
        super().__init__(message)
        self.move_name = move_name
        self.expected = expected
        self.tracked = tracked


class DegenerateMoveError(CTQMCError):
    """A move found no valid candidate; the step is rejected."""


class BudgetExceeded(CTQMCError):
    """Time budget exhausted or stop requested at a cycle boundary."""


class ReductionError(CTQMCError, RuntimeError):
    """Worker results could not be reduced."""


__all__ = [
    "CTQMCError",
    "ConfigurationError",
    "ConsistencyError",
    "DegenerateMoveError",
    "BudgetExceeded",
    "ReductionError",
]
