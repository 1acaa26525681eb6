"""Seeded random number source, one instance per Markov chain.

The generator algorithm is selected by name (the `random_name` run option)
among NumPy's bit generators. Every draw goes through this object, in a fixed
order, so a chain is reproducible for a given seed and step count.
"""

import numpy as np

from .errors import ConfigurationError

BIT_GENERATORS = {
    "": np.random.PCG64,
    "PCG64": np.random.PCG64,
    "MT19937": np.random.MT19937,
    "Philox": np.random.Philox,
    "SFC64": np.random.SFC64,
}


def default_seed(rank: int) -> int:
    """Seed of the chain running on worker `rank`."""
    return 34788 + 928374 * rank


class RandomSource:
    """Uniform reals, integers and imaginary times from one bit generator.

    Attributes:
        seed: Seed the generator was created with
        name: Bit-generator name ('' selects the default, PCG64)
    """

    def __init__(self, seed: int, name: str = "") -> None:
        if name not in BIT_GENERATORS:
            raise ConfigurationError(
                f"Unknown random generator '{name}'. "
                f"Available: {sorted(k for k in BIT_GENERATORS if k)}"
            )
        self.seed = int(seed)
        self.name = name
        self._gen = np.random.Generator(BIT_GENERATORS[name](self.seed))

    def uniform(self, upper: float = 1.0) -> float:
        """Uniform real in [0, upper)."""
        return upper * float(self._gen.random())

    def integer(self, n: int) -> int:
        """Uniform integer in [0, n)."""
        return int(self._gen.integers(n))

    def tau(self, beta: float) -> float:
        """Uniform imaginary time in [0, beta)."""
        return self.uniform(beta)

    def __repr__(self) -> str:
        return f"RandomSource(seed={self.seed}, name='{self.name or 'PCG64'}')"
