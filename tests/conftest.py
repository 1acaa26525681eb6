import pytest

from ctqmcTensor.manybody import FockSpace, HybridizationFunction, LocalHamiltonian
from ctqmcTensor.montecarlo import RunParameters, WeightEvaluator, make_trace_evaluator


def hubbard_atom(U=2.0, mu=1.0):
    """Single-site Hubbard atom with spin blocks 'up' and 'down'."""
    gf_struct = {"up": [0], "down": [0]}
    fock = FockSpace(gf_struct)
    n_up, n_dn = fock.n("up", 0), fock.n("down", 0)
    H = U * n_up @ n_dn - mu * (n_up + n_dn)
    return gf_struct, fock, H


def two_orbital_block(t=0.5, U=1.5, mu=0.7):
    """Two orbitals in one block, coupled by hopping and interaction."""
    gf_struct = {"a": [0, 1]}
    fock = FockSpace(gf_struct)
    c0, c1 = fock.c("a", 0), fock.c("a", 1)
    n0, n1 = fock.n("a", 0), fock.n("a", 1)
    H = t * (c0.T @ c1 + c1.T @ c0) + U * n0 @ n1 - mu * (n0 + n1)
    return gf_struct, fock, H


@pytest.fixture
def hubbard_data():
    beta = 5.0
    gf_struct, fock, H = hubbard_atom()
    h_loc = LocalHamiltonian(fock, H)
    bath = {"up": [(-0.5, [0.8]), (0.6, [0.6])], "down": [(-0.5, [0.8]), (0.6, [0.6])]}
    delta = HybridizationFunction.from_bath_levels(beta, gf_struct, bath, n_tau=501)
    return WeightEvaluator(beta, h_loc, delta, make_trace_evaluator(h_loc, beta))


@pytest.fixture
def two_orbital_data():
    beta = 4.0
    gf_struct, fock, H = two_orbital_block()
    h_loc = LocalHamiltonian(fock, H)
    bath = {"a": [(-0.4, [0.7, 0.3]), (0.5, [0.2, -0.6]), (0.0, [0.5, 0.5])]}
    delta = HybridizationFunction.from_bath_levels(beta, gf_struct, bath, n_tau=401)
    return WeightEvaluator(beta, h_loc, delta, make_trace_evaluator(h_loc, beta))


@pytest.fixture
def quick_params():
    return RunParameters(n_cycles=200, length_cycle=10, n_warmup_cycles=20, verbosity=0, random_seed=7)
