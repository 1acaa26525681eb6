import math

import pytest
import torch

from ctqmcTensor.core import ConfigurationError
from ctqmcTensor.manybody import FockSpace, LocalHamiltonian
from ctqmcTensor.montecarlo import ExactTraceEvaluator, OperatorInsertion, TruncatedTraceEvaluator

from conftest import hubbard_atom, two_orbital_block


def test_fock_space_anticommutation():
    fock = FockSpace({"up": [0, 1], "down": [0]})
    assert fock.n_flavors == 3
    assert fock.dim == 8
    ops = [fock.annihilator(f) for f in range(fock.n_flavors)]
    eye = torch.eye(fock.dim, dtype=torch.float64)
    for i, a in enumerate(ops):
        for j, b in enumerate(ops):
            assert torch.allclose(a @ b + b @ a, torch.zeros_like(eye))
            expected = eye if i == j else torch.zeros_like(eye)
            assert torch.allclose(a @ b.T + b.T @ a, expected)


def test_fock_space_block_lookup():
    fock = FockSpace({"up": [0, 1], "down": [0]})
    assert fock.block_index("down") == 1
    assert fock.block_size("up") == 2
    assert fock.flavor("down", 0) == 2
    with pytest.raises(KeyError):
        fock.block_index("left")
    with pytest.raises(IndexError):
        fock.flavor("down", 1)


def test_fock_space_rejects_empty_struct():
    with pytest.raises(ConfigurationError):
        FockSpace({})
    with pytest.raises(ConfigurationError):
        FockSpace({"up": []})


def test_total_number_counts_particles():
    fock = FockSpace({"up": [0], "down": [0]})
    N = torch.diagonal(fock.total_number())
    assert N.tolist() == [0.0, 1.0, 1.0, 2.0]


def test_local_hamiltonian_rejects_non_symmetric():
    fock = FockSpace({"up": [0]})
    H = torch.tensor([[0.0, 1.0], [0.0, 0.0]], dtype=torch.float64)
    with pytest.raises(ConfigurationError):
        LocalHamiltonian(fock, H)


def test_local_hamiltonian_rejects_wrong_shape():
    fock = FockSpace({"up": [0]})
    with pytest.raises(ConfigurationError):
        LocalHamiltonian(fock, torch.zeros((3, 3), dtype=torch.float64))


def test_quantum_numbers_must_commute():
    gf_struct, fock, H = two_orbital_block()
    with pytest.raises(ConfigurationError):
        LocalHamiltonian(fock, H, quantum_numbers=[fock.n("a", 0)], use_quantum_numbers=True)


def test_quantum_numbers_must_be_given():
    gf_struct, fock, H = hubbard_atom()
    with pytest.raises(ConfigurationError):
        LocalHamiltonian(fock, H, use_quantum_numbers=True)


def test_sector_partitions_agree():
    gf_struct, fock, H = two_orbital_block()
    beta = 3.0
    by_qn = LocalHamiltonian(fock, H, quantum_numbers=[fock.total_number()], use_quantum_numbers=True)
    auto = LocalHamiltonian(fock, H)
    single = LocalHamiltonian(fock, H, autopartition=False)

    assert by_qn.n_sectors == 3
    assert auto.n_sectors == 3
    assert single.n_sectors == 1

    exact_Z = float(torch.exp(-beta * torch.linalg.eigvalsh(H)).sum())
    for h_loc in (by_qn, auto, single):
        Z = h_loc.partition_function(beta) * math.exp(-beta * h_loc.ground_state_energy)
        assert Z == pytest.approx(exact_Z, rel=1e-10)

    ops = [
        OperatorInsertion(tau=2.5, block=0, inner=1, dagger=False),
        OperatorInsertion(tau=1.9, block=0, inner=0, dagger=True),
        OperatorInsertion(tau=1.2, block=0, inner=0, dagger=False),
        OperatorInsertion(tau=0.4, block=0, inner=1, dagger=True),
    ]
    traces = [ExactTraceEvaluator(h, beta).trace(ops) for h in (by_qn, auto, single)]
    assert traces[1] == pytest.approx(traces[0], rel=1e-10)
    assert traces[2] == pytest.approx(traces[0], rel=1e-10)


def test_trace_matches_dense_matrix_product():
    gf_struct, fock, H = hubbard_atom(U=1.3, mu=0.4)
    beta = 2.0
    h_loc = LocalHamiltonian(fock, H)
    ops = [
        OperatorInsertion(tau=1.7, block=1, inner=0, dagger=True),
        OperatorInsertion(tau=1.1, block=0, inner=0, dagger=False),
        OperatorInsertion(tau=0.8, block=1, inner=0, dagger=False),
        OperatorInsertion(tau=0.2, block=0, inner=0, dagger=True),
    ]

    def evolution(t):
        return torch.linalg.matrix_exp(-t * (H - h_loc.ground_state_energy * torch.eye(fock.dim, dtype=torch.float64)))

    product = evolution(beta - ops[0].tau)
    for op, later in zip(ops, ops[1:] + [None]):
        matrix = fock.c_dag(op.block, op.inner) if op.dagger else fock.c(op.block, op.inner)
        product = product @ matrix @ evolution(op.tau - (later.tau if later else 0.0))

    trace = ExactTraceEvaluator(h_loc, beta).trace(ops)
    assert trace == pytest.approx(float(torch.trace(product)), rel=1e-10)


def test_trace_single_level():
    fock = FockSpace({"up": [0]})
    eps = 0.8
    h_loc = LocalHamiltonian(fock, eps * fock.n("up", 0))
    evaluator = ExactTraceEvaluator(h_loc, beta=2.0)
    ops = [
        OperatorInsertion(tau=1.5, block=0, inner=0, dagger=False),
        OperatorInsertion(tau=0.5, block=0, inner=0, dagger=True),
    ]
    assert evaluator.trace(ops) == pytest.approx(math.exp(-eps * 1.0))
    assert evaluator.trace([]) == pytest.approx(1.0 + math.exp(-2.0 * eps))
    # Two annihilators in a row annihilate every state
    ops[1] = OperatorInsertion(tau=0.5, block=0, inner=0, dagger=False)
    assert evaluator.trace(ops) == 0.0


def test_truncated_trace_drops_high_states():
    gf_struct, fock, H = hubbard_atom(U=20.0, mu=0.0)
    beta = 5.0
    h_loc = LocalHamiltonian(fock, H)
    exact = ExactTraceEvaluator(h_loc, beta)
    truncated = TruncatedTraceEvaluator(h_loc, beta, cutoff=1e-10)
    assert exact.trace([]) == pytest.approx(3.0 + math.exp(-100.0))
    assert truncated.trace([]) == pytest.approx(3.0)
    assert truncated.name == "truncated"
