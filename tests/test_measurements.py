import pytest
import torch

from ctqmcTensor.manybody import FockSpace, HybridizationFunction, LocalHamiltonian
from ctqmcTensor.montecarlo import (
    MeasureGTau,
    MeasurePerturbationHistogram,
    OperatorInsertion,
    WeightEvaluator,
    finalize_g_tau,
    finalize_perturbation_order,
    make_trace_evaluator,
    save_histogram,
)

BETA = 2.0
N_TAU = 21


def single_level_data():
    fock = FockSpace({"up": [0]})
    h_loc = LocalHamiltonian(fock, torch.zeros((2, 2), dtype=torch.float64))
    delta = HybridizationFunction.from_bath_levels(BETA, {"up": [0]}, {"up": [(0.0, [1.0])]}, n_tau=201)
    return WeightEvaluator(BETA, h_loc, delta, make_trace_evaluator(h_loc, BETA))


def insert_pair(data, tau_cdag, tau_c):
    data.try_insert(
        0,
        OperatorInsertion(tau=tau_cdag, block=0, inner=0, dagger=True),
        OperatorInsertion(tau=tau_c, block=0, inner=0, dagger=False),
    )
    data.complete_insert()


@pytest.mark.parametrize("tau_cdag, tau_c", [(0.7, 1.2), (1.2, 0.7)])
def test_g_tau_folding_gives_negative_g(tau_cdag, tau_c):
    data = single_level_data()
    insert_pair(data, tau_cdag, tau_c)
    measure = MeasureGTau(0, N_TAU, data)
    measure.accumulate(1.0)

    s = tau_c - tau_cdag
    if s < 0:
        s += BETA
    k = round(s / (BETA / (N_TAU - 1)))
    acc = measure.collect_results()["g_tau"]
    assert torch.count_nonzero(acc) == 1
    assert acc[k, 0, 0] != 0.0

    G = finalize_g_tau(measure.collect_results(), BETA)
    assert float(G.tensor[k, 0, 0]) < 0.0
    assert G.labels == ["tau", "orb_i", "orb_j"]


def test_g_tau_half_bins_at_the_edges():
    data = single_level_data()
    insert_pair(data, 0.0, 0.01)
    measure = MeasureGTau(0, N_TAU, data)
    measure.accumulate(1.0)
    acc = measure.collect_results()
    value = float(acc["g_tau"][0, 0, 0])
    G = finalize_g_tau(acc, BETA)
    dtau = BETA / (N_TAU - 1)
    assert float(G.tensor[0, 0, 0]) == pytest.approx(-value / (BETA * dtau / 2))


def test_empty_configuration_only_counts_sign():
    data = single_level_data()
    measure = MeasureGTau(0, N_TAU, data)
    for _ in range(3):
        measure.accumulate(1.0)
    results = measure.collect_results()
    assert float(results["z"]) == 3.0
    assert float(results["n_measures"]) == 3.0
    assert float(results["g_tau"].abs().sum()) == 0.0


def test_finalize_without_samples_is_zero():
    acc = {"g_tau": torch.zeros((N_TAU, 1, 1)), "z": torch.tensor(0.0)}
    assert float(finalize_g_tau(acc, BETA).tensor.abs().sum()) == 0.0


def test_perturbation_histogram_grows(tmp_path):
    data = single_level_data()
    measure = MeasurePerturbationHistogram(0, data)
    measure.accumulate(1.0)
    insert_pair(data, 0.1, 0.3)
    insert_pair(data, 0.5, 0.9)
    insert_pair(data, 1.1, 1.6)
    measure.accumulate(1.0)
    measure.accumulate(1.0)

    results = measure.collect_results()
    assert results["histogram"].tolist() == [1.0, 0.0, 0.0, 2.0]
    normalized = finalize_perturbation_order(results)
    assert float(normalized.sum()) == pytest.approx(1.0)

    path = save_histogram(normalized, tmp_path / "histo_pert_order_up.dat")
    lines = path.read_text().splitlines()
    assert len(lines) == 4
    assert lines[3].split()[0] == "3"
    assert float(lines[3].split()[1]) == pytest.approx(2.0 / 3.0)
