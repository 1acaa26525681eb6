import math

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest
import torch

from ctqmcTensor.core import BaseTensor, BlockGf, ConfigurationError
from ctqmcTensor.manybody import HybridizationFunction

BETA = 4.0
GF_STRUCT = {"a": [0, 1]}
BATH = {"a": [(-0.7, [0.6, 0.2]), (1.3, [0.4, -0.5])]}


@pytest.fixture(scope="module")
def delta():
    return HybridizationFunction.from_bath_levels(BETA, GF_STRUCT, BATH, n_tau=2001)


def exact(a, b, tau):
    value = 0.0
    for eps, V in BATH["a"]:
        value -= V[a] * V[b] * math.exp(-eps * tau) / (1.0 + math.exp(-BETA * eps))
    return value


def test_bath_levels_closed_form(delta):
    for tau in (0.0, 0.37, 2.0, 3.99):
        for a in range(2):
            for b in range(2):
                assert delta(0, a, b, tau) == pytest.approx(exact(a, b, tau), abs=1e-5)


def test_bath_levels_no_overflow_at_low_temperature():
    d = HybridizationFunction.from_bath_levels(500.0, {"up": [0]}, {"up": [(-3.0, [1.0]), (3.0, [1.0])]}, n_tau=101)
    assert torch.isfinite(d.blocks["up"].tensor).all()


def test_bath_level_coupling_count_checked():
    with pytest.raises(ConfigurationError):
        HybridizationFunction.from_bath_levels(BETA, GF_STRUCT, {"a": [(0.0, [1.0])]}, n_tau=11)


@given(tau=st.floats(min_value=1e-6, max_value=BETA - 1e-6))
@settings(max_examples=100, deadline=None)
def test_antiperiodicity(delta, tau):
    for a in range(2):
        for b in range(2):
            assert delta(0, a, b, tau - BETA) == pytest.approx(-delta(0, a, b, tau), abs=1e-9)


def test_linear_interpolation_between_mesh_points():
    data = {"up": torch.tensor([[[0.0]], [[-1.0]], [[-3.0]]], dtype=torch.float64)}
    d = HybridizationFunction(2.0, {"up": [0]}, data)
    assert d(0, 0, 0, 0.5) == pytest.approx(-0.5)
    assert d(0, 0, 0, 1.5) == pytest.approx(-2.0)
    assert d(0, 0, 0, 2.0) == pytest.approx(-3.0)


def test_accepts_block_gf():
    g = BaseTensor.imaginary_time(1.0, 11, 1)
    g.tensor[:] = -0.5
    d = HybridizationFunction(1.0, {"up": [0]}, BlockGf({"up": g}))
    assert d(0, 0, 0, 0.3) == pytest.approx(-0.5)
    assert d.blocks["up"].labels == ["tau", "orb_i", "orb_j"]


def test_shape_validation():
    with pytest.raises(ConfigurationError):
        HybridizationFunction(1.0, {"up": [0]}, {"up": torch.zeros((11, 2, 2))})
    with pytest.raises(ConfigurationError):
        HybridizationFunction(1.0, {"up": [0]}, {"down": torch.zeros((11, 1, 1))})
    with pytest.raises(ConfigurationError):
        HybridizationFunction(
            1.0, {"up": [0], "down": [0]},
            {"up": torch.zeros((11, 1, 1)), "down": torch.zeros((21, 1, 1))},
        )
    with pytest.raises(ConfigurationError):
        HybridizationFunction(1.0, {"up": [0]}, {"up": torch.zeros((1, 1, 1))})


def test_zeros():
    d = HybridizationFunction.zeros(3.0, {"up": [0], "down": [0, 1]}, n_tau=5)
    assert d.n_blocks == 2
    assert d.block_size(1) == 2
    assert d(1, 0, 1, 1.2) == 0.0
