import pytest
import torch

from ctqmcTensor.core import BaseTensor, BlockGf


def test_imaginary_time_layout():
    g = BaseTensor.imaginary_time(2.0, 21, 3, orbital_names=["s", "px", "py"])
    assert g.shape == (21, 3, 3)
    assert g.labels == ["tau", "orb_i", "orb_j"]
    assert g.axis("tau") == 0
    assert float(g.mesh[-1]) == pytest.approx(2.0)


def test_mesh_length_checked():
    with pytest.raises(ValueError):
        BaseTensor(torch.zeros((5, 1, 1)), ["tau", "orb_i", "orb_j"], mesh=torch.zeros(4))
    with pytest.raises(ValueError):
        BaseTensor(torch.zeros((5, 1)), ["tau", "orb_i", "orb_j"])


def test_copy_is_deep():
    g = BaseTensor.imaginary_time(1.0, 3, 1)
    h = g.copy()
    h.tensor[0, 0, 0] = 1.0
    assert g.tensor[0, 0, 0] == 0.0


def test_block_gf_access():
    up = BaseTensor.imaginary_time(1.0, 3, 1)
    dn = BaseTensor.imaginary_time(1.0, 3, 1)
    G = BlockGf({"up": up, "down": dn})
    assert G["up"] is G[0]
    assert G.names == ["up", "down"]
    assert len(G) == 2
    with pytest.raises(KeyError):
        G["left"]
    with pytest.raises(ValueError):
        G["up"] = BaseTensor.imaginary_time(1.0, 4, 1)
