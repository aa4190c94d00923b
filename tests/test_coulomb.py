"""Test the shelf ("polochka") Coulomb pair potential."""

import pytest
import torch

from forces.coulomb import PairKind, PolochkaCoulomb
from system.box import Box
from system.units import COULOMB_SCALE

T = 10000.0
EPSILON = 3.0


@pytest.fixture
def model():
    return PolochkaCoulomb(T, EPSILON)


def test_cutoff_radius(model):
    """The shelf ends where the attractive tail reaches -epsilon."""
    assert model.cutoff_radius.item() == pytest.approx(COULOMB_SCALE / (T * EPSILON))


@pytest.mark.parametrize("factor", [1.0, 1.5, 4.0, 100.0])
def test_attractive_tail(model, factor):
    r = model.cutoff_radius.item() * factor
    assert model.potential(r, True).item() == pytest.approx(-COULOMB_SCALE / (T * r))


def test_attractive_continuous_at_cutoff(model):
    rc = model.cutoff_radius.item()
    assert model.potential(rc, True).item() == pytest.approx(-EPSILON, rel=1e-12)
    assert model.potential(rc * (1 - 1e-9), True).item() == -EPSILON


@pytest.mark.parametrize("r", [0.0, 1e-6, 0.5, 2.0])
def test_attractive_shelf(model, r):
    """Inside the cutoff the potential is flat."""
    assert r < model.cutoff_radius.item()
    assert model.potential(r, True).item() == -EPSILON


@pytest.mark.parametrize("r", [0.0, 1e-9, 0.3, 0.999999])
def test_repulsive_clamped_inside_unit_radius(model, r):
    assert model.potential(r, False).item() == model.potential(1.0, False).item()
    assert model.potential(1.0, False).item() == pytest.approx(COULOMB_SCALE / T)


def test_repulsive_tail(model):
    r = torch.tensor([1.0, 2.0, 7.5, 40.0], dtype=torch.float64)
    torch.testing.assert_close(model.potential(r, False), COULOMB_SCALE / (T * r))


def test_clamp_goes_through_unit_radius():
    """A changed r = 1 formula shows up inside the core as well."""

    class Shifted(PolochkaCoulomb):
        def _repulsive(self, r):
            out = super()._repulsive(r)
            return torch.where(r == 1, out + 1.0, out)

    shifted = Shifted(T, EPSILON)
    assert shifted.potential(0.25, False).item() == pytest.approx(COULOMB_SCALE / T + 1.0)


def test_energy_zero_on_shelf(model):
    rc = model.cutoff_radius.item()
    r = torch.linspace(0.0, rc * 0.999, 50, dtype=torch.float64)
    assert torch.all(model.energy(r, True) == 0)
    assert model.energy(rc, True).item() == pytest.approx(model.potential(rc, True).item())
    assert model.energy(rc * 3, True).item() == pytest.approx(model.potential(rc * 3, True).item())


def test_energy_equals_potential_for_like_charges(model):
    r = torch.tensor([0.0, 0.5, 1.0, 3.0, 50.0], dtype=torch.float64)
    torch.testing.assert_close(model.energy(r, False), model.potential(r, False))


def test_asymmetric_selection(model):
    r = torch.tensor([0.5, 2.0, 20.0], dtype=torch.float64)
    for kind in (PairKind.ION_ION, PairKind.ELECTRON_ELECTRON):
        torch.testing.assert_close(model.potential_asym(r, kind), model.potential(r, False))
        torch.testing.assert_close(model.energy_asym(r, kind), model.energy(r, False))
    torch.testing.assert_close(model.potential_asym(r, PairKind.ION_ELECTRON), model.potential(r, True))
    torch.testing.assert_close(model.energy_asym(r, PairKind.ION_ELECTRON), model.energy(r, True))


def test_pair_kind_from_flags():
    assert PairKind.from_flags(True, False) is PairKind.ELECTRON_ELECTRON
    assert PairKind.from_flags(False, True) is PairKind.ION_ION
    assert PairKind.from_flags(False, False) is PairKind.ION_ELECTRON
    with pytest.raises(ValueError):
        PairKind.from_flags(True, True)


def test_mixed_attraction_mask(model):
    r = torch.tensor([0.5, 0.5, 30.0, 30.0], dtype=torch.float64)
    attraction = torch.tensor([True, False, True, False])
    expected = torch.stack([
        model.potential(0.5, True), model.potential(0.5, False),
        model.potential(30.0, True), model.potential(30.0, False),
    ])
    torch.testing.assert_close(model.potential(r, attraction), expected)


def test_total_energy_matches_pair_sum(model):
    """Vectorized total equals the explicit sum over i < j."""
    box = Box.cubic(60.0)
    gen = torch.Generator().manual_seed(3)
    pos = box.random_positions(6, generator=gen)
    charges = torch.tensor([1.0, 1.0, 1.0, -1.0, -1.0, -1.0], dtype=torch.float64)

    expected = 0.0
    for i in range(6):
        for j in range(i + 1, 6):
            r = torch.linalg.norm(box.minimum_image(pos[j] - pos[i]))
            kind = PairKind.ION_ELECTRON if charges[i] * charges[j] < 0 else PairKind.ION_ION
            expected += model.energy_asym(r, kind).item()

    assert model.total_energy(pos, charges, box).item() == pytest.approx(expected)


def test_row_terms_exclude_self(model):
    box = Box.cubic(20.0)
    pos = torch.tensor([[1.0, 1.0, 1.0], [4.0, 1.0, 1.0], [1.0, 9.0, 1.0]], dtype=torch.float64)
    charges = torch.tensor([1.0, -1.0, 1.0], dtype=torch.float64)
    u, e = model.row_terms(pos[0], 0, pos, charges, box)
    assert u[0].item() == 0.0 and e[0].item() == 0.0
    assert u[1].item() == model.potential(3.0, True).item()
    assert u[2].item() == pytest.approx(model.potential(8.0, False).item())


@pytest.mark.parametrize("T, epsilon", [(0.0, 1.0), (-5.0, 1.0), (1000.0, 0.0)])
def test_invalid_parameters(T, epsilon):
    with pytest.raises(ValueError):
        PolochkaCoulomb(T, epsilon)
