from __future__ import annotations

"""units.py
Reduced units for the two-component (ion/electron) plasma.

* Lengths are Bohr radii, temperatures Kelvin, energies kT.
* ``COULOMB_SCALE`` turns ``1 / (T * r)`` into a pair energy in kT.
* Helpers `box_edge_bohr`, `PlasmaUnits.gamma` derive the box and coupling.
"""

from dataclasses import dataclass
from functools import cached_property
import math

# --- SI constants --------------------------------------------------------
_BOLTZMANN = 1.380_649e-23          # J K^{-1}  (exact)
_EPS0      = 8.854_187_8128e-12     # F m^{-1}
_ELEM_Q    = 1.602_176_634e-19      # C (exact)
_BOHR      = 5.291_772_109_03e-11   # m

BOHR_CM = _BOHR * 100.0             # cm per bohr


def coulomb_scale(length: float = _BOHR) -> float:
    """e^2 / (4 pi eps0 * length * k_B) in Kelvin.

    With ``length`` equal to one Bohr radius this is the Hartree energy over
    k_B, ~315775.02 K, so ``COULOMB_SCALE / (T * r)`` is the Coulomb energy of
    two unit charges at ``r`` bohr measured in kT.
    """
    return _ELEM_Q ** 2 / (4 * math.pi * _EPS0 * length * _BOLTZMANN)


COULOMB_SCALE = coulomb_scale()


def box_edge_bohr(num_particles: int, density: float) -> float:
    """Edge (bohr) of the cube holding ``num_particles`` at ``density`` cm^-3."""
    if num_particles <= 0:
        raise ValueError(f"num_particles must be positive, got {num_particles}")
    if density <= 0:
        raise ValueError(f"density must be positive, got {density}")
    return (num_particles / density) ** (1.0 / 3.0) / BOHR_CM


@dataclass(frozen=True)
class PlasmaUnits:
    """Thermodynamic point of one plasma run.

    Parameters
    ----------
    T : float
        Temperature in Kelvin.
    density : float
        Total number density (ions plus electrons) in cm^-3.
    """

    T: float
    density: float

    def __post_init__(self):
        if self.T <= 0:
            raise ValueError(f"Temperature must be positive, got {self.T}")
        if self.density <= 0:
            raise ValueError(f"density must be positive, got {self.density}")

    # --- derived scales --------------------------------------------------------
    @cached_property
    def scale(self) -> float:             # K * bohr
        return COULOMB_SCALE

    @cached_property
    def wigner_seitz_radius(self) -> float:   # bohr
        return (3.0 / (4.0 * math.pi * self.density)) ** (1.0 / 3.0) / BOHR_CM

    @cached_property
    def gamma(self) -> float:             # Coulomb coupling parameter
        return self.scale / (self.T * self.wigner_seitz_radius)

    # --- misc --------------------------------------------------------
    def __repr__(self):
        return f"PlasmaUnits(T={self.T:g} K, n={self.density:.3g} cm^-3, gamma={self.gamma:.3g})"
