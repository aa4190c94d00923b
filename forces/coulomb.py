from __future__ import annotations
from enum import Enum
import torch
from system.box import Box
from system.units import COULOMB_SCALE


class PairKind(Enum):
    """Species pairing of two plasma particles."""

    ION_ION = "ii"
    ELECTRON_ELECTRON = "ee"
    ION_ELECTRON = "ie"

    @property
    def attraction(self) -> bool:
        return self is PairKind.ION_ELECTRON

    @classmethod
    def from_flags(cls, ee: bool, ii: bool) -> "PairKind":
        """Map the legacy (electron-electron, ion-ion) flag pair onto a kind."""
        if ee and ii:
            raise ValueError("a pair cannot be electron-electron and ion-ion at once")
        if ee:
            return cls.ELECTRON_ELECTRON
        if ii:
            return cls.ION_ION
        return cls.ION_ELECTRON


class PolochkaCoulomb:
    """Coulomb pair potential with a flat shelf ("polochka") for ion-electron pairs.

    Energies are dimensionless (kT), distances in bohr. Opposite charges closer than
    ``cutoff_radius = scale / (T * epsilon)`` feel the constant ``-epsilon`` instead of the
    diverging ``-scale / (T * r)`` tail. Like charges are clamped to their value at ``r = 1``
    inside the unit hard core.

    The shelf is constant, so it contributes nothing to the bookkept energy: `energy` is zero
    there while `potential` (used for acceptance) is ``-epsilon``.

    Parameters
    ----------
    T : float
        Temperature in Kelvin.
    epsilon : float
        Shelf depth in kT.
    scale : float
        Conversion of ``1 / (T * r)`` to kT, defaults to the Hartree energy over k_B.
    """

    def __init__(self, T: float | torch.Tensor, epsilon: float | torch.Tensor, *, scale: float = COULOMB_SCALE, device: str | torch.device = "cpu", dtype: torch.dtype = torch.float64):
        self.device = torch.device(device)
        self.dtype = dtype

        self.T = torch.as_tensor(T, device=self.device, dtype=self.dtype)
        self.epsilon = torch.as_tensor(epsilon, device=self.device, dtype=self.dtype)
        self.scale = torch.as_tensor(scale, device=self.device, dtype=self.dtype)

        if self.T.ndim != 0 or self.epsilon.ndim != 0 or self.scale.ndim != 0:
            raise ValueError("T, epsilon and scale must be scalar (0D) tensors")
        if self.T <= 0 or self.epsilon <= 0:
            raise ValueError(f"T and epsilon must be positive, got T={self.T.item()}, epsilon={self.epsilon.item()}")

        self.cutoff_radius = self.scale / (self.T * self.epsilon)

    # --- single pair --------------------------------------------------------
    def potential(self, r: float | torch.Tensor, attraction: bool | torch.Tensor) -> torch.Tensor:
        """Pair potential at separation ``r``; ``attraction`` marks ion-electron pairs."""
        r = self._distance(r)
        attraction = torch.as_tensor(attraction, device=self.device, dtype=torch.bool)
        return torch.where(attraction, self._attractive(r), self._repulsive(r))

    def potential_asym(self, r: float | torch.Tensor, kind: PairKind) -> torch.Tensor:
        return self.potential(r, kind.attraction)

    def energy(self, r: float | torch.Tensor, attraction: bool | torch.Tensor) -> torch.Tensor:
        """Contribution of the pair to the total energy."""
        r = self._distance(r)
        attraction = torch.as_tensor(attraction, device=self.device, dtype=torch.bool)
        shelf = attraction & (r < self.cutoff_radius)
        return torch.where(shelf, torch.zeros((), device=self.device, dtype=self.dtype), self.potential(r, attraction))

    def energy_asym(self, r: float | torch.Tensor, kind: PairKind) -> torch.Tensor:
        return self.energy(r, kind.attraction)

    def _attractive(self, r: torch.Tensor) -> torch.Tensor:
        return torch.where(r < self.cutoff_radius, -self.epsilon, -self.scale / (self.T * r))

    def _repulsive(self, r: torch.Tensor) -> torch.Tensor:
        tail = self.scale / (self.T * r)
        core = r < 1  # in bohr
        if core.any():
            return torch.where(core, self.potential(1.0, False), tail)
        return tail

    def _distance(self, r: float | torch.Tensor) -> torch.Tensor:
        return torch.as_tensor(r, device=self.device, dtype=self.dtype)

    # --- configurations --------------------------------------------------------
    def pair_terms(self, pos: torch.Tensor, charges: torch.Tensor, box: Box) -> tuple[torch.Tensor, torch.Tensor]:
        """All-pairs potential and energy matrices (N, N) with a zero diagonal."""
        delta = box.minimum_image(pos.unsqueeze(0) - pos.unsqueeze(1))   # (N, N, 3)
        r = torch.linalg.norm(delta, dim=-1)                              # (N, N)
        attraction = (charges.unsqueeze(0) * charges.unsqueeze(1)) < 0    # (N, N)
        self_pair = torch.eye(pos.shape[0], device=self.device, dtype=torch.bool)
        u = self.potential(r, attraction).masked_fill(self_pair, 0.0)
        e = self.energy(r, attraction).masked_fill(self_pair, 0.0)
        return u, e

    def row_terms(self, point: torch.Tensor, index: int, pos: torch.Tensor, charges: torch.Tensor, box: Box) -> tuple[torch.Tensor, torch.Tensor]:
        """Potential and energy (N,) of particle ``index`` placed at ``point`` against all others."""
        r = torch.linalg.norm(box.minimum_image(pos - point), dim=-1)     # (N,)
        attraction = (charges * charges[index]) < 0
        u = self.potential(r, attraction)
        e = self.energy(r, attraction)
        u[index] = 0.0
        e[index] = 0.0
        return u, e

    def total_energy(self, pos: torch.Tensor, charges: torch.Tensor, box: Box) -> torch.Tensor:
        """Total interaction energy of a configuration, each pair counted once."""
        _, e = self.pair_terms(pos, charges, box)
        return 0.5 * e.sum()

    def __repr__(self) -> str:
        return (f"PolochkaCoulomb(T={self.T.item():g}, epsilon={self.epsilon.item():.3g}, "
                f"cutoff={self.cutoff_radius.item():.3g})")
