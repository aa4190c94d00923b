from __future__ import annotations
import torch

"""box.py
Periodic rectangular prism simulation box for the NVT plasma runs. Stored numbers are assumed to already be in bohr.

* angles fixed at 90 deg, 90 deg, 90 deg, periodic along every axis
* Helpers (`wrap`, `minimum_image`, `random_positions`)
"""

class Box:
    """Axis‑aligned periodic simulation box.

    Parameters
    ----------
    edges : (3,) array‑like [Lx, Ly, Lz] – edge lengths in bohr.
    device, dtype : torch kwargs for internal tensor representation.
    """
    edges: torch.Tensor
    # --- construction --------------------------------------------------------
    def __init__(self, edges: tuple[float, float, float] | torch.Tensor, *, device: str | torch.device = "cpu", dtype: torch.dtype = torch.float64):
        e = torch.as_tensor(edges, device=device, dtype=dtype).flatten()
        if e.numel() != 3:
            raise ValueError("Box expects three edge lengths [Lx, Ly, Lz].")
        if not torch.all(e > 0):
            raise ValueError("All box edge lengths must be positive.")

        self.edges = e
        self.device = device
        self.dtype = dtype

    @classmethod
    def cubic(cls, edge: float, *, device: str | torch.device = "cpu", dtype: torch.dtype = torch.float64) -> "Box":
        return cls((edge, edge, edge), device=device, dtype=dtype)

    # --- PBC helpers --------------------------------------------------------
    def wrap(self, pos: torch.Tensor) -> torch.Tensor:
        """Return positions wrapped into the primary cell (mod box)."""
        return pos - torch.floor(pos / self.edges) * self.edges

    def minimum_image(self, delta: torch.Tensor) -> torch.Tensor:
        """
        Apply minimum image convention to displacement vectors.

        Parameters
        ----------
        delta : torch.Tensor
            Displacement vectors of shape (..., 3)

        Returns
        -------
        torch.Tensor
            Minimum image corrected displacement vectors
        """
        fractional = delta / self.edges
        return delta - self.edges * ((fractional + 0.5).floor())

    def random_positions(self, n: int, generator: torch.Generator | None = None) -> torch.Tensor:
        """Uniformly distributed (n, 3) positions inside the primary cell."""
        u = torch.rand((n, 3), generator=generator, device=self.device, dtype=self.dtype)
        return u * self.edges

    # --- misc --------------------------------------------------------
    def __repr__(self):
        Lx, Ly, Lz = self.edges.tolist()
        return f"Box({Lx:g}p, {Ly:g}p, {Lz:g}p)"
