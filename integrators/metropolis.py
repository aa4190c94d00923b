import torch

class Metropolis:
    """
    Minimal single-particle Metropolis sampler for an NVT plasma ensemble.

    Each step displaces one random particle, wraps it back into the box and accepts the move with
    probability min(1, exp(-dU)). Pair potentials are already in units of kT, so no beta appears.
    Acceptance uses the potential (shelf included); the bookkept energy is updated with the energy
    terms, which are zero on the shelf.

    Parameters
    ----------
    max_delta : float
        Largest trial displacement per axis, as a fraction of the box edge.
    generator : torch.Generator
        Random source shared with the owning ensemble.

    Expected `ensemble` interface
    ---------------------------
    ensemble.pos          : (N, 3) tensor – current positions
    ensemble.charges      : (N,)   tensor – +1 ions, -1 electrons
    ensemble.box          : Box
    ensemble.potential    : PolochkaCoulomb
    ensemble.energy_total : 0D tensor – bookkept interaction energy (kT)
    """
    def __init__(self, max_delta: float, *, generator: torch.Generator | None = None, device: str | torch.device = "cpu", dtype: torch.dtype = torch.float64):
        if not 0 < max_delta <= 0.5:
            raise ValueError(f"max_delta must be in (0, 0.5], got {max_delta}")
        self.max_delta = max_delta
        self.generator = generator
        self.device = device
        self.dtype = dtype
        self.attempted = 0
        self.accepted = 0

    @property
    def acceptance_ratio(self) -> float:
        return self.accepted / self.attempted if self.attempted else 0.0

    def step(self, ensemble) -> bool:
        box, potential = ensemble.box, ensemble.potential
        i = int(torch.randint(ensemble.pos.shape[0], (1,), generator=self.generator, device=self.device))

        old = ensemble.pos[i].clone()
        shift = (2 * torch.rand(3, generator=self.generator, device=self.device, dtype=self.dtype) - 1) * self.max_delta * box.edges
        new = box.wrap(old + shift)

        u_old, e_old = potential.row_terms(old, i, ensemble.pos, ensemble.charges, box)
        u_new, e_new = potential.row_terms(new, i, ensemble.pos, ensemble.charges, box)
        dU = (u_new - u_old).sum()

        self.attempted += 1
        # metropolis criteria
        if dU > 0 and torch.rand((), generator=self.generator, device=self.device, dtype=self.dtype).log() >= -dU:
            return False

        ensemble.pos[i] = new
        ensemble.energy_total = ensemble.energy_total + (e_new - e_old).sum()
        self.accepted += 1
        return True

    def __repr__(self) -> str:
        return f"Metropolis(max_delta={self.max_delta:.3g}, acceptance={self.acceptance_ratio:.3g})"
