from __future__ import annotations
import logging
import pickle
import threading
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING
import torch
from forces.coulomb import PolochkaCoulomb
from integrators.metropolis import Metropolis
from system.box import Box
from system.units import PlasmaUnits, box_edge_bohr

if TYPE_CHECKING:
    from control.config import RunConfig

logger = logging.getLogger(__name__)

STATE_FILE = "state.pt"


@dataclass(frozen=True)
class Snapshot:
    """What an ensemble exposes to the outside, replaced as a whole after every step."""
    step: int
    energy: float
    finished: bool = False


class PlasmaEnsemble:
    def __init__(self, config: RunConfig, *, max_seconds: float | None = None, device: str | torch.device = "cpu", dtype: torch.dtype = torch.float64):
        """
        One NVT Monte-Carlo run of an ion/electron plasma.

        Parameters
        ----------
        config : RunConfig
            Temperature, density, particle count, shelf depth and sampling knobs.
        max_seconds : float, optional
            Wall-time ceiling for `run`; the ensemble finishes when it is exceeded.

        Only `run` mutates the sampling state. Other threads read `energy`, `curr_step` and
        `finished`, which come from an immutable `Snapshot`.
        """
        self.config = config
        self.max_seconds = max_seconds
        self.device = torch.device(device)
        self.dtype = dtype
        self.folder = Path(config.folder)

        # --- physics ---------------------------------------------------------
        N = config.num_particles
        self.units = PlasmaUnits(config.temperature, config.density)
        self.box = Box.cubic(box_edge_bohr(N, config.density), device=self.device, dtype=self.dtype)
        self.potential = PolochkaCoulomb(config.temperature, config.epsilon, device=self.device, dtype=self.dtype)

        self.generator = torch.Generator(device=self.device)
        if config.seed is not None:
            self.generator.manual_seed(config.seed)
        else:
            self.generator.seed()
        self.integrator = Metropolis(config.max_delta, generator=self.generator, device=self.device, dtype=self.dtype)

        # --- configuration ---------------------------------------------------
        n_ions = N // 2
        self.charges = torch.cat([
            torch.ones(n_ions, device=self.device, dtype=self.dtype),
            -torch.ones(N - n_ions, device=self.device, dtype=self.dtype),
        ])
        self.pos = self.box.random_positions(N, generator=self.generator)
        step = 0
        if config.resume:
            step = self._load_state()

        self.energy_total = self.potential.total_energy(self.pos, self.charges, self.box)
        self._stop = threading.Event()
        self._snapshot = Snapshot(step=step, energy=self.energy_total.item())

    # --- observables --------------------------------------------------------
    @property
    def energy(self) -> float:
        """Total interaction energy in kT."""
        return self._snapshot.energy

    @property
    def normalized_energy(self) -> float:
        return self._snapshot.energy / self.config.num_particles

    @property
    def curr_step(self) -> int:
        return self._snapshot.step

    @property
    def finished(self) -> bool:
        return self._snapshot.finished

    # --- lifecycle --------------------------------------------------------
    def run(self) -> None:
        """Sample until ``max_steps``, a stop request or the wall-time ceiling."""
        if self.finished:
            return
        self.folder.mkdir(parents=True, exist_ok=True)
        logger.info("%s: started at step %d, %r, %r", self.folder, self.curr_step, self.units, self.potential)

        started = time.monotonic()
        step = self.curr_step
        try:
            while step < self.config.max_steps and not self._stop.is_set():
                self.integrator.step(self)
                step += 1
                self._snapshot = Snapshot(step=step, energy=self.energy_total.item())

                if step % self.config.save_every == 0:
                    self.save_state()
                if self.max_seconds is not None and time.monotonic() - started >= self.max_seconds:
                    logger.warning("%s: wall-time ceiling of %gs reached at step %d", self.folder, self.max_seconds, step)
                    break
            self.save_state()
        except Exception:
            self._snapshot = replace(self._snapshot, finished=True)
            raise

        self._snapshot = replace(self._snapshot, finished=True)
        logger.info("%s: finished at step %d, %r", self.folder, step, self.integrator)

    def stop(self) -> None:
        """Ask `run` to return at the next step boundary."""
        self._stop.set()

    # --- persistence --------------------------------------------------------
    @property
    def state_path(self) -> Path:
        return self.folder / STATE_FILE

    def save_state(self) -> None:
        """Atomically write positions, charges and step counter to ``<folder>/state.pt``."""
        self.folder.mkdir(parents=True, exist_ok=True)
        tmp = self.state_path.with_suffix(".tmp")
        torch.save({
            "pos": self.pos.cpu(),
            "charges": self.charges.cpu(),
            "step": self.curr_step,
            "energy": self.energy_total.item(),
        }, tmp)
        tmp.replace(self.state_path)

    def _load_state(self) -> int:
        if not self.state_path.is_file():
            logger.warning("%s: no saved state to continue from, starting fresh", self.folder)
            return 0
        try:
            state = torch.load(self.state_path, map_location=self.device)
            pos = state["pos"].to(device=self.device, dtype=self.dtype)
            charges = state["charges"]
            step = int(state["step"])
        except (pickle.UnpicklingError, EOFError, RuntimeError, KeyError, TypeError, AttributeError) as exc:
            raise ValueError(f"{self.state_path} is not a readable ensemble state: {exc}") from exc
        if pos.shape != self.pos.shape:
            raise ValueError(f"{self.state_path} holds {tuple(pos.shape)} positions, expected {tuple(self.pos.shape)}")
        self.pos = self.box.wrap(pos)
        self.charges = charges.to(device=self.device, dtype=self.dtype)
        logger.info("%s: continuing from step %d", self.folder, step)
        return step

    # --- misc --------------------------------------------------------
    def __repr__(self):
        return (f"PlasmaEnsemble({self.folder}, T={self.config.temperature:g} K, "
                f"N={self.config.num_particles}, step={self.curr_step})")
