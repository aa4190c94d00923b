from __future__ import annotations
import logging
import os
import random
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable

from control.config import NoRunsError, RunConfig, save_continue_options
from system.ensemble import PlasmaEnsemble

logger = logging.getLogger(__name__)

REFRESH_DELAY = 20.0        # seconds between status polls
SAVE_ENERGIES_INT = 35      # polls between energy checkpoints
WINDOW_SIZE = 5             # normalized energies kept per ensemble


class ControllerState(Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


def default_workers() -> int:
    """Half the cores, or all of them on machines with two or fewer."""
    cores = os.cpu_count() or 1
    return cores // 2 if cores > 2 else cores


def temperature_label(T: float) -> str:
    return str(int(T)) if float(T).is_integer() else f"{T:g}"


class EnsembleController:
    """
    Runs many ensembles concurrently and aggregates their energies by temperature.

    The controller builds one ensemble per config, starts them on a fixed-size thread pool with a
    staggered start, and then polls them every ``refresh_delay`` seconds. Each poll appends the
    normalized energy of every ensemble that was still running to its window (the last
    ``WINDOW_SIZE`` values) and logs a status block. Every ``save_interval``-th poll the last
    window value of every ensemble is written to ``<T>K_energy.txt``. Once every ensemble has
    finished the controller drains (one final checkpoint) and shuts the pool down.

    Only the polling thread touches the windows, running states and temperature groups.
    Ensembles are read through their accessors.

    Parameters
    ----------
    configs : iterable of RunConfig
        Duplicates are dropped, order is kept.
    ensemble_factory : callable
        Builds an ensemble from a config, `PlasmaEnsemble` by default.
    output_dir : str or Path
        Where the energy checkpoints go.
    refresh_delay : float
        Seconds between polls.
    save_interval : int
        Polls between energy checkpoints.
    workers : int, optional
        Pool size, `default_workers()` if omitted.
    start_delay : (float, float)
        Bounds of the uniform random pause before each submission, in seconds.
    config_path : str or Path, optional
        Run file the configs came from, needed by `save_continue_options`.

    Expected `ensemble` interface
    ---------------------------
    ensemble.config    : RunConfig
    ensemble.energy    : float – total energy
    ensemble.curr_step : int
    ensemble.finished  : bool, never reverts to False
    ensemble.run()     : blocking sampling loop
    ensemble.stop()    : cooperative stop request
    """

    def __init__(self, configs: Iterable[RunConfig], *, ensemble_factory: Callable[[RunConfig], Any] = PlasmaEnsemble,
                 output_dir: str | Path = ".", refresh_delay: float = REFRESH_DELAY, save_interval: int = SAVE_ENERGIES_INT,
                 workers: int | None = None, start_delay: tuple[float, float] = (0.05, 0.5),
                 config_path: str | Path | None = None):
        self.state = ControllerState.INITIALIZING

        configs = list(dict.fromkeys(configs))
        if not configs:
            raise NoRunsError("No valid runs to control")
        if refresh_delay < 0:
            raise ValueError(f"refresh_delay must be non-negative, got {refresh_delay}")
        if save_interval < 1:
            raise ValueError(f"save_interval must be positive, got {save_interval}")
        if workers is not None and workers < 1:
            raise ValueError(f"workers must be positive, got {workers}")
        low, high = start_delay
        if not 0 <= low <= high:
            raise ValueError(f"start_delay must satisfy 0 <= low <= high, got {start_delay}")

        self.configs = configs
        self.output_dir = Path(output_dir)
        self.refresh_delay = refresh_delay
        self.save_interval = save_interval
        self.workers = workers or default_workers()
        self.start_delay = (low, high)
        self.config_path = Path(config_path) if config_path is not None else None

        # T -> {ensemble: window}, insertion ordered
        self.table: dict[float, dict[Any, deque[float]]] = {}
        self.ensembles = []
        for config in configs:
            ensemble = ensemble_factory(config)
            self.ensembles.append(ensemble)
            self.table.setdefault(config.temperature, {})[ensemble] = deque(maxlen=WINDOW_SIZE)

        self.states: dict[Any, bool] = {ensemble: True for ensemble in self.ensembles}
        self.failures: dict[Any, BaseException] = {}
        self.polls = 0
        self.checkpoints = 0

        self._futures: dict[Any, Future] = {}
        self._pool: ThreadPoolExecutor | None = None
        self._pool_shut_down = False
        self._running = True
        self._final_saved = False
        self._halt = threading.Event()
        self._stopped = threading.Event()
        self._poll_thread: int | None = None
        # re-entrant: stop() may run from a signal handler while the poll loop holds the lock
        self._lock = threading.RLock()

        logger.info("Controller with %d ensembles in %d temperature group(s), %d workers",
                    len(self.ensembles), len(self.table), self.workers)

    # --- accessors --------------------------------------------------------
    @property
    def running(self) -> bool:
        """True while at least one ensemble runs; never re-enabled once False."""
        return self._running

    @property
    def pool_shut_down(self) -> bool:
        return self._pool_shut_down

    @property
    def groups(self) -> dict[float, list]:
        return {T: list(group) for T, group in self.table.items()}

    def window(self, ensemble) -> list[float]:
        return list(self.table[ensemble.config.temperature][ensemble])

    # --- lifecycle --------------------------------------------------------
    def start(self) -> ControllerState:
        """Launch every ensemble and poll until all finish or `stop` is called. Blocks."""
        with self._lock:
            if self.state is not ControllerState.INITIALIZING:
                logger.warning("Controller is %s, not starting", self.state.value)
                return self.state
            self.state = ControllerState.RUNNING
            self._poll_thread = threading.get_ident()
            self._pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="ensemble")

        logger.info("Starting %d ensembles' threads...", len(self.ensembles))
        for ensemble in self.ensembles:
            # spread the starts so the ensembles do not allocate and write all at once
            if self._halt.wait(random.uniform(*self.start_delay)):
                break
            with self._lock:
                if self.state is not ControllerState.RUNNING:
                    break
                self._futures[ensemble] = self._pool.submit(ensemble.run)

        logger.info("Ensembles started and running:")
        self._poll_loop()
        return self.state

    def _poll_loop(self) -> None:
        i = 0
        self.draw_status()
        while self._running:
            if self._halt.wait(self.refresh_delay):
                break
            self.draw_status()
            # heavy status reports
            if i % self.save_interval == 0:
                self.save_energies()
            i += 1
        self._drain()

    def _drain(self) -> None:
        with self._lock:
            if self.state is ControllerState.STOPPED:
                return
            self.state = ControllerState.DRAINING
            stopped = self._halt.is_set()
            self.save_energies(final=True)
            # queued ensembles that never started are dropped on stop
            self._shutdown(cancel=stopped)
        if stopped:
            logger.info("Controller with %d threads stopped. Thank you.", len(self.ensembles))
        else:
            logger.info("Controller (%d jobs) finished.", len(self.ensembles))

    def stop(self) -> None:
        """Ask the controller and every ensemble to stop. Safe to call from a signal handler.

        Only flags are set here. The thread blocked in `start` notices them, writes the last
        checkpoint and shuts the pool down. Called from any other thread, `stop` waits for that
        to happen. Before `start` the controller stops at once.
        """
        with self._lock:
            if self.state is ControllerState.STOPPED:
                return
            if not self._halt.is_set():
                logger.info("Somebody stopping controller...")
                self._running = False
                self._halt.set()
                for ensemble in self.ensembles:
                    ensemble.stop()
                if self.state is ControllerState.INITIALIZING:
                    self._shutdown(cancel=True)
                    return
        if self._poll_thread != threading.get_ident():
            self._stopped.wait()

    def _shutdown(self, *, cancel: bool) -> None:
        self.state = ControllerState.STOPPED
        self._running = False
        if self._pool is not None:
            self._pool.shutdown(wait=True, cancel_futures=cancel)
            self._pool_shut_down = True
            logger.info("Thread pool shut down.")
        if self.failures:
            logger.error("%d ensemble(s) failed: %s", len(self.failures),
                         ", ".join(str(ensemble.config.folder) for ensemble in self.failures))
        self._stopped.set()

    # --- polling --------------------------------------------------------
    def draw_status(self) -> None:
        """One poll: refresh every ensemble's window and state, log the status block."""
        with self._lock:
            lines = []
            for ensemble in self.ensembles:
                # read before the energy so the sample taken alongside a finish is the final one
                finished = ensemble.finished
                lines.append(self._refresh_energy(ensemble))
                self._refresh_state(ensemble, finished)
            self.polls += 1
            logger.info("Status (poll %d):\n%s", self.polls, "\n".join(lines))
            self._stop_if_finished()

    def _refresh_energy(self, ensemble) -> str:
        running = self.states[ensemble]
        window = self.table[ensemble.config.temperature][ensemble]
        if running:
            window.append(ensemble.energy / ensemble.config.num_particles)

        energies = "".join(f"{value:.4f}\t" for value in window)
        return f"{ensemble.config.folder}\t#{ensemble.curr_step}\t\t{energies}\t{'' if running else ' stop'}"

    def _refresh_state(self, ensemble, finished: bool) -> None:
        future = self._futures.get(ensemble)
        if future is not None and future.done() and not future.cancelled() and ensemble not in self.failures:
            exc = future.exception()
            if exc is not None:
                self.failures[ensemble] = exc
                logger.error("Ensemble %s crashed at step %d", ensemble.config.folder, ensemble.curr_step, exc_info=exc)
        self.states[ensemble] = not (finished or ensemble in self.failures)  # True == running

    def _stop_if_finished(self) -> None:
        if any(self.states.values()):
            return
        if self._running:
            logger.info("All ensembles seem to have finished work.")
        self._running = False

    # --- checkpoints --------------------------------------------------------
    def energy_path(self, T: float) -> Path:
        return self.output_dir / f"{temperature_label(T)}K_energy.txt"

    def save_energies(self, *, final: bool = False) -> bool:
        """Write the latest normalized energy of every ensemble, one file per temperature.

        I/O errors are logged, never raised. After the final checkpoint nothing is written.
        """
        with self._lock:
            if self._final_saved:
                logger.debug("Final energies already written, skipping checkpoint")
                return False
            if final:
                self._final_saved = True
            try:
                self.output_dir.mkdir(parents=True, exist_ok=True)
                for T, group in self.table.items():
                    folders = ", ".join(str(ensemble.config.folder) for ensemble in group)
                    with self.energy_path(T).open("w", encoding="utf-8") as fh:
                        fh.write(f"#{temperature_label(T)}  [{folders}]\n")
                        for window in group.values():
                            fh.write(f"{window[-1]:.5E}\n" if window else "nan\n")
            except OSError as exc:
                logger.error("Can't save energy lists to %s: %s", self.output_dir, exc)
                return False
            self.checkpoints += 1
            return True

    def save_continue_options(self) -> Path | None:
        """Rewrite the run file with ``resume`` set, next to the original."""
        if self.config_path is None:
            logger.warning("No run file known, continuation options not written")
            return None
        return save_continue_options(self.configs, self.config_path)

    def summary(self) -> str:
        finished = sum(1 for ensemble in self.ensembles if ensemble.finished)
        return (f"{len(self.ensembles)} ensembles, {finished} finished, {len(self.failures)} failed, "
                f"{self.polls} polls, {self.checkpoints} checkpoints, state {self.state.value}")

    def __repr__(self) -> str:
        return f"EnsembleController({self.summary()})"
