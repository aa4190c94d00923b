from __future__ import annotations

"""config.py
Run configuration for a batch of plasma ensembles.

The run file is YAML: an optional ``defaults`` mapping merged into every entry of the ``runs`` list
(a bare list of runs is accepted too). Keys are the `RunConfig` field names.

    defaults:
      density: 1.0e+20
      epsilon: 3.0
      max_steps: 2000000
    runs:
      - {temperature: 5000, num_particles: 200, folder: t5000_a}
      - {temperature: 5000, num_particles: 200, folder: t5000_b, seed: 7}
"""

import logging
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Iterable

import yaml

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ("temperature", "num_particles", "folder")
CONTINUE_SUFFIX = "_"


class ConfigError(Exception):
    """The run file exists but cannot be used."""


class ConfigNotFoundError(ConfigError):
    """The run file does not exist."""


class NoRunsError(ConfigError):
    """No valid run was found."""


@dataclass(frozen=True)
class RunConfig:
    """One ensemble's run parameters. Immutable, hashable; equal configs collapse in a set.

    Parameters
    ----------
    temperature : float
        Kelvin. Also the grouping key for the energy checkpoints.
    num_particles : int
        Ions plus electrons.
    folder : str
        Output folder of the ensemble.
    density : float
        Total number density in cm^-3.
    epsilon : float
        Depth of the ion-electron shelf in kT.
    max_steps : int
        Monte-Carlo steps after which the ensemble is finished.
    max_delta : float
        Trial displacement per axis as a fraction of the box edge.
    save_every : int
        Steps between state saves.
    seed : int, optional
        Seed of the ensemble's random generator.
    resume : bool
        Continue from ``<folder>/state.pt`` instead of a fresh configuration.
    """

    temperature: float
    num_particles: int
    folder: str
    density: float = 1.0e20
    epsilon: float = 3.0
    max_steps: int = 1_000_000
    max_delta: float = 0.05
    save_every: int = 10_000
    seed: int | None = None
    resume: bool = False

    def __post_init__(self):
        if self.temperature <= 0:
            raise ValueError(f"temperature must be positive, got {self.temperature}")
        if self.num_particles < 2:
            raise ValueError(f"num_particles must be at least 2, got {self.num_particles}")
        if not str(self.folder).strip():
            raise ValueError("folder must not be empty")
        if self.density <= 0 or self.epsilon <= 0:
            raise ValueError(f"density and epsilon must be positive, got {self.density}, {self.epsilon}")
        if self.max_steps < 0:
            raise ValueError(f"max_steps must be non-negative, got {self.max_steps}")
        if not 0 < self.max_delta <= 0.5:
            raise ValueError(f"max_delta must be in (0, 0.5], got {self.max_delta}")
        if self.save_every < 1:
            raise ValueError(f"save_every must be positive, got {self.save_every}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunConfig":
        missing = [key for key in REQUIRED_KEYS if key not in data]
        if missing:
            raise ValueError(f"missing keys: {', '.join(missing)}")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"unknown keys: {', '.join(unknown)}")

        values = dict(data)
        values["num_particles"] = int(values["num_particles"])
        values["folder"] = str(values["folder"])
        for key in ("density", "epsilon", "max_delta"):
            if key in values:
                values[key] = float(values[key])
        for key in ("max_steps", "save_every"):
            if key in values:
                values[key] = int(values[key])
        if values.get("seed") is not None:
            values["seed"] = int(values["seed"])
        if not isinstance(values.get("resume", False), bool):
            raise ValueError(f"resume must be true or false, got {values['resume']!r}")
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def with_resume(self) -> "RunConfig":
        return replace(self, resume=True)


def load_configs(path: str | Path) -> list[RunConfig]:
    """Read the run file into a de-duplicated, insertion-ordered list of configs.

    Invalid entries are skipped with a warning.

    Raises
    ------
    ConfigNotFoundError
        ``path`` does not exist.
    ConfigError
        ``path`` is unreadable or not a YAML runs document.
    NoRunsError
        No valid run is left.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigNotFoundError(f"File {path} not found")

    try:
        with path.open("r", encoding="utf-8") as fh:
            doc = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Config file {path} broken: {exc}") from exc

    defaults, runs = _split_document(doc, path)

    configs = []
    for n, entry in enumerate(runs):
        if not isinstance(entry, dict):
            logger.warning("Skipping run #%d in %s: expected a mapping, got %r", n, path, entry)
            continue
        try:
            configs.append(RunConfig.from_dict({**defaults, **entry}))
        except (TypeError, ValueError) as exc:
            logger.warning("Skipping run #%d in %s: %s", n, path, exc)

    unique = list(dict.fromkeys(configs))
    if len(unique) < len(configs):
        logger.warning("Dropped %d duplicate run(s) from %s", len(configs) - len(unique), path)
    if not unique:
        raise NoRunsError(f"No valid options found in {path}")
    return unique


def _split_document(doc: Any, path: Path) -> tuple[dict[str, Any], list[Any]]:
    if doc is None:
        return {}, []
    if isinstance(doc, list):
        return {}, doc
    if not isinstance(doc, dict):
        raise ConfigError(f"Config file {path} broken: expected a mapping or a list of runs")

    defaults = doc.get("defaults") or {}
    runs = doc.get("runs") or []
    if not isinstance(defaults, dict) or not isinstance(runs, list):
        raise ConfigError(f"Config file {path} broken: 'defaults' must be a mapping and 'runs' a list")
    return defaults, runs


def continue_path(path: str | Path) -> Path:
    """Where the continuation copy of the run file ``path`` goes."""
    path = Path(path)
    return path.with_name(path.name + CONTINUE_SUFFIX)


def save_continue_options(configs: Iterable[RunConfig], path: str | Path) -> Path:
    """Write ``configs`` with ``resume`` set next to the run file ``path``; returns the new path."""
    target = continue_path(path)
    doc = {"runs": [config.with_resume().to_dict() for config in configs]}
    with target.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(doc, fh, sort_keys=False)
    logger.info("Continuation options written to %s", target)
    return target
