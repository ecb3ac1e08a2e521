"""
Solver configuration dataclasses and their YAML loader.

Defaults reproduce the reference Rayleigh-Benard run: two pre- and
post-smoothing sweeps, multigrid tolerances 1e-10 / 1e-20 / 1e50 with at most
20 cycles, ten Newton iterations to 1e-8 and a time step of 0.2.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import yaml

from femgax.errors import ConfigurationError
from femgax.solvers.linear_types import CycleType, PreconditionerKind, SolverKind, _coerce_enum


def _get(d: Mapping[str, Any], key, default, cast, where):
    raw = d.get(key, None)
    if raw is None:
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{where}.{key}: invalid value {raw!r}") from exc


def _as_bool(value):
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered not in ("true", "false", "yes", "no", "1", "0"):
            raise ValueError(value)
        return lowered in ("true", "yes", "1")
    return bool(value)


@dataclass
class MultigridConfig:
    cycle: CycleType = CycleType.V
    first_step_cycle: CycleType = CycleType.F
    n_pre: int = 2
    n_post: int = 2
    rtol: float = 1e-10
    atol: float = 1e-20
    dtol: float = 1e50
    max_cycles: int = 20
    smoother: SolverKind = SolverKind.RICHARDSON
    smoother_preconditioner: PreconditionerKind = PreconditionerKind.ILU
    smoother_max_iterations: int = 1
    smoother_rtol: float = 0.0

    def __post_init__(self):
        self.cycle = _coerce_enum(CycleType, self.cycle, "multigrid.cycle")
        self.first_step_cycle = _coerce_enum(CycleType, self.first_step_cycle,
                                             "multigrid.first_step_cycle")
        self.smoother = _coerce_enum(SolverKind, self.smoother, "multigrid.smoother")
        self.smoother_preconditioner = _coerce_enum(PreconditionerKind, self.smoother_preconditioner,
                                                    "multigrid.smoother_preconditioner")
        if self.smoother not in (SolverKind.RICHARDSON, SolverKind.GMRES):
            raise ConfigurationError(f"multigrid.smoother must be richardson or gmres, "
                                     f"got {self.smoother.value}")
        if self.smoother_preconditioner == PreconditionerKind.FIELDSPLIT:
            raise ConfigurationError("multigrid.smoother_preconditioner: attach a FieldSplitTree "
                                     "to the driver instead")
        if self.n_pre < 0 or self.n_post < 0 or self.max_cycles < 1:
            raise ConfigurationError("multigrid: sweeps must be >= 0 and max_cycles >= 1")

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, where="multigrid") -> "MultigridConfig":
        defaults = cls()
        return cls(
            cycle=d.get("cycle", defaults.cycle),
            first_step_cycle=d.get("first_step_cycle", defaults.first_step_cycle),
            n_pre=_get(d, "n_pre", defaults.n_pre, int, where),
            n_post=_get(d, "n_post", defaults.n_post, int, where),
            rtol=_get(d, "rtol", defaults.rtol, float, where),
            atol=_get(d, "atol", defaults.atol, float, where),
            dtol=_get(d, "dtol", defaults.dtol, float, where),
            max_cycles=_get(d, "max_cycles", defaults.max_cycles, int, where),
            smoother=d.get("smoother", defaults.smoother),
            smoother_preconditioner=d.get("smoother_preconditioner", defaults.smoother_preconditioner),
            smoother_max_iterations=_get(d, "smoother_max_iterations",
                                         defaults.smoother_max_iterations, int, where),
            smoother_rtol=_get(d, "smoother_rtol", defaults.smoother_rtol, float, where),
        )


@dataclass
class NonlinearConfig:
    tolerance: float = 1e-8
    max_iterations: int = 10

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, where="nonlinear") -> "NonlinearConfig":
        return cls(tolerance=_get(d, "tolerance", 1e-8, float, where),
                   max_iterations=_get(d, "max_iterations", 10, int, where))


@dataclass
class TimeStepConfig:
    dt: float = 0.2
    num_steps: int = 100
    snapshot_interval: int = 10
    stop_on_failure: bool = False

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, where="time") -> "TimeStepConfig":
        return cls(dt=_get(d, "dt", 0.2, float, where),
                   num_steps=_get(d, "num_steps", 100, int, where),
                   snapshot_interval=_get(d, "snapshot_interval", 10, int, where),
                   stop_on_failure=_get(d, "stop_on_failure", False, _as_bool, where))


@dataclass
class SolverConfig:
    multigrid: MultigridConfig = field(default_factory=MultigridConfig)
    nonlinear: NonlinearConfig = field(default_factory=NonlinearConfig)
    time: TimeStepConfig = field(default_factory=TimeStepConfig)
    fieldsplit: Optional[Mapping[str, Any]] = None

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "SolverConfig":
        return cls(
            multigrid=MultigridConfig.from_dict(d.get("multigrid", {}) or {}),
            nonlinear=NonlinearConfig.from_dict(d.get("nonlinear", {}) or {}),
            time=TimeStepConfig.from_dict(d.get("time", {}) or {}),
            fieldsplit=d.get("fieldsplit", None),
        )


def fieldsplit_from_dict(d: Mapping[str, Any], field_names: Sequence[str] = ()):
    """Build a FieldSplitTree from a nested mapping.

    Leaves have ``fields`` (indices or names from ``field_names``), nodes have
    ``children``. Optional keys: ``outer``, ``preconditioner``, ``label``,
    ``asm_block_size``, ``asm_schur_variables``, ``composition``,
    ``solution_types``, and ``rtol``/``max_iterations`` for the outer scheme
    used when a parent delegates to the sub-tree.
    """
    from femgax.solvers.fieldsplit import FieldSplitTree

    label = d.get("label", "node" if "children" in d else "leaf")
    outer = d.get("outer", "preonly")
    if "children" in d:
        children = [fieldsplit_from_dict(c, field_names) for c in d["children"]]
        tree = FieldSplitTree.create_node(outer, d.get("preconditioner", "fieldsplit"), children, label)
        if "composition" in d:
            tree.set_composition(d["composition"])
    else:
        fields = []
        for f in d.get("fields", []):
            if isinstance(f, str):
                if f not in field_names:
                    raise ConfigurationError(f"fieldsplit.{label}: unknown field {f!r}")
                f = list(field_names).index(f)
            fields.append(f)
        tree = FieldSplitTree.create_leaf(outer, d.get("preconditioner", "ilu"), fields,
                                          d.get("solution_types"), label)
    if "asm_block_size" in d:
        tree.set_asm_block_size(d["asm_block_size"])
    if "asm_schur_variables" in d:
        tree.set_asm_schur_variables(d["asm_schur_variables"])
    if "rtol" in d or "max_iterations" in d:
        where = f"fieldsplit.{label}"
        tree.set_tolerances(_get(d, "rtol", 0.0, float, where),
                            _get(d, "max_iterations", 1, int, where))
    return tree


def _read_yaml_text(cfg_file: Path) -> str:
    try:
        return cfg_file.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError:
        return cfg_file.read_text()


def load_config(path) -> SolverConfig:
    """Load a YAML file into a SolverConfig."""
    cfg_file = Path(path).expanduser().resolve()
    raw = yaml.safe_load(_read_yaml_text(cfg_file)) or {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{cfg_file}: top level must be a mapping")
    return SolverConfig.from_dict(raw)
