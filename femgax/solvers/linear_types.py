"""
Shared linear solver option and result types.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import numpy as onp


class SolverKind(str, Enum):
    PREONLY = "preonly"
    RICHARDSON = "richardson"
    GMRES = "gmres"
    BICGSTAB = "bicgstab"


class PreconditionerKind(str, Enum):
    NONE = "none"
    JACOBI = "jacobi"
    ILU = "ilu"
    LU = "lu"
    ASM = "asm"
    FIELDSPLIT = "fieldsplit"


class CompositionKind(str, Enum):
    ADDITIVE = "additive"
    MULTIPLICATIVE = "multiplicative"


class CycleType(str, Enum):
    V = "v"
    F = "f"


def _coerce_enum(enum_cls, value: Any, where: str):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            allowed = [e.value for e in enum_cls]
            raise ValueError(f"{where}: invalid value {value!r}, allowed={allowed}") from None
    raise TypeError(f"{where}: expected str or {enum_cls.__name__}, got {type(value).__name__}")


@dataclass
class LinearSolveResult:
    x: onp.ndarray
    converged: bool
    n_iter: int
    residual_norm: float
    rel_residual: float
    method: str
    message: Optional[str] = None
