"""Geometric multigrid driver with V- and F-cycles.

Levels are numbered coarsest first: level 0 is solved directly with a sparse
LU factorization, level ``L`` is the fine system. Coarse operators are the
Galerkin products ``P^T A P`` of the fine Jacobian, so only the fine level is
assembled. Smoothing on every non-coarse level is a bounded-iteration
Richardson or GMRES method, preconditioned by a :class:`FieldSplitTree` when
one is attached and by a single-level preconditioner otherwise.

Example:
    >>> driver = MultigridDriver(MultigridConfig(), prolongations)
    >>> driver.setup(A)
    >>> result = driver.solve(b)
    >>> result.converged, result.reason
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import numpy as onp
import scipy.sparse
import scipy.sparse.linalg

from femgax.config import MultigridConfig
from femgax.errors import ConfigurationError
from femgax.fem import logger
from femgax.solvers.krylov import krylov_solve
from femgax.solvers.linear_types import CycleType, _coerce_enum
from femgax.solvers.preconditioners import make_preconditioner


class MultigridState(str, Enum):
    IDLE = "idle"
    PRESMOOTHING = "presmoothing"
    RESTRICTION = "restriction"
    PROLONGATION = "prolongation"
    POSTSMOOTHING = "postsmoothing"
    CONVERGED = "converged"
    DIVERGED = "diverged"


@dataclass
class MultigridResult:
    """Outcome of one multigrid solve.

    Attributes:
        x (numpy.ndarray): Final iterate.
        converged (bool): True when ``atol`` or ``rtol`` was met.
        state (MultigridState): CONVERGED, DIVERGED, or IDLE at the cycle cap.
        reason (str): 'atol', 'rtol', 'max_cycles', 'dtol' or 'nan'.
        cycles (int): Number of cycles run.
        residual_norms (list): Residual norm before the first and after every cycle.
    """

    x: onp.ndarray
    converged: bool
    state: MultigridState
    reason: str
    cycles: int
    residual_norms: List[float] = field(default_factory=list)

    @property
    def initial_norm(self):
        return self.residual_norms[0]

    @property
    def final_norm(self):
        return self.residual_norms[-1]


def galerkin_product(A, P):
    """Coarse operator ``P^T A P`` with identity rows where ``P`` has an empty column."""
    Ac = (P.T @ A @ P).tocsr()
    empty = onp.asarray(abs(Ac).sum(axis=1)).ravel() == 0.0
    if onp.any(empty):
        Ac = (Ac + scipy.sparse.diags_array(empty.astype(onp.float64))).tocsr()
    return Ac


class MultigridDriver:
    """V/F-cycle multigrid on a hierarchy of nested levels.

    Args:
        config (MultigridConfig): Cycle and smoother settings.
        prolongations (list): ``prolongations[l]`` maps level ``l - 1`` to
            level ``l``; entry 0 is ignored. A single-level hierarchy is ``[None]``.
        layouts (list, optional): Dof layout of every level, needed by a
            field-split smoother.
        fieldsplit (FieldSplitTree, optional): Preconditioner tree of the smoother.
    """

    def __init__(self, config: Optional[MultigridConfig] = None, prolongations=(None,),
                 layouts=None, fieldsplit=None):
        self.config = MultigridConfig() if config is None else config
        self.prolongations = list(prolongations) if prolongations else [None]
        self.num_levels = len(self.prolongations)
        if layouts is not None and len(layouts) != self.num_levels:
            raise ConfigurationError(f"{len(layouts)} layouts for {self.num_levels} levels")
        if fieldsplit is not None and layouts is None:
            raise ConfigurationError("A field-split smoother needs the dof layout of every level")
        self.layouts = layouts
        self.fieldsplit = fieldsplit
        self.operators = None
        self.smoothers = None
        self.coarse_factor = None
        self.state = MultigridState.IDLE
        self.transitions = []

    def _enter(self, state):
        self.state = state
        self.transitions.append(state)

    def setup(self, A):
        """Build coarse operators, smoother preconditioners and the coarse factorization."""
        A = scipy.sparse.csr_array(A)
        operators = [None] * self.num_levels
        operators[-1] = A
        for level in range(self.num_levels - 1, 0, -1):
            P = self.prolongations[level]
            if P.shape[0] != operators[level].shape[0]:
                raise ConfigurationError(f"Prolongation to level {level} has {P.shape[0]} rows, "
                                         f"operator has {operators[level].shape[0]}")
            operators[level - 1] = galerkin_product(operators[level], P)
        self.operators = operators

        self.smoothers = [None] * self.num_levels
        for level in range(1, self.num_levels):
            if self.fieldsplit is not None:
                self.smoothers[level] = self.fieldsplit.build_preconditioner(
                    operators[level], self.layouts[level])
            else:
                self.smoothers[level] = make_preconditioner(
                    self.config.smoother_preconditioner, operators[level])
        self.coarse_factor = scipy.sparse.linalg.splu(operators[0].tocsc())
        logger.debug(f"Multigrid setup: {self.num_levels} level(s), sizes "
                     f"{[op.shape[0] for op in operators]}")

    def _smooth(self, level, b, x, sweeps):
        for _ in range(sweeps):
            x = krylov_solve(self.config.smoother, self.operators[level], b, self.smoothers[level],
                             x0=x, rtol=self.config.smoother_rtol,
                             max_iterations=self.config.smoother_max_iterations).x
        return x

    def v_cycle(self, level, b, x=None):
        """One V-cycle on ``level`` for ``A_level x = b``."""
        if x is None:
            x = onp.zeros(b.shape[0])
        if level == 0:
            return self.coarse_factor.solve(b)
        A = self.operators[level]
        P = self.prolongations[level]
        self._enter(MultigridState.PRESMOOTHING)
        x = self._smooth(level, b, x, self.config.n_pre)
        self._enter(MultigridState.RESTRICTION)
        coarse_rhs = P.T @ (b - A @ x)
        correction = self.v_cycle(level - 1, coarse_rhs)
        self._enter(MultigridState.PROLONGATION)
        x = x + P @ correction
        self._enter(MultigridState.POSTSMOOTHING)
        return self._smooth(level, b, x, self.config.n_post)

    def f_cycle(self, b):
        """Full-multigrid cycle: coarse solve first, then a V-cycle per finer level."""
        rhs = [None] * self.num_levels
        rhs[-1] = b
        self._enter(MultigridState.RESTRICTION)
        for level in range(self.num_levels - 1, 0, -1):
            rhs[level - 1] = self.prolongations[level].T @ rhs[level]
        x = self.coarse_factor.solve(rhs[0])
        for level in range(1, self.num_levels):
            self._enter(MultigridState.PROLONGATION)
            x = self.prolongations[level] @ x
            x = self.v_cycle(level, rhs[level], x)
        return x

    def solve(self, b, x0=None, cycle=None):
        """Iterate cycles on the fine system until convergence, divergence or the cap.

        Args:
            b (numpy.ndarray): Fine right-hand side.
            x0 (numpy.ndarray, optional): Initial guess, zero when None.
            cycle (CycleType or str, optional): 'v' or 'f'; an F solve runs one
                F-cycle followed by V-cycles. Defaults to ``config.cycle``.

        Returns:
            MultigridResult: Never raises on non-convergence.
        """
        if self.operators is None:
            raise ConfigurationError("MultigridDriver.setup() must be called before solve()")
        cycle = _coerce_enum(CycleType, self.config.cycle if cycle is None else cycle, "cycle")
        cfg = self.config
        A = self.operators[-1]
        b = onp.asarray(b, dtype=onp.float64)
        x = onp.zeros(b.shape[0]) if x0 is None else onp.array(x0, dtype=onp.float64)
        self.transitions = []
        self._enter(MultigridState.IDLE)

        r0 = float(onp.linalg.norm(b - A @ x))
        norms = [r0]
        if r0 <= cfg.atol:
            self._enter(MultigridState.CONVERGED)
            return MultigridResult(x, True, self.state, "atol", 0, norms)

        for k in range(1, cfg.max_cycles + 1):
            residual = b - A @ x
            if self.num_levels == 1:
                correction = self.coarse_factor.solve(residual)
            elif cycle == CycleType.F and k == 1:
                correction = self.f_cycle(residual)
            else:
                correction = self.v_cycle(self.num_levels - 1, residual)
            x = x + correction
            res_norm = float(onp.linalg.norm(b - A @ x))
            norms.append(res_norm)
            logger.debug(f"Multigrid {cycle.value}-cycle {k}: residual = {res_norm:.6e}")

            if not onp.isfinite(res_norm):
                self._enter(MultigridState.DIVERGED)
                logger.warning(f"Multigrid diverged: non-finite residual after {k} cycles")
                return MultigridResult(x, False, self.state, "nan", k, norms)
            if res_norm > cfg.dtol * r0:
                self._enter(MultigridState.DIVERGED)
                logger.warning(f"Multigrid diverged: residual {res_norm:.3e} > dtol * {r0:.3e}")
                return MultigridResult(x, False, self.state, "dtol", k, norms)
            if res_norm <= cfg.atol or res_norm <= cfg.rtol * r0:
                self._enter(MultigridState.CONVERGED)
                reason = "atol" if res_norm <= cfg.atol else "rtol"
                return MultigridResult(x, True, self.state, reason, k, norms)

        self._enter(MultigridState.IDLE)
        logger.debug(f"Multigrid stopped at the cycle cap {cfg.max_cycles}, residual = {norms[-1]:.3e}")
        return MultigridResult(x, False, self.state, "max_cycles", cfg.max_cycles, norms)
