"""Nonlinear time stepping with one multigrid solve per Newton iteration.

Each step advances ``state.time`` by ``dt`` and runs Newton iterations: the
global residual and Jacobian are assembled, a single multigrid solve
computes the update from ``J du = -R`` and the update is added to the current
iterate. Once the step is accepted the solution is committed, snapshots are
written every ``snapshot_interval`` steps and diagnostic rows
``"<time> <value>"`` are appended to their streams.

Diagnostics are reduced over mesh partitions with :class:`DiagnosticReducer`,
the stand-in for a collective reduction.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, TextIO

import numpy as onp

from femgax.config import SolverConfig, fieldsplit_from_dict
from femgax.errors import ConfigurationError, ConvergenceError
from femgax.fem import logger
from femgax.fem.transfer import MeshLevel, build_prolongations
from femgax.fem.weak_form import AssemblyParams
from femgax.solvers.multigrid import MultigridDriver

from jax import config

config.update("jax_enable_x64", True)

PROBE_THRESHOLD = 1e-6


class DiagnosticReducer:
    """Reductions of per-partition partial values."""

    @staticmethod
    def sum(partials):
        """Sum of extensive per-partition contributions."""
        return float(onp.sum(onp.asarray(partials, dtype=onp.float64)))

    @staticmethod
    def probe(partials):
        """Recover a point value known on exactly one partition.

        The other partitions contribute zero. Of the max and the min over
        partitions, the one with magnitude above ``PROBE_THRESHOLD`` is kept,
        the min taking precedence; values smaller than the threshold,
        including a genuine zero, read as 0.0.
        """
        partials = onp.asarray(partials, dtype=onp.float64)
        vmax, vmin = float(onp.max(partials)), float(onp.min(partials))
        if abs(vmin) > PROBE_THRESHOLD:
            return vmin
        if abs(vmax) > PROBE_THRESHOLD:
            return vmax
        return 0.0


def kinetic_energy(dofmap, state, fields):
    """Integral of ``sum_f u_f^2`` over the mesh, reduced over partitions."""
    mesh = dofmap.mesh
    indices = [dofmap.field_index(f) for f in fields]
    partials = []
    for partition in range(mesh.num_partitions):
        partial = 0.0
        for element in mesh.owned_elements(partition):
            coords = mesh.cell_coords(element)
            for f in indices:
                fe = dofmap.tables.elements[f]
                local = state.current[dofmap.cell_dofs[f][element] + dofmap.field_offsets[f]]
                for iq in range(len(fe.quad_weights)):
                    weight, vals, _, _ = fe.jacobian(coords, iq)
                    partial += weight * float(vals @ local) ** 2
        partials.append(partial)
    return DiagnosticReducer.sum(partials)


def point_probe(dofmap, state, field, point, atol=1e-8):
    """Value of ``field`` at the dof sitting at ``point``, reduced over partitions."""
    f = dofmap.field_index(field)
    local = dofmap.locate_dof(f, point, atol)
    if local is None:
        raise ConfigurationError(f"No dof of field {dofmap.field_names[f]!r} at {point}")
    dof = int(dofmap.field_offsets[f]) + local
    partials = onp.zeros(dofmap.mesh.num_partitions)
    partials[dofmap.dof_owner[dof]] = state.current[dof]
    return DiagnosticReducer.probe(partials)


@dataclass
class Diagnostic:
    """A scalar recorded after every accepted step.

    Attributes:
        name (str): Label used in logs.
        fn (Callable): ``fn(dofmap, state) -> float``.
        stream (TextIO): Text stream receiving ``"<time> <value>"`` rows.
    """

    name: str
    fn: Callable
    stream: TextIO

    def record(self, dofmap, state):
        value = float(self.fn(dofmap, state))
        self.stream.write(f"{state.time} {value}\n")
        self.stream.flush()
        return value


@dataclass
class StepResult:
    step: int
    time: float
    converged: bool
    iterations: int
    residual_norms: List[float] = field(default_factory=list)
    multigrid_results: list = field(default_factory=list)
    diagnostics: Dict[str, float] = field(default_factory=dict)


class NonlinearTimeStepDriver:
    """Drives Newton iterations and time steps on the finest level.

    Args:
        assembler (GlobalSystemAssembler): Assembler of the fine level.
        state (SolutionState): Solution of the fine level.
        config (SolverConfig, optional): Multigrid, Newton and time settings.
        levels (list, optional): :class:`MeshLevel` hierarchy, coarsest first;
            its last entry must share the assembler's dof map. Defaults to a
            single level.
        fieldsplit (FieldSplitTree, optional): Smoother preconditioner tree.
            Defaults to the tree described by ``config.fieldsplit``, if any.
        writer (Callable, optional): ``writer(field_names, level, step_tag, state)``.
        diagnostics (list, optional): :class:`Diagnostic` entries.
        params (AssemblyParams, optional): Base assembly parameters; ``dt``
            and ``time`` are overwritten every step.
    """

    def __init__(self, assembler, state, config: Optional[SolverConfig] = None, levels=None,
                 fieldsplit=None, writer=None, diagnostics=(), params=None):
        self.assembler = assembler
        self.state = state
        self.config = SolverConfig() if config is None else config
        if levels is None:
            levels = [MeshLevel(assembler.dofmap, assembler.constraints)]
        if levels[-1].dofmap is not assembler.dofmap:
            raise ConfigurationError("The finest level must use the assembler's dof map")
        self.levels = levels
        if fieldsplit is None and self.config.fieldsplit:
            fieldsplit = fieldsplit_from_dict(self.config.fieldsplit, assembler.dofmap.field_names)
        if fieldsplit is not None:
            fieldsplit.validate(range(assembler.dofmap.num_fields))
        self.multigrid = MultigridDriver(
            self.config.multigrid,
            build_prolongations(levels, state.time),
            layouts=[level.dofmap for level in levels] if fieldsplit is not None else None,
            fieldsplit=fieldsplit)
        self.writer = writer
        self.diagnostics = list(diagnostics)
        self.params = AssemblyParams() if params is None else params
        self.step_count = 0

    @property
    def dofmap(self):
        return self.assembler.dofmap

    def _cycle_for_step(self):
        mg = self.config.multigrid
        return mg.first_step_cycle if self.step_count == 0 else mg.cycle

    def write_snapshot(self):
        if self.writer is not None:
            self.writer(self.dofmap.field_names, len(self.levels) - 1, self.step_count, self.state)

    def step(self, dt=None):
        """Advance one time step.

        Returns:
            StepResult: Convergence record of the step.

        Raises:
            ConvergenceError: If Newton does not converge and
                ``config.time.stop_on_failure`` is set.
        """
        dt = self.config.time.dt if dt is None else dt
        nl = self.config.nonlinear
        state = self.state
        time = state.time + dt
        params = self.params.replace(dt=dt, time=time)
        cycle = self._cycle_for_step()
        if self.assembler.constraints is not None:
            self.assembler.constraints.assign(state.current, time)

        result = StepResult(step=self.step_count + 1, time=time, converged=False, iterations=0)
        for iteration in range(1, nl.max_iterations + 1):
            system = self.assembler.assemble(state, params, with_matrix=True)
            res_norm = system.residual.norm()
            result.residual_norms.append(res_norm)
            logger.debug(f"Step {result.step}, Newton iteration {iteration - 1}: "
                         f"residual = {res_norm:.6e}")
            if res_norm <= nl.tolerance:
                result.converged = True
                break
            self.multigrid.setup(system.matrix.matrix)
            mg_result = self.multigrid.solve(-system.residual.array, cycle=cycle)
            result.multigrid_results.append(mg_result)
            state.current += mg_result.x
            result.iterations = iteration
        else:
            res_norm = self.assembler.assemble(state, params, with_matrix=False).residual.norm()
            result.residual_norms.append(res_norm)
            result.converged = res_norm <= nl.tolerance

        if not result.converged:
            message = (f"Step {result.step} at t = {time}: Newton did not converge in "
                       f"{nl.max_iterations} iterations, residual = {result.residual_norms[-1]:.3e}")
            logger.warning(message)
            if self.config.time.stop_on_failure:
                raise ConvergenceError(message, result)

        state.time = time
        state.commit()
        self.step_count += 1
        interval = self.config.time.snapshot_interval
        if interval > 0 and self.step_count % interval == 0:
            self.write_snapshot()
        for diagnostic in self.diagnostics:
            result.diagnostics[diagnostic.name] = diagnostic.record(self.dofmap, state)
        logger.info(f"Step {result.step}: t = {time:.4f}, converged = {result.converged}, "
                    f"{result.iterations} Newton iteration(s), "
                    f"residual = {result.residual_norms[-1]:.3e}")
        return result

    def run(self, num_steps=None, write_initial=True):
        """Run ``num_steps`` steps (default ``config.time.num_steps``)."""
        num_steps = self.config.time.num_steps if num_steps is None else num_steps
        if write_initial and self.step_count == 0:
            self.write_snapshot()
        return [self.step() for _ in range(num_steps)]
