"""
Tests for femgax.solvers.timestepper.
"""
import io
import logging
from unittest import mock

import pytest
import numpy as np

from femgax.config import MultigridConfig, NonlinearConfig, SolverConfig, TimeStepConfig
from femgax.errors import ConfigurationError, ConvergenceError, FieldSplitError
from femgax.fem.assembler import GlobalSystemAssembler, LocalAssembler
from femgax.fem.boundary import DirichletConstraints
from femgax.fem.dofmap import DofMap
from femgax.fem.mesh import interval_mesh, rectangle_mesh
from femgax.fem.solution import SolutionState
from femgax.fem.transfer import MeshLevel
from femgax.physics import Poisson
from femgax.solvers.fieldsplit import FieldSplitTree
from femgax.solvers.linear_types import CycleType
from femgax.solvers.timestepper import (Diagnostic, DiagnosticReducer, NonlinearTimeStepDriver,
                                        kinetic_energy, point_probe)

pytestmark = pytest.mark.integration


def clamped(x, field, group, time):
    return True, 0.0


def make_driver(num_cells=(4, 8), config=None, **kwargs):
    """Poisson on [0, 1] with u(0) = u(1) = 0 on a two-level hierarchy."""
    levels = []
    for n in num_cells:
        dofmap = DofMap(interval_mesh(n, 1.0, num_partitions=2), ["u"], ["LINE2"])
        levels.append(MeshLevel(dofmap, DirichletConstraints(dofmap, clamped)))
    fine = levels[-1]
    assembler = GlobalSystemAssembler(fine.dofmap, LocalAssembler(Poisson(source=1.0)),
                                      constraints=fine.constraints)
    state = SolutionState(fine.dofmap)
    config = SolverConfig(time=TimeStepConfig(dt=0.5, num_steps=2)) if config is None else config
    return NonlinearTimeStepDriver(assembler, state, config, levels=levels, **kwargs)


class TestDiagnosticReducer:
    """Reductions over partitions."""

    def test_sum(self):
        assert DiagnosticReducer.sum([1.0, 2.5, -0.5]) == 3.0

    def test_probe_prefers_min(self):
        assert DiagnosticReducer.probe([0.0, -2.0, 0.0]) == -2.0
        assert DiagnosticReducer.probe([0.0, 3.0]) == 3.0

    def test_probe_reads_small_values_as_zero(self):
        assert DiagnosticReducer.probe([0.0, 5e-7]) == 0.0
        assert DiagnosticReducer.probe([0.0, 0.0]) == 0.0


class TestDiagnostics:
    """Kinetic energy and point probes."""

    def test_kinetic_energy(self):
        dofmap = DofMap(rectangle_mesh(2, 2, 2.0, 1.0, num_partitions=3), ["U", "V"],
                        ["QUAD9", "QUAD9"])
        state = SolutionState(dofmap)
        state.initialize("U", lambda x: 1.0)
        state.initialize("V", lambda x: 2.0)
        assert kinetic_energy(dofmap, state, ["U", "V"]) == pytest.approx(10.0)
        assert kinetic_energy(dofmap, state, ["U"]) == pytest.approx(2.0)

    def test_point_probe_on_any_partition(self):
        dofmap = DofMap(interval_mesh(4, 1.0, num_partitions=2), ["u"], ["LINE2"])
        state = SolutionState(dofmap)
        state.initialize("u", lambda x: 1.0 + x[0])
        assert point_probe(dofmap, state, "u", [0.0]) == pytest.approx(1.0)
        assert point_probe(dofmap, state, "u", [1.0]) == pytest.approx(2.0)

    def test_point_probe_without_dof(self):
        dofmap = DofMap(interval_mesh(4, 1.0), ["u"], ["LINE2"])
        with pytest.raises(ConfigurationError):
            point_probe(dofmap, SolutionState(dofmap), "u", [0.1])

    def test_diagnostic_rows(self):
        stream = io.StringIO()
        diagnostic = Diagnostic("probe", lambda d, s: point_probe(d, s, "u", [0.5]), stream)
        driver = make_driver(diagnostics=[diagnostic])
        results = driver.run(write_initial=False)
        rows = [line.split() for line in stream.getvalue().splitlines()]
        assert [float(t) for t, _ in rows] == [0.5, 1.0]
        assert float(rows[-1][1]) == pytest.approx(0.125)
        assert results[-1].diagnostics["probe"] == pytest.approx(0.125)


class TestTimeStepping:
    """Newton iterations, commits and snapshots."""

    def test_linear_step(self):
        driver = make_driver()
        result = driver.step()
        assert result.converged
        assert result.iterations == 1
        assert result.time == 0.5
        assert result.multigrid_results[0].converged
        state = driver.state
        assert state.time == 0.5
        assert state.steps_committed == 1
        np.testing.assert_array_equal(state.old, state.current)
        x = driver.dofmap.dof_coordinates("u")[:, 0]
        np.testing.assert_allclose(state.current, 0.5 * x * (1.0 - x), atol=1e-10)

    def test_snapshot_interval(self):
        writer = mock.MagicMock()
        config = SolverConfig(time=TimeStepConfig(dt=0.1, num_steps=4, snapshot_interval=2))
        driver = make_driver(config=config, writer=writer)
        driver.run()
        tags = [c.args[2] for c in writer.call_args_list]
        assert tags == [0, 2, 4]
        assert all(c.args[0] == ("u",) and c.args[1] == 1 for c in writer.call_args_list)

    def test_first_step_cycle(self):
        config = SolverConfig(multigrid=MultigridConfig(cycle="v", first_step_cycle="f"),
                              time=TimeStepConfig(dt=0.5, num_steps=2))
        driver = make_driver(config=config)
        with mock.patch.object(driver.multigrid, "solve", wraps=driver.multigrid.solve) as solve:
            driver.step()
            driver.state.current[:] = 0.0
            driver.step()
        cycles = [c.kwargs["cycle"] for c in solve.call_args_list]
        assert cycles[0] == CycleType.F
        assert len(cycles) >= 2
        assert all(c == CycleType.V for c in cycles[1:])

    def test_non_convergence_warns(self, caplog):
        config = SolverConfig(nonlinear=NonlinearConfig(tolerance=0.0, max_iterations=1))
        driver = make_driver(config=config)
        with caplog.at_level(logging.WARNING, logger="femgax"):
            result = driver.step(dt=0.5)
        assert not result.converged
        assert len(result.residual_norms) == 2
        assert driver.state.steps_committed == 1
        assert any("did not converge" in r.getMessage() for r in caplog.records)

    def test_stop_on_failure(self):
        config = SolverConfig(nonlinear=NonlinearConfig(tolerance=0.0, max_iterations=1),
                              time=TimeStepConfig(stop_on_failure=True))
        driver = make_driver(config=config)
        with pytest.raises(ConvergenceError) as excinfo:
            driver.step()
        assert excinfo.value.result.iterations == 1
        assert driver.state.steps_committed == 0

    def test_finest_level_must_match(self):
        driver = make_driver()
        other = DofMap(interval_mesh(8, 1.0), ["u"], ["LINE2"])
        with pytest.raises(ConfigurationError):
            NonlinearTimeStepDriver(driver.assembler, driver.state, levels=[MeshLevel(other)])

    def test_fieldsplit_must_cover_fields(self):
        tree = FieldSplitTree.create_leaf("preonly", "jacobi", [1])
        with pytest.raises(FieldSplitError):
            make_driver(fieldsplit=tree)

    def test_fieldsplit_from_config(self):
        config = SolverConfig(time=TimeStepConfig(dt=0.5, num_steps=1),
                              fieldsplit={"label": "all", "preconditioner": "ilu", "fields": ["u"]})
        driver = make_driver(config=config)
        tree = driver.multigrid.fieldsplit
        assert isinstance(tree, FieldSplitTree)
        assert tree.label == "all"
        assert tree.fields == (0,)
        assert driver.step().converged

    def test_fieldsplit_argument_overrides_config(self):
        tree = FieldSplitTree.create_leaf("preonly", "jacobi", [0])
        config = SolverConfig(fieldsplit={"fields": ["p"]})
        assert make_driver(config=config, fieldsplit=tree).multigrid.fieldsplit is tree
        with pytest.raises(ConfigurationError):
            make_driver(config=config)

    def test_time_dependent_dirichlet(self):
        dofmap = DofMap(interval_mesh(4, 1.0), ["u"], ["LINE2"])
        constraints = DirichletConstraints(dofmap, lambda x, f, g, t: (True, t * x[0]))
        assembler = GlobalSystemAssembler(dofmap, LocalAssembler(Poisson()),
                                          constraints=constraints)
        driver = NonlinearTimeStepDriver(assembler, SolutionState(dofmap))
        driver.step(dt=0.25)
        driver.step(dt=0.25)
        x = dofmap.dof_coordinates("u")[:, 0]
        np.testing.assert_allclose(driver.state.current, 0.5 * x, atol=1e-10)
