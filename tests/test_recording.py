"""
Tests for femgax.fem.recording: tape protocol and Jacobian extraction.
"""
import pytest
import numpy as np

from femgax.errors import RecordingError
from femgax.fem.assembler import LocalAssembler
from femgax.fem.fe import build_element_tables
from femgax.fem.recording import (AutoDiffJacobianExtractor, FiniteDifferenceTape,
                                  JaxTape, value_and_jacfwd)
from femgax.fem.weak_form import AssemblyParams
from femgax.physics import Boussinesq, Poisson

pytestmark = pytest.mark.integration


def _quadratic(x):
    return np.array([x[0] ** 2 * x[1], np.sin(x[1]) + x[0]])


@pytest.fixture
def quad_coords():
    return np.array([[0.0, 0.0], [0.5, 0.1], [0.1, 0.6], [0.7, 0.8]])


class TestTapeProtocol:
    """Lifecycle rules of a differentiation recording."""

    def test_jax_tape_matches_analytic(self):
        tape = JaxTape()
        tape.begin_recording()
        try:
            tape.declare_independents([2.0, 3.0])
            tape.declare_dependents(_quadratic)
            jac = tape.extract_jacobian()
        finally:
            tape.end_recording()
        np.testing.assert_allclose(jac, [[12.0, 4.0], [1.0, np.cos(3.0)]])
        assert not tape.is_recording

    def test_value_and_jacfwd(self):
        import jax.numpy as jnp
        y, jac = value_and_jacfwd(lambda x: x ** 2, jnp.array([1.0, 2.0]))
        np.testing.assert_allclose(y, [1.0, 4.0])
        np.testing.assert_allclose(jac, np.diag([2.0, 4.0]))

    def test_recording_is_exclusive(self):
        first, second = JaxTape(), FiniteDifferenceTape()
        first.begin_recording()
        try:
            with pytest.raises(RecordingError):
                second.begin_recording()
        finally:
            first.end_recording()
        second.begin_recording()
        second.end_recording()

    def test_end_without_begin(self):
        with pytest.raises(RecordingError):
            JaxTape().end_recording()

    def test_dependents_before_independents(self):
        tape = JaxTape()
        tape.begin_recording()
        try:
            with pytest.raises(RecordingError):
                tape.declare_dependents(_quadratic)
        finally:
            tape.end_recording()

    def test_block_sizes_must_add_up(self):
        tape = FiniteDifferenceTape()
        tape.begin_recording()
        try:
            with pytest.raises(RecordingError):
                tape.declare_independents(np.zeros(5), block_sizes=(2, 2))
        finally:
            tape.end_recording()


class TestJacobianExtraction:
    """Element Jacobians from the assembly kernels."""

    def _record(self, tape, weak_form, ele_types, coords, rng):
        tables = build_element_tables(weak_form.field_names, ele_types)
        current = rng.normal(size=tables.num_local_dofs)
        old = rng.normal(size=tables.num_local_dofs)
        params = AssemblyParams(dt=0.2)
        _, recording = LocalAssembler(weak_form).assemble_element(
            coords, tables, current, old, params, tape)
        return tables, AutoDiffJacobianExtractor().extract(recording, tables.block_sizes)

    def test_jax_agrees_with_finite_differences(self, quad_coords):
        weak_form = Boussinesq(prandtl=0.7, rayleigh=1000.0)
        ele_types = ["QUAD9", "QUAD9", "QUAD_DG1", "QUAD8"]
        _, jac_ad = self._record(JaxTape(), weak_form, ele_types, quad_coords,
                                 np.random.default_rng(0))
        _, jac_fd = self._record(FiniteDifferenceTape(), weak_form, ele_types, quad_coords,
                                 np.random.default_rng(0))
        assert jac_ad.shape == (30, 30)
        scale = np.abs(jac_ad).max()
        np.testing.assert_allclose(jac_fd, jac_ad, rtol=1e-6, atol=1e-6 * scale)

    def test_linear_form_jacobian_is_stiffness(self, quad_coords):
        _, jac = self._record(JaxTape(), Poisson(source=4.0), ["QUAD4"], quad_coords,
                              np.random.default_rng(1))
        np.testing.assert_allclose(jac, jac.T, atol=1e-12)
        np.testing.assert_allclose(jac.sum(axis=1), 0.0, atol=1e-12)

    def test_block_mismatch_closes_recording(self, quad_coords):
        tape = JaxTape()
        tables = build_element_tables(("u",), ["QUAD4"])
        _, recording = LocalAssembler(Poisson()).assemble_element(
            quad_coords, tables, np.zeros(4), np.zeros(4), AssemblyParams(), tape)
        with pytest.raises(RecordingError):
            AutoDiffJacobianExtractor().extract(recording, (2, 2))
        assert not tape.is_recording

    def test_stale_recording_keeps_first_error(self, quad_coords):
        tape = JaxTape()
        tables = build_element_tables(("u",), ["QUAD4"])
        _, recording = LocalAssembler(Poisson()).assemble_element(
            quad_coords, tables, np.zeros(4), np.zeros(4), AssemblyParams(), tape)
        extractor = AutoDiffJacobianExtractor()
        extractor.extract(recording, tables.block_sizes)
        with pytest.raises(RecordingError, match="do not match"):
            extractor.extract(recording, (2, 2))
        with pytest.raises(RecordingError, match="No differentiation recording"):
            extractor.extract(recording)
