"""
Tests for femgax.fem.basis and femgax.fem.fe.

This module tests the finite element basis function utilities including
element configuration, shape functions, and face quadrature computations.
"""
import pytest
import numpy as np
import basix

from femgax.errors import ConfigurationError
from femgax.fem.basis import (
    get_elements,
    get_face_quadrature,
    get_shape_vals_and_grads,
    tabulate,
)
from femgax.fem.fe import FiniteElement, build_element_tables

pytestmark = pytest.mark.integration


class TestGetElements:
    """Test the get_elements function for various element types."""

    @pytest.mark.parametrize("ele_type,expected_degree,expected_gauss_order", [
        ("LINE2", 1, 2),
        ("LINE3", 2, 4),
        ("HEX8", 1, 2),
        ("HEX20", 2, 4),
        ("TET4", 1, 2),
        ("TET10", 2, 4),
        ("QUAD4", 1, 2),
        ("QUAD8", 2, 4),
        ("QUAD9", 2, 4),
        ("TRI3", 1, 2),
        ("TRI6", 2, 4),
    ])
    def test_supported_element_types(self, ele_type, expected_degree, expected_gauss_order):
        """Test that all supported element types return correct configuration."""
        element_family, basix_ele, basix_face_ele, orders = get_elements(ele_type)
        gauss_order, degree, discontinuous = orders

        assert isinstance(element_family, basix.ElementFamily)
        assert isinstance(basix_ele, basix.CellType)
        assert isinstance(basix_face_ele, basix.CellType)
        assert degree == expected_degree
        assert gauss_order == expected_gauss_order
        assert discontinuous is False

    def test_serendipity_families(self):
        """QUAD8 and HEX20 use the serendipity family."""
        assert get_elements("QUAD8")[0] == basix.ElementFamily.serendipity
        assert get_elements("HEX20")[0] == basix.ElementFamily.serendipity

    @pytest.mark.parametrize("ele_type,degree", [("QUAD_DG0", 0), ("QUAD_DG1", 1), ("TRI_DG1", 1)])
    def test_discontinuous_types(self, ele_type, degree):
        _, _, _, (gauss_order, parsed_degree, discontinuous) = get_elements(ele_type)
        assert parsed_degree == degree
        assert discontinuous is True
        assert gauss_order == 2

    @pytest.mark.parametrize("ele_type", ["UNSUPPORTED", "QUAD_DGx", "PRISM_DG1"])
    def test_unsupported_element_type(self, ele_type):
        """Unknown element types are configuration errors."""
        with pytest.raises(ConfigurationError):
            get_elements(ele_type)


class TestShapeFunctions:
    """Test the shape function tables at quadrature points."""

    @pytest.mark.parametrize("ele_type", [
        "LINE2", "LINE3", "HEX8", "HEX20", "TET4", "TET10", "QUAD4", "QUAD8", "QUAD9", "TRI3", "TRI6"
    ])
    def test_table_shapes(self, ele_type):
        values, grads, hessians, points, weights = get_shape_vals_and_grads(ele_type)
        num_quads, num_nodes = values.shape
        assert grads.shape == (num_quads, num_nodes, points.shape[1])
        assert hessians.shape == (num_quads, num_nodes, points.shape[1], points.shape[1])
        assert np.all(weights > 0)

    @pytest.mark.parametrize("ele_type", [
        "LINE2", "LINE3", "HEX8", "TET4", "TET10", "QUAD4", "QUAD9", "TRI3", "TRI6", "QUAD_DG1"
    ])
    def test_partition_of_unity(self, ele_type):
        """Lagrange shape values sum to one and gradients to zero."""
        values, grads, _, _, _ = get_shape_vals_and_grads(ele_type)
        np.testing.assert_allclose(values.sum(axis=1), 1.0, atol=1e-12)
        np.testing.assert_allclose(grads.sum(axis=1), 0.0, atol=1e-12)

    def test_serendipity_reproduces_constants(self):
        """Interpolating one into QUAD8 gives one although its edge dofs are moments."""
        fe = FiniteElement("QUAD8")
        coords = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        local = fe.interpolate(coords, lambda x: 1.0)
        np.testing.assert_allclose(fe.shape_vals @ local, 1.0, atol=1e-12)

    def test_reference_volume(self):
        """Quadrature weights integrate the reference cell volume."""
        for ele_type, volume in [("LINE2", 1.0), ("TRI3", 0.5), ("QUAD4", 1.0), ("TET4", 1.0 / 6.0)]:
            weights = get_shape_vals_and_grads(ele_type)[4]
            assert weights.sum() == pytest.approx(volume)

    def test_quadratic_hessian(self):
        """The second derivatives of LINE3 shape functions are constant."""
        _, _, hessians = tabulate("LINE3", np.array([[0.1], [0.7]]))
        np.testing.assert_allclose(hessians[0], hessians[1], atol=1e-10)
        np.testing.assert_allclose(hessians[0].sum(), 0.0, atol=1e-10)


class TestFaceQuadrature:
    """Test face quadrature and the face measure."""

    def test_line_faces_are_points(self):
        points, weights, _, vertices = get_face_quadrature("LINE2")
        assert points.shape == (2, 1, 1)
        np.testing.assert_array_equal(weights, np.ones((2, 1)))
        assert vertices == [[0], [1]]

    def test_quad_face_points_on_edges(self):
        points, weights, _, vertices = get_face_quadrature("QUAD4")
        reference = np.asarray(basix.geometry(basix.CellType.quadrilateral))
        for f, facet in enumerate(vertices):
            a, b = reference[facet]
            for p in points[f]:
                # collinear with the facet end points
                cross = (b - a)[0] * (p - a)[1] - (b - a)[1] * (p - a)[0]
                assert abs(cross) < 1e-12
            assert weights[f].sum() == pytest.approx(1.0)

    def test_face_measure_of_scaled_quad(self):
        """Summing face weights gives the physical edge length."""
        fe = FiniteElement("QUAD4")
        coords = np.array([[0.0, 0.0], [2.0, 0.0], [0.0, 3.0], [2.0, 3.0]])
        lengths = sorted(sum(fe.face_jacobian(coords, f, q)[0] for q in range(fe.face_weights.shape[1]))
                         for f in range(fe.num_faces))
        np.testing.assert_allclose(lengths, [2.0, 2.0, 3.0, 3.0])


class TestFiniteElement:
    """Test the per-element tables."""

    def test_cell_volume(self):
        fe = FiniteElement("QUAD9")
        coords = np.array([[0.0, 0.0], [2.0, 0.0], [0.0, 0.5], [2.0, 0.5]])
        volume = sum(fe.jacobian(coords, q)[0] for q in range(len(fe.quad_weights)))
        assert volume == pytest.approx(1.0)

    def test_interpolation_reproduces_quadratics(self):
        fe = FiniteElement("TRI6")
        coords = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
        local = fe.interpolate(coords, lambda x: x[0] ** 2 + x[1])
        x = fe.map_points(coords, np.array([[0.2, 0.3]]))[0]
        values, _, _ = tabulate("TRI6", np.array([[0.2, 0.3]]))
        assert values[0] @ local == pytest.approx(x[0] ** 2 + x[1])

    def test_tables_share_quadrature(self):
        tables = build_element_tables(["U", "P"], ["QUAD9", "QUAD_DG1"])
        assert tables.block_sizes == (9, 4)
        assert tables.offsets == (0, 9, 13)
        assert {fe.gauss_order for fe in tables.elements} == {4}
        assert tables.geometry.ele_type == "QUAD4"

    def test_tables_reject_mixed_cells(self):
        with pytest.raises(ConfigurationError):
            build_element_tables(["a", "b"], ["QUAD4", "TRI3"])
