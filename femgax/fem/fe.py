"""Reference finite element tables and isoparametric geometry transforms.

A FiniteElement pairs an interpolation element with the linear geometry
element of the same cell. It exposes quadrature-point tables for the jitted
assembly kernels and per-point Jacobian evaluations for the boundary and
diagnostic code, which run outside JAX.
"""
import numpy as onp
from dataclasses import dataclass, field
from typing import List, Sequence

import basix

from femgax.errors import ConfigurationError
from femgax.fem import logger
from femgax.fem.basis import (create_element, get_elements,
                              get_face_quadrature, get_shape_vals_and_grads,
                              tabulate)


GEOMETRY_TYPES = {
    basix.CellType.interval: "LINE2",
    basix.CellType.triangle: "TRI3",
    basix.CellType.quadrilateral: "QUAD4",
    basix.CellType.tetrahedron: "TET4",
    basix.CellType.hexahedron: "HEX8",
}


def geometry_type_of(ele_type):
    """Return the linear geometry element type sharing the cell of ``ele_type``."""
    _, basix_ele, _, _ = get_elements(ele_type)
    return GEOMETRY_TYPES[basix_ele]


class FiniteElement:
    """Reference element with quadrature, face and interpolation tables.

    Attributes:
        ele_type (str): Interpolation element type.
        geo_type (str): Linear geometry element type of the same cell.
        num_nodes (int): Number of local dofs.
        dim (int): Topological dimension of the cell.
        shape_vals (numpy.ndarray): (num_quads, num_nodes)
        shape_grads_ref (numpy.ndarray): (num_quads, num_nodes, dim)
        shape_hessians_ref (numpy.ndarray): (num_quads, num_nodes, dim, dim)
        quad_weights (numpy.ndarray): (num_quads,)
        geo_grads_ref (numpy.ndarray): Geometry gradients at quadrature points,
            (num_quads, num_vertices, dim)
        face_shape_vals (numpy.ndarray): (num_faces, num_face_quads, num_nodes)
        face_weights (numpy.ndarray): (num_faces, num_face_quads)
        face_dofs (list): Closure dofs of each face, i.e. the face-to-volume map.
        face_support_dofs (list): Dofs whose shape function is non-zero on each
            face. Equal to ``face_dofs`` for continuous elements.
    """

    def __init__(self, ele_type, gauss_order=None):
        element_family, basix_ele, _, orders = get_elements(ele_type)
        if gauss_order is None:
            gauss_order = orders[0]
        self.ele_type = ele_type
        self.geo_type = GEOMETRY_TYPES[basix_ele]
        self.cell_type = basix_ele
        self.degree = orders[1]
        self.discontinuous = orders[2]
        self.gauss_order = gauss_order

        element = create_element(ele_type)
        self.num_nodes = element.dim
        self.dim = len(basix.geometry(basix_ele)[0])
        self.entity_dofs = element.entity_dofs
        self.interpolation_points = onp.asarray(element.points)
        self.interpolation_matrix = onp.asarray(element.interpolation_matrix)

        (self.shape_vals, self.shape_grads_ref, self.shape_hessians_ref,
         self.quad_points, self.quad_weights) = get_shape_vals_and_grads(ele_type, gauss_order)
        self.geo_vals, self.geo_grads_ref, _ = tabulate(self.geo_type, self.quad_points)

        (self.face_quad_points, self.face_weights, self.facet_jacobians,
         self.face_vertices) = get_face_quadrature(ele_type, gauss_order)
        num_faces, num_face_quads, _ = self.face_quad_points.shape
        flat_points = self.face_quad_points.reshape(-1, self.dim)
        face_vals, _, _ = tabulate(ele_type, flat_points)
        self.face_shape_vals = face_vals.reshape(num_faces, num_face_quads, -1)
        _, face_geo_grads, _ = tabulate(self.geo_type, flat_points)
        self.face_geo_grads_ref = face_geo_grads.reshape(num_faces, num_face_quads, -1, self.dim)
        self.face_dofs = [list(dofs) for dofs in element.entity_closure_dofs[self.dim - 1]]
        if self.discontinuous:
            # no dofs live on the facets; take every function that is non-zero there
            support = onp.abs(self.face_shape_vals).max(axis=1) > 1e-12
            self.face_support_dofs = [onp.flatnonzero(s).tolist() for s in support]
        else:
            self.face_support_dofs = self.face_dofs
        self.num_faces = num_faces
        self.num_vertices = len(basix.geometry(basix_ele))
        logger.debug(f"FiniteElement {ele_type}: num_nodes = {self.num_nodes}, "
                     f"num_quads = {len(self.quad_weights)}, num_faces = {num_faces}")

    def jacobian(self, coords, iq):
        """Evaluate the physical shape functions at one quadrature point.

        Args:
            coords (numpy.ndarray): Cell vertex coordinates in Basix order,
                shape (num_vertices, dim).
            iq (int): Quadrature point index.

        Returns:
            tuple: ``(weight, values, gradients, second_derivatives)`` where the
            weight already includes ``|J|``. Second derivatives neglect the
            curvature of the geometry map, which is exact for affine cells.
        """
        jac = coords.T @ self.geo_grads_ref[iq]
        det = onp.linalg.det(jac)
        inv = onp.linalg.inv(jac)
        grads = self.shape_grads_ref[iq] @ inv
        hessians = onp.einsum("ai,nab,bj->nij", inv, self.shape_hessians_ref[iq], inv)
        return self.quad_weights[iq] * abs(det), self.shape_vals[iq], grads, hessians

    def face_jacobian(self, coords, face, iq):
        """Evaluate face measure, shape values and inverse cell Jacobian on a face.

        Returns:
            tuple: ``(weight, values, inverse_jacobian)``. In one dimension the
            weight is exactly one and no transform is applied.
        """
        jac = coords.T @ self.face_geo_grads_ref[face, iq]
        inv = onp.linalg.inv(jac)
        if self.dim == 1:
            return 1.0, self.face_shape_vals[face, iq], inv
        tangent = jac @ self.facet_jacobians[face]
        measure = onp.sqrt(onp.linalg.det(tangent.T @ tangent))
        return self.face_weights[face, iq] * measure, self.face_shape_vals[face, iq], inv

    def face_centroid(self, coords, face):
        """Average of the vertex coordinates of one face."""
        return onp.mean(coords[self.face_vertices[face]], axis=0)

    def map_points(self, coords, ref_points):
        """Map reference points to physical coordinates through the geometry element."""
        geo_vals = tabulate(self.geo_type, onp.atleast_2d(ref_points))[0]
        return geo_vals @ coords

    def interpolate(self, coords, fn):
        """Interpolate a pointwise function into local dof values.

        Args:
            coords (numpy.ndarray): Cell vertex coordinates.
            fn (Callable): Maps a physical point to a scalar.

        Returns:
            numpy.ndarray: Local dof values, shape (num_nodes,).
        """
        points = self.map_points(coords, self.interpolation_points)
        values = onp.array([fn(p) for p in points], dtype=onp.float64)
        return self.interpolation_matrix @ values


@dataclass(eq=False)
class ElementTables:
    """Quadrature rule and per-field shape tables shared by every element of a mesh.

    Instances hash by identity so that assemblers can cache compiled kernels
    per table set.
    """

    field_names: Sequence[str]
    elements: List[FiniteElement]
    geometry: FiniteElement = field(default=None)

    def __post_init__(self):
        if len(self.field_names) != len(self.elements):
            raise ConfigurationError("One element type is needed per field")
        cells = {fe.cell_type for fe in self.elements}
        if len(cells) != 1:
            raise ConfigurationError(f"Fields live on different cells: {cells}")
        orders = {fe.gauss_order for fe in self.elements}
        if len(orders) != 1:
            raise ConfigurationError(f"Fields use different quadrature orders: {orders}")
        if self.geometry is None:
            self.geometry = FiniteElement(self.elements[0].geo_type, orders.pop())

    @property
    def block_sizes(self):
        return tuple(fe.num_nodes for fe in self.elements)

    @property
    def num_local_dofs(self):
        return sum(self.block_sizes)

    @property
    def offsets(self):
        return tuple(onp.concatenate([[0], onp.cumsum(self.block_sizes)]).tolist())

    @property
    def quad_weights(self):
        return self.geometry.quad_weights


def build_element_tables(field_names, ele_types, gauss_order=None):
    """Create the ElementTables for a list of fields sharing one cell type.

    The common quadrature order defaults to the largest default order among
    the field element types.
    """
    if gauss_order is None:
        gauss_order = max(get_elements(e)[3][0] for e in ele_types)
    elements = [FiniteElement(e, gauss_order) for e in ele_types]
    return ElementTables(field_names=tuple(field_names), elements=elements)
