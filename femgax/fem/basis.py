"""Finite element basis functions and shape function utilities.

This module wraps the Basix library to provide element definitions, shape
function values, gradients and second derivatives at quadrature points, and
the face quadrature data needed for boundary integrals. All tables are returned
in Basix local dof ordering.
"""
import basix
import numpy as onp

from femgax.errors import ConfigurationError
from femgax.fem import logger


_CELLS = {
    "LINE": (basix.CellType.interval, basix.CellType.point),
    "TRI": (basix.CellType.triangle, basix.CellType.interval),
    "QUAD": (basix.CellType.quadrilateral, basix.CellType.interval),
    "TET": (basix.CellType.tetrahedron, basix.CellType.triangle),
    "HEX": (basix.CellType.hexahedron, basix.CellType.quadrilateral),
}

_CONTINUOUS = {
    "LINE2": ("LINE", basix.ElementFamily.P, 1),
    "LINE3": ("LINE", basix.ElementFamily.P, 2),
    "TRI3": ("TRI", basix.ElementFamily.P, 1),
    "TRI6": ("TRI", basix.ElementFamily.P, 2),
    "QUAD4": ("QUAD", basix.ElementFamily.P, 1),
    "QUAD8": ("QUAD", basix.ElementFamily.serendipity, 2),
    "QUAD9": ("QUAD", basix.ElementFamily.P, 2),
    "TET4": ("TET", basix.ElementFamily.P, 1),
    "TET10": ("TET", basix.ElementFamily.P, 2),
    "HEX8": ("HEX", basix.ElementFamily.P, 1),
    "HEX20": ("HEX", basix.ElementFamily.serendipity, 2),
    "HEX27": ("HEX", basix.ElementFamily.P, 2),
}


def get_elements(ele_type):
    """Get element configuration for specified element type.

    Args:
        ele_type (str): Element type identifier. Continuous types are
            'LINE2', 'LINE3', 'TRI3', 'TRI6', 'QUAD4', 'QUAD8' (serendipity),
            'QUAD9', 'TET4', 'TET10', 'HEX8', 'HEX20' (serendipity) and 'HEX27'.
            Discontinuous Lagrange types are spelled '<CELL>_DG<degree>',
            e.g. 'QUAD_DG0' or 'TRI_DG1'.

    Returns:
        tuple: A 4-tuple containing:
            - element_family (basix.ElementFamily): Basix element family
            - basix_ele (basix.CellType): Basix cell type for the element
            - basix_face_ele (basix.CellType): Basix cell type for faces
            - orders (tuple): Gauss order, degree and discontinuity flag

    Raises:
        ConfigurationError: If the element type is not supported.

    Example:
        >>> family, ele, face_ele, orders = get_elements('QUAD9')
        >>> gauss_order, degree, discontinuous = orders
    """
    if ele_type in _CONTINUOUS:
        cell, element_family, degree = _CONTINUOUS[ele_type]
        discontinuous = False
    elif "_DG" in ele_type:
        cell, _, degree = ele_type.partition("_DG")
        if cell not in _CELLS or not degree.isdigit():
            raise ConfigurationError(f"Unknown element type {ele_type!r}")
        element_family = basix.ElementFamily.P
        degree = int(degree)
        discontinuous = True
    else:
        raise ConfigurationError(f"Unknown element type {ele_type!r}")

    basix_ele, basix_face_ele = _CELLS[cell]
    gauss_order = max(2, 2 * degree)
    orders = (gauss_order, degree, discontinuous)
    return element_family, basix_ele, basix_face_ele, orders


def create_element(ele_type):
    """Create the Basix finite element for an element type identifier."""
    element_family, basix_ele, _, orders = get_elements(ele_type)
    _, degree, discontinuous = orders
    if element_family == basix.ElementFamily.P:
        return basix.create_element(element_family, basix_ele, degree,
                                    basix.LagrangeVariant.equispaced,
                                    discontinuous=discontinuous)
    return basix.create_element(element_family, basix_ele, degree)


def tabulate(ele_type, points):
    """Tabulate values, gradients and second derivatives at reference points.

    Args:
        ele_type (str): Element type identifier.
        points (numpy.ndarray): Reference points with shape (num_points, tdim).

    Returns:
        tuple: A 3-tuple containing:
            - values (numpy.ndarray): Shape (num_points, num_nodes)
            - grads (numpy.ndarray): Shape (num_points, num_nodes, tdim)
            - hessians (numpy.ndarray): Shape (num_points, num_nodes, tdim, tdim)
    """
    element = create_element(ele_type)
    points = onp.asarray(points, dtype=onp.float64)
    tdim = points.shape[1]
    table = element.tabulate(2, points)[:, :, :, 0]
    values = table[0]
    grads = onp.stack([table[basix.index(*_unit(tdim, a))] for a in range(tdim)], axis=-1)
    hessians = onp.empty(values.shape + (tdim, tdim))
    for a in range(tdim):
        for b in range(tdim):
            counts = onp.array(_unit(tdim, a)) + onp.array(_unit(tdim, b))
            hessians[:, :, a, b] = table[basix.index(*counts.tolist())]
    return values, grads, hessians


def _unit(tdim, axis):
    counts = [0] * tdim
    counts[axis] = 1
    return counts


def get_shape_vals_and_grads(ele_type, gauss_order=None):
    """Compute shape function values and gradients at quadrature points.

    Args:
        ele_type (str): Element type identifier (see get_elements for options).
        gauss_order (int, optional): Quadrature order. If None, uses default
            order for the element type.

    Returns:
        tuple: A 5-tuple containing:
            - shape_values (numpy.ndarray): Shape (num_quad_points, num_nodes)
            - shape_grads_ref (numpy.ndarray): Reference gradients,
                shape (num_quad_points, num_nodes, dim)
            - shape_hessians_ref (numpy.ndarray): Reference second derivatives,
                shape (num_quad_points, num_nodes, dim, dim)
            - quad_points (numpy.ndarray): Shape (num_quad_points, dim)
            - weights (numpy.ndarray): Quadrature weights, shape (num_quad_points,)
    """
    _, basix_ele, _, orders = get_elements(ele_type)
    if gauss_order is None:
        gauss_order = orders[0]
    quad_points, weights = basix.make_quadrature(basix_ele, gauss_order)
    shape_values, shape_grads_ref, shape_hessians_ref = tabulate(ele_type, quad_points)
    return shape_values, shape_grads_ref, shape_hessians_ref, quad_points, weights


def get_face_quadrature(ele_type, gauss_order=None):
    """Map face quadrature rules onto every facet of the reference cell.

    In one dimension a facet is a single point with unit weight and no
    Jacobian, so each facet carries exactly one quadrature point.

    Args:
        ele_type (str): Element type identifier.
        gauss_order (int, optional): Face quadrature order.

    Returns:
        tuple: A 4-tuple containing:
            - face_quad_points (numpy.ndarray): Reference cell coordinates of
                the face quadrature points, shape (num_faces, num_face_quads, dim)
            - face_weights (numpy.ndarray): Reference facet weights,
                shape (num_faces, num_face_quads)
            - facet_jacobians (numpy.ndarray): Reference facet Jacobians,
                shape (num_faces, dim, dim - 1)
            - face_vertices (list): Local vertex indices of each facet
    """
    _, basix_ele, basix_face_ele, orders = get_elements(ele_type)
    if gauss_order is None:
        gauss_order = orders[0]
    vertices = onp.asarray(basix.geometry(basix_ele))
    dim = vertices.shape[1]
    facets = basix.topology(basix_ele)[dim - 1]

    if dim == 1:
        face_quad_points = onp.stack([vertices[f[0]][None, :] for f in facets])
        face_weights = onp.ones((len(facets), 1))
        facet_jacobians = onp.zeros((len(facets), 1, 0))
        return face_quad_points, face_weights, facet_jacobians, [list(f) for f in facets]

    points, weights = basix.make_quadrature(basix_face_ele, gauss_order)
    lagrange_map = basix.create_element(basix.ElementFamily.P, basix_face_ele, 1)
    values = lagrange_map.tabulate(0, points)[0, :, :, 0]
    face_quad_points = onp.stack([values @ vertices[facet] for facet in facets])
    face_weights = onp.tile(weights, (len(facets), 1))
    facet_jacobians = onp.asarray(basix.cell.facet_jacobians(basix_ele))
    logger.debug(f"face_quad_points.shape = (num_faces, num_face_quads, dim) = {face_quad_points.shape}")
    return face_quad_points, face_weights, facet_jacobians, [list(f) for f in facets]
