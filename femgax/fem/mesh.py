"""Partitioned finite element meshes and structured mesh generators.

This module provides the Mesh class, which stores node coordinates and
element connectivity together with the partition ownership of every element
and the face adjacency of the mesh. Physical boundary faces are encoded in the
neighbor table with a negative sentinel ``-(group + 1)``; the boundary group
is recovered with :meth:`Mesh.boundary_group`.

The module includes:
    - Mesh class with partitions, faces and neighbor-across-face lookup
    - Structured generators (interval_mesh, rectangle_mesh, box_mesh)
    - Conversion of element types to meshio cell types

Example:
    >>> from femgax.fem.mesh import rectangle_mesh
    >>> mesh = rectangle_mesh(8, 2, 4.0, 1.0, num_partitions=2)
    >>> mesh.partition_range(1)
    (8, 16)
"""

import numpy as onp
import meshio

import basix

from femgax.errors import ConfigurationError
from femgax.fem import logger
from femgax.fem.basis import get_elements

# Position k of each entry is the meshio local node matching Basix vertex k.
_MESHIO_TO_BASIX = {
    "LINE2": [0, 1],
    "TRI3": [0, 1, 2],
    "QUAD4": [0, 1, 3, 2],
    "TET4": [0, 1, 2, 3],
    "HEX8": [0, 1, 3, 2, 4, 5, 7, 6],
}


def get_meshio_cell_type(ele_type):
    """Convert a geometry element type identifier to a meshio cell type string.

    Args:
        ele_type (str): One of 'LINE2', 'TRI3', 'QUAD4', 'TET4', 'HEX8'.

    Returns:
        str: Corresponding meshio cell type string.

    Raises:
        ConfigurationError: If the element type is not a geometry type.
    """
    cell_types = {
        "LINE2": "line",
        "TRI3": "triangle",
        "QUAD4": "quad",
        "TET4": "tetra",
        "HEX8": "hexahedron",
    }
    if ele_type not in cell_types:
        raise ConfigurationError(f"{ele_type!r} is not a geometry element type")
    return cell_types[ele_type]


def box_boundary_fn(points, atol=1e-8):
    """Build a boundary-group locator for axis-aligned box domains.

    Faces on the minimum/maximum plane of axis ``d`` get groups ``2d + 1`` and
    ``2d + 2``. Faces on no bounding plane fall into group ``2 * dim + 1``.
    """
    lower = onp.min(points, axis=0)
    upper = onp.max(points, axis=0)
    dim = points.shape[1]

    def locate(centroid):
        for d in range(dim):
            if abs(centroid[d] - lower[d]) < atol:
                return 2 * d + 1
            if abs(centroid[d] - upper[d]) < atol:
                return 2 * d + 2
        return 2 * dim + 1

    return locate


class Mesh:
    """A partitioned finite element mesh.

    Attributes:
        points (numpy.ndarray): Node coordinates, shape (num_nodes, dim).
        cells (numpy.ndarray): Connectivity in meshio node order,
            shape (num_cells, vertices_per_cell).
        ele_type (str): Linear geometry element type, e.g. 'QUAD4'.
        num_partitions (int): Number of partitions the elements are split into.
        element_offsets (numpy.ndarray): Partition ``p`` owns elements
            ``element_offsets[p]`` to ``element_offsets[p + 1] - 1``.
        neighbors (numpy.ndarray): Element across each local face, or the
            boundary sentinel ``-(group + 1)``; shape (num_cells, num_faces).
    """

    def __init__(self, points, cells, ele_type="QUAD4", num_partitions=1, boundary_fn=None):
        """Initialize a partitioned mesh and build its face adjacency.

        Args:
            points (numpy.ndarray): Node coordinates with shape (num_nodes, dim).
            cells (numpy.ndarray): Connectivity in meshio node order.
            ele_type (str, optional): Geometry element type. Defaults to 'QUAD4'.
            num_partitions (int, optional): Number of contiguous element
                partitions. Defaults to 1.
            boundary_fn (Callable, optional): Maps a boundary face centroid to
                its boundary group id (a positive integer). Defaults to
                :func:`box_boundary_fn` of the mesh points.
        """
        if ele_type not in _MESHIO_TO_BASIX:
            raise ConfigurationError(f"{ele_type!r} is not a geometry element type")
        self.points = onp.asarray(points, dtype=onp.float64)
        self.cells = onp.asarray(cells, dtype=onp.int64)
        self.ele_type = ele_type
        self.num_cells = self.cells.shape[0]
        self.dim = self.points.shape[1]
        if not 1 <= num_partitions <= self.num_cells:
            raise ConfigurationError(
                f"num_partitions must lie in [1, {self.num_cells}], got {num_partitions}")
        self.num_partitions = num_partitions
        self.element_offsets = onp.linspace(0, self.num_cells, num_partitions + 1).astype(onp.int64)
        self.element_partition = onp.repeat(onp.arange(num_partitions),
                                            onp.diff(self.element_offsets))
        self.basix_cells = self.cells[:, onp.argsort(_MESHIO_TO_BASIX[ele_type])]
        if boundary_fn is None:
            boundary_fn = box_boundary_fn(self.points)
        self._build_faces(boundary_fn)

    def _build_faces(self, boundary_fn):
        _, basix_ele, _, _ = get_elements(self.ele_type)
        self.local_faces = [list(f) for f in basix.topology(basix_ele)[self.dim - 1]]
        num_faces = len(self.local_faces)
        owners = {}
        for e in range(self.num_cells):
            for f, local in enumerate(self.local_faces):
                key = tuple(sorted(self.basix_cells[e, local]))
                owners.setdefault(key, []).append((e, f))

        self.neighbors = onp.empty((self.num_cells, num_faces), dtype=onp.int64)
        for key, adjacent in owners.items():
            if len(adjacent) == 2:
                (e0, f0), (e1, f1) = adjacent
                self.neighbors[e0, f0] = e1
                self.neighbors[e1, f1] = e0
            elif len(adjacent) == 1:
                e, f = adjacent[0]
                centroid = onp.mean(self.points[list(key)], axis=0)
                group = int(boundary_fn(centroid))
                if group < 1:
                    raise ConfigurationError(f"Boundary groups must be positive, got {group}")
                self.neighbors[e, f] = -(group + 1)
            else:
                raise ConfigurationError(f"Face {key} is shared by {len(adjacent)} elements")
        logger.debug(f"Mesh {self.ele_type}: {self.num_cells} cells, "
                     f"{int(onp.sum(self.neighbors < 0))} boundary faces")

    @staticmethod
    def boundary_group(sentinel):
        """Recover the boundary group id from a negative neighbor sentinel."""
        return -(int(sentinel) + 1)

    def partition_range(self, partition):
        """Owned element range ``(start, stop)`` of a partition."""
        return int(self.element_offsets[partition]), int(self.element_offsets[partition + 1])

    def owned_elements(self, partition):
        return range(*self.partition_range(partition))

    def cell_coords(self, element):
        """Vertex coordinates of an element in Basix vertex order."""
        return self.points[self.basix_cells[element]]

    def face_vertices(self, element, face):
        """Global vertex ids of a local face of an element."""
        return self.basix_cells[element, self.local_faces[face]]

    def boundary_faces(self, element):
        """List of ``(local_face, group)`` pairs on the physical boundary."""
        return [(f, self.boundary_group(n)) for f, n in enumerate(self.neighbors[element]) if n < 0]

    def is_boundary_element(self, element):
        return bool(onp.any(self.neighbors[element] < 0))

    def to_meshio(self):
        return meshio.Mesh(points=self.points,
                           cells={get_meshio_cell_type(self.ele_type): self.cells})


def interval_mesh(Nx, domain_x, x0=0.0, num_partitions=1):
    """Generate a uniform 1D mesh of LINE2 elements on ``[x0, x0 + domain_x]``.

    Boundary groups are 1 at the left end and 2 at the right end.
    """
    points = onp.linspace(x0, x0 + domain_x, Nx + 1)[:, None]
    cells = onp.stack((onp.arange(Nx), onp.arange(1, Nx + 1)), axis=1)
    return Mesh(points, cells, ele_type="LINE2", num_partitions=num_partitions)


def rectangle_mesh(Nx, Ny, domain_x, domain_y, origin=(0.0, 0.0), num_partitions=1):
    """Generate a structured 2D rectangular mesh using QUAD4 elements.

    Args:
        Nx (int): Number of elements in the x-direction.
        Ny (int): Number of elements in the y-direction.
        domain_x (float): Domain extent in the x-direction.
        domain_y (float): Domain extent in the y-direction.
        origin (tuple, optional): Lower-left corner. Defaults to (0, 0).
        num_partitions (int, optional): Number of element partitions.

    Returns:
        Mesh: Boundary groups are 1 (left), 2 (right), 3 (bottom), 4 (top).

    Example:
        >>> mesh = rectangle_mesh(16, 4, 4.0, 1.0, origin=(-2.0, -0.5))
    """
    dim = 2
    x = onp.linspace(origin[0], origin[0] + domain_x, Nx + 1)
    y = onp.linspace(origin[1], origin[1] + domain_y, Ny + 1)
    xv, yv = onp.meshgrid(x, y, indexing="ij")
    points = onp.stack((xv, yv), axis=dim).reshape(-1, dim)
    points_inds_xy = onp.arange(len(points)).reshape(Nx + 1, Ny + 1)
    inds1 = points_inds_xy[:-1, :-1]
    inds2 = points_inds_xy[1:, :-1]
    inds3 = points_inds_xy[1:, 1:]
    inds4 = points_inds_xy[:-1, 1:]
    cells = onp.stack((inds1, inds2, inds3, inds4), axis=dim).reshape(-1, 4)
    meshio_mesh = meshio.Mesh(points=points, cells={"quad": cells})
    return Mesh(meshio_mesh.points, meshio_mesh.cells_dict["quad"], ele_type="QUAD4",
                num_partitions=num_partitions)


def box_mesh(Nx, Ny, Nz, domain_x, domain_y, domain_z, num_partitions=1):
    """Generate a structured 3D box mesh using HEX8 elements.

    The mesh spans from (0, 0, 0) to (domain_x, domain_y, domain_z). Boundary
    groups are 1/2 on the x planes, 3/4 on the y planes and 5/6 on the z planes.
    """
    dim = 3
    x = onp.linspace(0, domain_x, Nx + 1)
    y = onp.linspace(0, domain_y, Ny + 1)
    z = onp.linspace(0, domain_z, Nz + 1)
    xv, yv, zv = onp.meshgrid(x, y, z, indexing="ij")
    points = onp.stack((xv, yv, zv), axis=dim).reshape(-1, dim)
    points_inds_xyz = onp.arange(len(points)).reshape(Nx + 1, Ny + 1, Nz + 1)
    inds1 = points_inds_xyz[:-1, :-1, :-1]
    inds2 = points_inds_xyz[1:, :-1, :-1]
    inds3 = points_inds_xyz[1:, 1:, :-1]
    inds4 = points_inds_xyz[:-1, 1:, :-1]
    inds5 = points_inds_xyz[:-1, :-1, 1:]
    inds6 = points_inds_xyz[1:, :-1, 1:]
    inds7 = points_inds_xyz[1:, 1:, 1:]
    inds8 = points_inds_xyz[:-1, 1:, 1:]
    cells = onp.stack(
        (inds1, inds2, inds3, inds4, inds5, inds6, inds7, inds8), axis=dim
    ).reshape(-1, 8)
    return Mesh(points, cells, ele_type="HEX8", num_partitions=num_partitions)
