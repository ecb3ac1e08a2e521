"""Degree-of-freedom numbering for multi-field problems on a partitioned mesh.

Dofs of every field are numbered from the Basix entity-dof layout of the
field's element: dofs attached to vertices, edges or faces are shared between
the cells that touch the entity, dofs attached to the cell interior (all dofs
of a discontinuous element) are private to the cell. The system numbering is
field-blocked: the dofs of field 0 come first, then those of field 1, and so
on.
"""
import numpy as onp

import basix

from femgax.errors import ConfigurationError
from femgax.fem import logger
from femgax.fem.fe import build_element_tables


class DofMap:
    """Local-to-global dof map of a set of fields on one mesh level.

    Attributes:
        mesh (Mesh): The mesh level.
        field_names (tuple): Field names in system order.
        tables (ElementTables): Shape tables of the fields.
        cell_dofs (list): Per field, an integer array (num_cells, num_nodes)
            of field-local global dof numbers.
        field_offsets (numpy.ndarray): System offset of each field block.
        num_dofs (int): Total number of system dofs.
        dof_owner (numpy.ndarray): Owning partition of every system dof.
    """

    def __init__(self, mesh, field_names, ele_types, gauss_order=None):
        if len(set(field_names)) != len(field_names):
            raise ConfigurationError(f"Duplicate field names in {field_names}")
        self.mesh = mesh
        self.field_names = tuple(field_names)
        self.ele_types = tuple(ele_types)
        self.tables = build_element_tables(field_names, ele_types, gauss_order)
        if self.tables.geometry.ele_type != mesh.ele_type:
            raise ConfigurationError(
                f"Elements {ele_types} do not live on {mesh.ele_type} cells")

        self.cell_dofs = []
        owners = []
        for fe in self.tables.elements:
            dofs, owner = self._number_field(fe)
            self.cell_dofs.append(dofs)
            owners.append(owner)
        sizes = [len(o) for o in owners]
        self.field_offsets = onp.concatenate([[0], onp.cumsum(sizes)]).astype(onp.int64)
        self.num_dofs = int(self.field_offsets[-1])
        self.dof_owner = onp.concatenate(owners)
        logger.debug(f"DofMap: fields {self.field_names} with sizes {sizes}")

    def _number_field(self, fe):
        topology = basix.topology(fe.cell_type)
        tdim = fe.dim
        keys = {}
        owner = []
        dofs = onp.empty((self.mesh.num_cells, fe.num_nodes), dtype=onp.int64)
        for e in range(self.mesh.num_cells):
            vertices = self.mesh.basix_cells[e]
            for d, entities in enumerate(fe.entity_dofs):
                for i, local_dofs in enumerate(entities):
                    if not local_dofs:
                        continue
                    if d == tdim:
                        key = ("cell", e)
                    else:
                        if len(local_dofs) > 1:
                            raise ConfigurationError(
                                f"{fe.ele_type}: more than one dof on a shared entity is not supported")
                        key = tuple(sorted(vertices[topology[d][i]]))
                    if key not in keys:
                        keys[key] = len(owner)
                        owner.extend([self.mesh.element_partition[e]] * len(local_dofs))
                    first = keys[key]
                    for k, local in enumerate(local_dofs):
                        dofs[e, local] = first + k
        return dofs, onp.asarray(owner, dtype=onp.int64)

    @property
    def num_fields(self):
        return len(self.field_names)

    def field_index(self, name):
        """Index of a field by name; unknown names are a configuration error."""
        if isinstance(name, (int, onp.integer)):
            if not 0 <= name < self.num_fields:
                raise ConfigurationError(f"Field index {name} out of range")
            return int(name)
        if name not in self.field_names:
            raise ConfigurationError(f"Unknown field {name!r}; fields are {self.field_names}")
        return self.field_names.index(name)

    def field_size(self, field):
        f = self.field_index(field)
        return int(self.field_offsets[f + 1] - self.field_offsets[f])

    def field_range(self, field):
        """System dof range ``(start, stop)`` of a field block."""
        f = self.field_index(field)
        return int(self.field_offsets[f]), int(self.field_offsets[f + 1])

    def field_dofs(self, fields):
        """Sorted system dofs spanned by a collection of fields."""
        ranges = [onp.arange(*self.field_range(f)) for f in fields]
        return onp.sort(onp.concatenate(ranges))

    def local_to_global(self, element, field):
        """Field-local global dof numbers of an element, in Basix order."""
        return self.cell_dofs[self.field_index(field)][element]

    def element_dofs(self, element, fields=None):
        """System dofs of an element, blocked by field in system order."""
        if fields is None:
            fields = range(self.num_fields)
        return onp.concatenate([
            self.cell_dofs[f][element] + self.field_offsets[f]
            for f in (self.field_index(g) for g in fields)])

    def cell_values(self, values, element):
        """Gather the local nodal values of an element from a system vector."""
        return onp.asarray(values)[self.element_dofs(element)]

    def dof_coordinates(self, field):
        """Physical coordinates associated with every dof of a field.

        Point-evaluation dofs sit at their interpolation point; other dofs
        are placed at the centroid of the entity they belong to.
        """
        f = self.field_index(field)
        fe = self.tables.elements[f]
        coords = onp.zeros((self.field_size(f), self.mesh.dim))
        topology = basix.topology(fe.cell_type)
        reference = []
        for d, entities in enumerate(fe.entity_dofs):
            for i, local_dofs in enumerate(entities):
                for local in local_dofs:
                    row = fe.interpolation_matrix[local]
                    nonzero = onp.flatnonzero(onp.abs(row) > 1e-12)
                    if len(nonzero) == 1 and abs(row[nonzero[0]] - 1.0) < 1e-12:
                        reference.append((local, fe.interpolation_points[nonzero[0]]))
                    else:
                        geometry = onp.asarray(basix.geometry(fe.cell_type))
                        reference.append((local, onp.mean(geometry[topology[d][i]], axis=0)))
        order = [local for local, _ in reference]
        ref_points = onp.array([p for _, p in reference])
        for e in range(self.mesh.num_cells):
            physical = fe.map_points(self.mesh.cell_coords(e), ref_points)
            coords[self.cell_dofs[f][e, order]] = physical
        return coords

    def locate_dof(self, field, point, atol=1e-8):
        """Field-local index of the dof sitting at ``point``, or None."""
        coords = self.dof_coordinates(field)
        dist = onp.linalg.norm(coords - onp.asarray(point)[None, :], axis=1)
        ind = int(onp.argmin(dist))
        return ind if dist[ind] < atol else None

    def owned_elements_by_partition(self):
        """Element indices owned by each partition, in partition order."""
        return [self.mesh.owned_elements(p) for p in range(self.mesh.num_partitions)]
