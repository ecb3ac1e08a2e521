"""Boundary conditions driven by an application-supplied predicate.

The predicate has the signature

    predicate(coordinate, field_name, group_id, time) -> (is_dirichlet, value)

and is queried once per boundary face at the face centroid. Faces it marks as
non-Dirichlet receive a natural (Neumann/Robin) load through
:class:`BoundaryContributionEvaluator`; faces it marks as Dirichlet constrain
their closure dofs through :class:`DirichletConstraints`. Discontinuous
fields have no facet dofs: they take natural loads on every function that is
non-zero on the face, and marking them Dirichlet is an error.

A predicate returning ``None`` means "not Dirichlet, zero datum". Because the
predicate is only evaluated at the centroid, the natural load is exact only
for boundary data that is constant over each face.
"""
import numpy as onp

from femgax.errors import ConfigurationError
from femgax.fem import logger


def query_predicate(predicate, coordinate, field_name, group, time):
    """Evaluate a boundary predicate, mapping a missing answer to Neumann zero."""
    result = predicate(coordinate, field_name, group, time)
    if result is None:
        logger.debug(f"No boundary data for field {field_name!r} on group {group}; "
                     f"treating it as homogeneous Neumann")
        return False, 0.0
    is_dirichlet, value = result
    return bool(is_dirichlet), float(value)


class BoundaryContributionEvaluator:
    """Natural-boundary load vector of boundary elements.

    Args:
        predicate (Callable): Boundary predicate, see module docstring.
    """

    def __init__(self, predicate):
        self.predicate = predicate

    def evaluate(self, mesh, element, tables, time=0.0):
        """Load of every face-local test function of an element.

        For each physical boundary face the predicate is evaluated at the face
        centroid. For a non-Dirichlet field with a non-zero datum ``g`` the
        entry of test function ``i`` grows by ``sum_q w_q |J_face| g phi_i``.
        In one dimension the face is a point: unit weight, no transform.

        Returns:
            numpy.ndarray: Load with the element's field-blocked layout; the
            assembler subtracts it from the residual.
        """
        load = onp.zeros(tables.num_local_dofs)
        coords = mesh.cell_coords(element)
        offsets = tables.offsets
        for face, group in mesh.boundary_faces(element):
            centroid = tables.geometry.face_centroid(coords, face)
            for f, (name, fe) in enumerate(zip(tables.field_names, tables.elements)):
                is_dirichlet, datum = query_predicate(self.predicate, centroid, name, group, time)
                if is_dirichlet or datum == 0.0:
                    continue
                face_dofs = onp.asarray(fe.face_support_dofs[face], dtype=onp.int64)
                if face_dofs.size == 0:
                    continue
                for iq in range(fe.face_weights.shape[1]):
                    weight, values, _ = fe.face_jacobian(coords, face, iq)
                    load[offsets[f] + face_dofs] += weight * datum * values[face_dofs]
        return load


class DirichletConstraints:
    """Dirichlet rows of a mesh level, enforced by row elimination.

    Args:
        dofmap (DofMap): Dof numbering of the level.
        predicate (Callable): Boundary predicate, see module docstring.
        pinned_fields (tuple, optional): Fields whose first dof is fixed to
            zero, e.g. a pressure determined only up to a constant.
    """

    def __init__(self, dofmap, predicate, pinned_fields=()):
        self.dofmap = dofmap
        self.predicate = predicate
        self.pinned_fields = tuple(dofmap.field_index(f) for f in pinned_fields)

    def evaluate(self, time=0.0):
        """Constrained system dofs and their prescribed values at ``time``.

        Returns:
            tuple: ``(dofs, values)`` as sorted integer and float arrays.
        """
        mesh = self.dofmap.mesh
        tables = self.dofmap.tables
        prescribed = {}
        for element in range(mesh.num_cells):
            boundary = mesh.boundary_faces(element)
            if not boundary:
                continue
            coords = mesh.cell_coords(element)
            for face, group in boundary:
                centroid = tables.geometry.face_centroid(coords, face)
                for f, (name, fe) in enumerate(zip(tables.field_names, tables.elements)):
                    is_dirichlet, _ = query_predicate(self.predicate, centroid, name, group, time)
                    if not is_dirichlet:
                        continue
                    if fe.discontinuous:
                        raise ConfigurationError(
                            f"Field {name!r} is discontinuous ({fe.ele_type}) and cannot take "
                            f"Dirichlet rows on group {group}; use pinned_fields instead")
                    local_values = fe.interpolate(
                        coords, lambda x: query_predicate(self.predicate, x, name, group, time)[1])
                    global_dofs = self.dofmap.cell_dofs[f][element] + self.dofmap.field_offsets[f]
                    for local in fe.face_dofs[face]:
                        prescribed[int(global_dofs[local])] = local_values[local]
        for f in self.pinned_fields:
            prescribed.setdefault(int(self.dofmap.field_offsets[f]), 0.0)
        dofs = onp.array(sorted(prescribed), dtype=onp.int64)
        values = onp.array([prescribed[d] for d in dofs], dtype=onp.float64)
        return dofs, values

    def apply(self, system, current, time=0.0):
        """Row elimination on a closed system.

        Constrained residual entries become ``u - g`` and constrained matrix
        rows become identity rows, so the Newton update lands exactly on ``g``.
        """
        dofs, values = self.evaluate(time)
        if dofs.size == 0:
            return dofs
        system.residual.set_values(dofs, onp.asarray(current)[dofs] - values)
        if system.matrix is not None:
            system.matrix.zero_rows(dofs, 1.0)
        return dofs

    def assign(self, current, time=0.0):
        """Write the prescribed values into a solution vector in place."""
        dofs, values = self.evaluate(time)
        current[dofs] = values
        return current
