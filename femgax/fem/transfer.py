"""Grid transfer operators between nested mesh levels.

The prolongation from a coarse to a fine level interpolates every coarse field
into the fine space: each fine cell is matched with the coarse cell that
contains its centroid, the fine interpolation points are pulled back into
that coarse cell and the coarse basis is evaluated there. Restriction is the
transpose of the prolongation.
"""
from dataclasses import dataclass
from typing import List, Optional

import numpy as onp
import scipy.sparse

from femgax.errors import ConfigurationError
from femgax.fem import logger
from femgax.fem.basis import tabulate


@dataclass
class MeshLevel:
    """One level of a multigrid hierarchy.

    Attributes:
        dofmap (DofMap): Dof numbering of the level.
        constraints (DirichletConstraints, optional): Dirichlet rows of the level.
    """

    dofmap: object
    constraints: Optional[object] = None

    @property
    def mesh(self):
        return self.dofmap.mesh

    def constrained_dofs(self, time=0.0):
        if self.constraints is None:
            return onp.zeros(0, dtype=onp.int64)
        return self.constraints.evaluate(time)[0]


def inverse_map(geo, coords, x, max_iter=20, tol=1e-13):
    """Reference coordinates of a physical point, by Newton on the geometry map."""
    xi = onp.mean(onp.asarray(geo.interpolation_points), axis=0)
    for _ in range(max_iter):
        vals, grads, _ = tabulate(geo.ele_type, xi[None, :])
        residual = vals[0] @ coords - x
        jac = coords.T @ grads[0]
        step = onp.linalg.solve(jac, residual)
        xi = xi - step
        if onp.linalg.norm(step) < tol:
            break
    return xi


def _inside_reference(ele_type, xi, atol=1e-9):
    if ele_type.startswith(("TRI", "TET")):
        return bool(onp.all(xi >= -atol) and onp.sum(xi) <= 1.0 + atol)
    return bool(onp.all(xi >= -atol) and onp.all(xi <= 1.0 + atol))


def find_parents(coarse_mesh, fine_mesh, geo):
    """Index of the coarse cell containing the centroid of every fine cell."""
    coarse_coords = coarse_mesh.points[coarse_mesh.basix_cells]
    lower = onp.min(coarse_coords, axis=1) - 1e-12
    upper = onp.max(coarse_coords, axis=1) + 1e-12
    parents = onp.empty(fine_mesh.num_cells, dtype=onp.int64)
    for e in range(fine_mesh.num_cells):
        centroid = onp.mean(fine_mesh.cell_coords(e), axis=0)
        candidates = onp.flatnonzero(onp.all((centroid >= lower) & (centroid <= upper), axis=1))
        for c in candidates:
            xi = inverse_map(geo, coarse_coords[c], centroid)
            if _inside_reference(geo.ele_type, xi):
                parents[e] = c
                break
        else:
            raise ConfigurationError(f"Fine cell {e} is not nested in the coarse mesh")
    return parents


def prolongation_matrix(coarse, fine):
    """Interpolation operator from a coarse DofMap to a nested fine DofMap.

    Args:
        coarse (DofMap): Coarse level numbering.
        fine (DofMap): Fine level numbering with the same fields and elements.

    Returns:
        scipy.sparse.csr_array: Shape (fine.num_dofs, coarse.num_dofs).
    """
    if coarse.field_names != fine.field_names or coarse.ele_types != fine.ele_types:
        raise ConfigurationError("Coarse and fine levels must carry the same fields and elements")
    geo = fine.tables.geometry
    parents = find_parents(coarse.mesh, fine.mesh, geo)
    rows, cols, vals = [], [], []
    for f, fe in enumerate(fine.tables.elements):
        assigned = onp.zeros(fine.field_size(f), dtype=bool)
        for e in range(fine.mesh.num_cells):
            fine_dofs = fine.cell_dofs[f][e]
            if onp.all(assigned[fine_dofs]):
                continue
            c = parents[e]
            coarse_coords = coarse.mesh.cell_coords(c)
            points = fe.map_points(fine.mesh.cell_coords(e), fe.interpolation_points)
            xi = onp.array([inverse_map(geo, coarse_coords, p) for p in points])
            coarse_vals, _, _ = tabulate(fe.ele_type, xi)
            local = fe.interpolation_matrix @ coarse_vals
            coarse_dofs = coarse.cell_dofs[f][c]
            for i, dof in enumerate(fine_dofs):
                if assigned[dof]:
                    continue
                assigned[dof] = True
                nonzero = onp.flatnonzero(onp.abs(local[i]) > 1e-14)
                rows.extend([dof + fine.field_offsets[f]] * len(nonzero))
                cols.extend(coarse_dofs[nonzero] + coarse.field_offsets[f])
                vals.extend(local[i, nonzero])
    P = scipy.sparse.csr_array((vals, (rows, cols)), shape=(fine.num_dofs, coarse.num_dofs))
    logger.debug(f"Prolongation {coarse.num_dofs} -> {fine.num_dofs} dofs, nnz = {P.nnz}")
    return P


def mask_constrained(P, fine_constrained, coarse_constrained):
    """Zero the rows of constrained fine dofs and columns of constrained coarse dofs."""
    row_keep = onp.ones(P.shape[0])
    row_keep[fine_constrained] = 0.0
    col_keep = onp.ones(P.shape[1])
    col_keep[coarse_constrained] = 0.0
    return (scipy.sparse.diags_array(row_keep) @ P @ scipy.sparse.diags_array(col_keep)).tocsr()


def build_prolongations(levels: List[MeshLevel], time=0.0):
    """Masked prolongations ``P_l`` from level ``l - 1`` to level ``l``, coarsest first."""
    prolongations = [None]
    for coarse, fine in zip(levels[:-1], levels[1:]):
        P = prolongation_matrix(coarse.dofmap, fine.dofmap)
        prolongations.append(mask_constrained(P, fine.constrained_dofs(time),
                                              coarse.constrained_dofs(time)))
    return prolongations
