import os

import basix
import meshio
import numpy as onp

from femgax.fem import logger
from femgax.fem.basis import tabulate
from femgax.fem.mesh import get_meshio_cell_type


def save_as_vtk(mesh, sol_file, cell_infos=None, point_infos=None):
    if cell_infos is None and point_infos is None:
        raise ValueError("At least one of cell_infos or point_infos must be provided.")
    cell_type = get_meshio_cell_type(mesh.ele_type)
    sol_dir = os.path.dirname(sol_file)
    if sol_dir:
        os.makedirs(sol_dir, exist_ok=True)

    out_mesh = meshio.Mesh(points=mesh.points, cells={cell_type: mesh.cells})

    if cell_infos:
        out_mesh.cell_data = {}
        for name, data in cell_infos:
            assert data.shape[0] == mesh.num_cells, (
                f"cell data wrong shape, got {data.shape}, expected first dim = {mesh.num_cells}"
            )
            data = onp.array(data, dtype=onp.float32)
            if data.ndim == 1:
                data = data.reshape(mesh.num_cells, 1)
            out_mesh.cell_data[name] = [data]

    if point_infos:
        for name, data in point_infos:
            out_mesh.point_data[name] = onp.array(data, dtype=onp.float32)

    out_mesh.write(sol_file)


def solution_infos(dofmap, values, field_names=None):
    """Split a system vector into VTK point and cell data.

    Continuous fields are sampled at the mesh vertices; discontinuous fields
    are evaluated at the cell centroids.

    Returns:
        tuple: ``(cell_infos, point_infos)`` lists of ``(name, data)``.
    """
    mesh = dofmap.mesh
    values = onp.asarray(values)
    selected = dofmap.field_names if field_names is None else field_names
    cell_infos, point_infos = [], []
    for name in selected:
        f = dofmap.field_index(name)
        fe = dofmap.tables.elements[f]
        global_dofs = dofmap.cell_dofs[f] + dofmap.field_offsets[f]
        if fe.discontinuous:
            centroid = onp.mean(onp.asarray(basix.geometry(fe.cell_type)), axis=0)
            centroid_vals = tabulate(fe.ele_type, centroid[None, :])[0][0]
            cell_infos.append((name, values[global_dofs] @ centroid_vals))
            continue
        point_data = onp.zeros(len(mesh.points))
        for i, local_dofs in enumerate(fe.entity_dofs[0]):
            point_data[mesh.basix_cells[:, i]] = values[global_dofs[:, local_dofs[0]]]
        point_infos.append((name, point_data))
    return cell_infos, point_infos


class VtkSnapshotWriter:
    """Snapshot writer for :class:`~femgax.solvers.timestepper.NonlinearTimeStepDriver`.

    Files are named ``<prefix>_level<level>_<step>.vtu`` inside ``directory``.

    Args:
        directory (str): Output directory, created on first write.
        dofmaps (list): Dof map of every level, coarsest first.
        prefix (str, optional): File name prefix.
    """

    def __init__(self, directory, dofmaps, prefix="solution"):
        self.directory = directory
        self.dofmaps = list(dofmaps)
        self.prefix = prefix
        self.files = []

    def __call__(self, field_names, level, step_tag, state):
        dofmap = self.dofmaps[level]
        cell_infos, point_infos = solution_infos(dofmap, state.current, field_names)
        sol_file = os.path.join(self.directory, f"{self.prefix}_level{level}_{step_tag:04d}.vtu")
        save_as_vtk(dofmap.mesh, sol_file, cell_infos, point_infos)
        self.files.append(sol_file)
        logger.info(f"Wrote snapshot {sol_file}")
        return sol_file
