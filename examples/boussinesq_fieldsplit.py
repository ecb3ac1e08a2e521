import os

import numpy as onp

from femgax.config import load_config
from femgax.fem.assembler import GlobalSystemAssembler, LocalAssembler
from femgax.fem.boundary import BoundaryContributionEvaluator, DirichletConstraints
from femgax.fem.dofmap import DofMap
from femgax.fem.mesh import rectangle_mesh
from femgax.fem.solution import SolutionState
from femgax.fem.transfer import MeshLevel
from femgax.physics import Boussinesq
from femgax.solvers.timestepper import (Diagnostic, NonlinearTimeStepDriver, kinetic_energy,
                                        point_probe)
from femgax.utils import VtkSnapshotWriter

data_dir = os.path.join(os.path.dirname(__file__), 'data')
os.makedirs(data_dir, exist_ok=True)

# Material parameters.
prandtl = 0.015
rayleigh = 3000.0

# Rectangle of width 4 and height 1 centred at the origin.
field_names = ["U", "V", "P", "T"]
ele_types = ["QUAD9", "QUAD9", "QUAD_DG1", "QUAD8"]
num_levels = 3
Nx, Ny = 8, 2
probe_point = [-1.875, -0.375]


def boundary_condition(x, name, group, time):
    if name == "T":
        if group == 1:
            return True, 0.5 * (1.0 - onp.exp(-10.0 * time))
        if group == 2:
            return True, -0.5 * (1.0 - onp.exp(-10.0 * time))
        return False, 0.0
    if name == "P":
        return False, 0.0
    return True, 0.0


levels = []
for level in range(num_levels):
    mesh = rectangle_mesh(Nx * 2**level, Ny * 2**level, 4.0, 1.0, origin=(-2.0, -0.5),
                          num_partitions=2)
    dofmap = DofMap(mesh, field_names, ele_types)
    levels.append(MeshLevel(dofmap, DirichletConstraints(dofmap, boundary_condition,
                                                         pinned_fields=("P",))))
fine = levels[-1]

# Solver settings and the Benard field-split tree.
config_file = os.path.join(os.path.dirname(__file__), 'boussinesq.yaml')
config = load_config(config_file)

assembler = GlobalSystemAssembler(fine.dofmap,
                                  LocalAssembler(Boussinesq(prandtl, rayleigh)),
                                  boundary=BoundaryContributionEvaluator(boundary_condition),
                                  constraints=fine.constraints)
state = SolutionState(fine.dofmap)
state.initialize("T", lambda x: onp.sin(4.0 * x[0]))

energy_file = open(os.path.join(data_dir, 'kinetic_energy.txt'), 'w')
u_file = open(os.path.join(data_dir, 'point_u.txt'), 'w')
v_file = open(os.path.join(data_dir, 'point_v.txt'), 'w')
diagnostics = [
    Diagnostic("kinetic_energy",
               lambda d, s: onp.sqrt(kinetic_energy(d, s, ["U", "V"]) / 2.0 / 4.0), energy_file),
    Diagnostic("u_probe", lambda d, s: point_probe(d, s, "U", probe_point), u_file),
    Diagnostic("v_probe", lambda d, s: point_probe(d, s, "V", probe_point), v_file),
]

writer = VtkSnapshotWriter(os.path.join(data_dir, 'vtk'), [l.dofmap for l in levels],
                           prefix='biquadratic')
driver = NonlinearTimeStepDriver(assembler, state, config, levels=levels, writer=writer,
                                 diagnostics=diagnostics)
try:
    results = driver.run()
finally:
    for stream in (energy_file, u_file, v_file):
        stream.close()

print(f"{sum(r.converged for r in results)} of {len(results)} steps converged")
