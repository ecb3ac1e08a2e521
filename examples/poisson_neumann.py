import os

from femgax.config import SolverConfig, MultigridConfig, TimeStepConfig
from femgax.fem.assembler import GlobalSystemAssembler, LocalAssembler
from femgax.fem.boundary import BoundaryContributionEvaluator, DirichletConstraints
from femgax.fem.dofmap import DofMap
from femgax.fem.mesh import rectangle_mesh
from femgax.fem.solution import SolutionState
from femgax.fem.transfer import MeshLevel
from femgax.physics import Poisson
from femgax.solvers.timestepper import NonlinearTimeStepDriver, point_probe
from femgax.utils import VtkSnapshotWriter

data_dir = os.path.join(os.path.dirname(__file__), 'data')

# Unit square, Dirichlet zero on left, right and bottom, outward flux on top.
ele_type = "QUAD9"
source = 100.0
top_flux = 1.0
num_levels = 3
N_coarse = 4


def boundary_condition(x, name, group, time):
    if group in (1, 2, 3):
        return True, 0.0
    return False, top_flux


levels = []
for level in range(num_levels):
    N = N_coarse * 2**level
    mesh = rectangle_mesh(N, N, 1.0, 1.0, num_partitions=2)
    dofmap = DofMap(mesh, ["u"], [ele_type])
    levels.append(MeshLevel(dofmap, DirichletConstraints(dofmap, boundary_condition)))

fine = levels[-1]
assembler = GlobalSystemAssembler(fine.dofmap,
                                  LocalAssembler(Poisson(source=source)),
                                  boundary=BoundaryContributionEvaluator(boundary_condition),
                                  constraints=fine.constraints)
state = SolutionState(fine.dofmap)

config = SolverConfig(multigrid=MultigridConfig(first_step_cycle="v"),
                      time=TimeStepConfig(dt=1.0, num_steps=1, snapshot_interval=1))
writer = VtkSnapshotWriter(os.path.join(data_dir, 'vtk'), [l.dofmap for l in levels], prefix='poisson')
driver = NonlinearTimeStepDriver(assembler, state, config, levels=levels, writer=writer)
result = driver.step()

print(f"Converged: {result.converged} after {result.iterations} Newton iteration(s)")
print(f"Multigrid cycles: {[r.cycles for r in result.multigrid_results]}")
print(f"u(0.5, 0.5) = {point_probe(fine.dofmap, state, 'u', [0.5, 0.5])}")
