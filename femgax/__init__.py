"""femgax: multigrid and field-split solvers for JAX finite element assembly."""

__version__ = "0.1.0"
