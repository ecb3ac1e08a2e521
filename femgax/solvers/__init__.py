"""Linear and nonlinear solvers of femgax.

Field-split preconditioning, geometric multigrid and nonlinear time stepping
on top of the assembled systems of :mod:`femgax.fem`.
"""
