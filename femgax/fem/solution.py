"""Two-slot solution state for transient nonlinear solves."""
import numpy as onp
from dataclasses import dataclass, field
from typing import Callable, Optional

from femgax.fem import logger


@dataclass
class SolutionState:
    """Current and old solution vectors of one mesh level.

    ``current`` is updated in place by the nonlinear iteration. ``old`` only
    changes through :meth:`commit`, which the time-step driver calls once a
    step has been accepted.

    Attributes:
        dofmap (DofMap): Numbering of the system vectors.
        current (numpy.ndarray): Iterate of the step being solved.
        old (numpy.ndarray): Accepted solution of the previous step.
        time (float): Time level of ``current``.
    """

    dofmap: object
    current: Optional[onp.ndarray] = None
    old: Optional[onp.ndarray] = None
    time: float = 0.0
    steps_committed: int = field(default=0, init=False)

    def __post_init__(self):
        n = self.dofmap.num_dofs
        self.current = onp.zeros(n) if self.current is None else onp.array(self.current, dtype=onp.float64)
        self.old = self.current.copy() if self.old is None else onp.array(self.old, dtype=onp.float64)
        if self.current.shape != (n,) or self.old.shape != (n,):
            raise ValueError(f"Solution vectors must have shape ({n},)")

    def field_view(self, field, slot="current"):
        """Writable view of one field block of a slot."""
        start, stop = self.dofmap.field_range(field)
        return getattr(self, slot)[start:stop]

    def initialize(self, field, fn: Callable):
        """Set a field in both slots by interpolating a pointwise function."""
        dofmap = self.dofmap
        f = dofmap.field_index(field)
        fe = dofmap.tables.elements[f]
        values = onp.zeros(dofmap.field_size(f))
        for element in range(dofmap.mesh.num_cells):
            values[dofmap.cell_dofs[f][element]] = fe.interpolate(dofmap.mesh.cell_coords(element), fn)
        self.field_view(field, "current")[:] = values
        self.field_view(field, "old")[:] = values

    def commit(self):
        """Accept the current iterate: copy it into the old slot."""
        self.old[:] = self.current
        self.steps_committed += 1
        logger.debug(f"Committed solution at t = {self.time}")
