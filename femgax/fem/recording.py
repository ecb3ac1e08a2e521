"""Per-element differentiation recordings and Jacobian extraction.

Assembly talks to automatic differentiation only through the
:class:`DifferentiationTape` interface:

    begin_recording -> declare_independents -> declare_dependents
        -> extract_jacobian -> end_recording

A tape records, for exactly one element, the unknown blocks (independents),
the residual function and the residual blocks it produces (dependents). The
recording is a process-wide exclusive resource: only one may be open at a
time. :class:`JaxTape` differentiates with forward-mode JAX,
:class:`FiniteDifferenceTape` with central differences; either can be handed
to the assembler without touching assembly code.
"""
import functools
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple

import jax
import jax.numpy as np
import numpy as onp

from femgax.errors import RecordingError
from femgax.fem import logger

from jax import config

config.update("jax_enable_x64", True)

_active_lock = threading.Lock()
_active_tape = None


@dataclass
class Recording:
    """Operation log of one element.

    Attributes:
        independents (numpy.ndarray): Flattened unknown values.
        independent_blocks (tuple): Sizes of the unknown blocks in declared order.
        fn (Callable): Function mapping the independents (plus ``args``) to
            the flattened dependents.
        args (tuple): Extra, non-differentiated arguments of ``fn``.
        dependents (numpy.ndarray): Values of ``fn`` at the independents.
        dependent_blocks (tuple): Sizes of the residual blocks in declared order.
    """

    independents: Optional[onp.ndarray] = None
    independent_blocks: Tuple[int, ...] = ()
    fn: Optional[Callable] = None
    args: Tuple[Any, ...] = ()
    dependents: Optional[onp.ndarray] = None
    dependent_blocks: Tuple[int, ...] = ()
    tape: Any = field(default=None, repr=False)

    @property
    def shape(self):
        return sum(self.dependent_blocks), sum(self.independent_blocks)


class DifferentiationTape(ABC):
    """Capability interface of a per-element differentiation strategy."""

    def __init__(self):
        self._recording = None

    @property
    def is_recording(self):
        return self._recording is not None

    def begin_recording(self):
        """Open a recording; fails if any tape in the process has one open."""
        global _active_tape
        with _active_lock:
            if _active_tape is not None:
                raise RecordingError("A differentiation recording is already open")
            _active_tape = self
        self._recording = Recording(tape=self)
        return self._recording

    def declare_independents(self, values, block_sizes=None):
        """Tag the unknowns of the element, blocked by field in declared order."""
        recording = self._require_open()
        values = onp.asarray(values, dtype=onp.float64).reshape(-1)
        if block_sizes is None:
            block_sizes = (values.size,)
        if sum(block_sizes) != values.size:
            raise RecordingError(
                f"Independent blocks {tuple(block_sizes)} do not add up to {values.size} values")
        recording.independents = values
        recording.independent_blocks = tuple(int(b) for b in block_sizes)

    def declare_dependents(self, fn, *args, block_sizes=None):
        """Evaluate ``fn(independents, *args)`` and tag its output as the residual.

        Returns:
            numpy.ndarray: The dependent values.
        """
        recording = self._require_open()
        if recording.independents is None:
            raise RecordingError("Independents must be declared before dependents")
        values = onp.asarray(fn(recording.independents, *args)).reshape(-1)
        if block_sizes is None:
            block_sizes = recording.independent_blocks
        if sum(block_sizes) != values.size:
            raise RecordingError(
                f"Dependent blocks {tuple(block_sizes)} do not add up to {values.size} values")
        recording.fn = fn
        recording.args = args
        recording.dependents = values
        recording.dependent_blocks = tuple(int(b) for b in block_sizes)
        return values

    def extract_jacobian(self):
        """Dense Jacobian ``d dependents / d independents``, shape (n_dep, n_indep)."""
        recording = self._require_open()
        if recording.fn is None:
            raise RecordingError("No dependents have been declared")
        jac = onp.asarray(self._jacobian(recording), dtype=onp.float64)
        return jac.reshape(recording.shape)

    def end_recording(self):
        """Close and discard the recording, releasing the process-wide slot."""
        global _active_tape
        self._require_open()
        self._recording = None
        with _active_lock:
            _active_tape = None

    def _require_open(self):
        if self._recording is None:
            raise RecordingError("No differentiation recording is open on this tape")
        return self._recording

    @abstractmethod
    def _jacobian(self, recording):
        """Differentiate ``recording.fn`` at ``recording.independents``."""


def value_and_jacfwd(f, x):
    """Forward-mode value and Jacobian, pushing the identity basis through jvp."""
    pushfwd = functools.partial(jax.jvp, f, (x,))
    basis = np.eye(x.size, dtype=x.dtype)
    y, jac = jax.vmap(pushfwd, out_axes=(None, -1))((basis,))
    return y, jac


class JaxTape(DifferentiationTape):
    """Forward-mode AD tape built on ``jax.jvp``.

    Jacobian functions are compiled once per recorded function and reused for
    every element sharing it.
    """

    def __init__(self):
        super().__init__()
        self._compiled = {}

    def _jacobian(self, recording):
        jac_fn = self._compiled.get(recording.fn)
        if jac_fn is None:
            fn = recording.fn

            def jac_fn(x, *args):
                return value_and_jacfwd(lambda y: fn(y, *args), x)[1]

            jac_fn = jax.jit(jac_fn)
            self._compiled[recording.fn] = jac_fn
            logger.debug(f"JaxTape: compiled Jacobian for {getattr(fn, '__name__', fn)}")
        return jac_fn(np.asarray(recording.independents), *recording.args)


class FiniteDifferenceTape(DifferentiationTape):
    """Central-difference tape; slow but independent of any AD machinery.

    Args:
        step (float): Relative perturbation, scaled by ``1 + |x_j|``.
    """

    def __init__(self, step=1e-6):
        super().__init__()
        self.step = step

    def _jacobian(self, recording):
        x = recording.independents
        n_dep, n_indep = recording.shape
        jac = onp.empty((n_dep, n_indep))
        for j in range(n_indep):
            h = self.step * (1.0 + abs(x[j]))
            xp = x.copy()
            xm = x.copy()
            xp[j] += h
            xm[j] -= h
            fp = onp.asarray(recording.fn(xp, *recording.args)).reshape(-1)
            fm = onp.asarray(recording.fn(xm, *recording.args)).reshape(-1)
            jac[:, j] = (fp - fm) / (2.0 * h)
        return jac


class AutoDiffJacobianExtractor:
    """Turns an open element recording into a dense local Jacobian block.

    Extraction validates the declared block layout against the layout the
    caller will scatter with, then closes the recording, so each element opens
    and closes exactly once.
    """

    def extract(self, recording, expected_blocks=None):
        """Extract the Jacobian of a recording and end it.

        Args:
            recording (Recording): Open recording returned by the local assembler.
            expected_blocks (tuple, optional): Per-field block sizes of the
                element's dof layout.

        Returns:
            numpy.ndarray: Row-major local Jacobian, shape (n_dep, n_indep).
        """
        tape = recording.tape
        try:
            if expected_blocks is not None:
                expected_blocks = tuple(int(b) for b in expected_blocks)
                if (recording.dependent_blocks != expected_blocks
                        or recording.independent_blocks != expected_blocks):
                    raise RecordingError(
                        f"Recorded blocks dep={recording.dependent_blocks}, "
                        f"indep={recording.independent_blocks} do not match the "
                        f"element layout {expected_blocks}")
            return tape.extract_jacobian()
        finally:
            if tape.is_recording:
                tape.end_recording()
