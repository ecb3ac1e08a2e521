"""Weak-form integrands and the parameters threaded into element assembly.

A weak form is described pointwise. At every quadrature point it receives the
interpolated field values ``u`` (num_fields,), their gradients ``grad_u``
(num_fields, dim), the physical point ``x`` and a dictionary of named
coefficients, and returns

    source (num_fields,)       multiplied by the test function phi
    flux   (num_fields, dim)   dotted with the test gradient grad(phi)

so that the element residual of field ``f`` reads

    R_f,i = sum_q w_q |J_q| (source_f phi_i + flux_f . grad(phi_i)).

Fields listed in ``transient_fields`` are integrated with the trapezoidal
average of the current and old evaluations plus the backward difference
``(u - u_old) / dt * phi``.
"""
from dataclasses import dataclass, field
from typing import Dict, Tuple

import jax.numpy as np


@dataclass(frozen=True)
class AssemblyParams:
    """Explicit per-pass context of an assembly.

    Attributes:
        dt (float): Time step size; ignored when no field is transient.
        time (float): Time level passed to boundary predicates.
        coefficients (dict): Named physical coefficients; they override the
            weak form's defaults.
    """

    dt: float = 1.0
    time: float = 0.0
    coefficients: Dict[str, float] = field(default_factory=dict)

    def replace(self, **changes):
        values = {"dt": self.dt, "time": self.time, "coefficients": dict(self.coefficients)}
        values.update(changes)
        return AssemblyParams(**values)


class WeakForm:
    """Base class of pointwise weak-form integrands.

    Subclasses set ``field_names``, optionally ``transient_fields`` and
    ``default_coefficients``, and implement :meth:`integrand`.
    """

    field_names: Tuple[str, ...] = ()
    transient_fields: Tuple[str, ...] = ()
    default_coefficients: Dict[str, float] = {}

    def integrand(self, u, grad_u, x, coefficients):
        """Return ``(source, flux)`` at one quadrature point."""
        raise NotImplementedError

    def coefficients(self, params):
        merged = dict(self.default_coefficients)
        merged.update(params.coefficients)
        return {k: float(v) for k, v in merged.items()}

    def transient_mask(self, field_names):
        return np.array([name in self.transient_fields for name in field_names])
