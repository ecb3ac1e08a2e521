"""Built-in weak forms.

This module provides ready-to-use pointwise integrands for the assembly
machinery of :mod:`femgax.fem`:

    Poisson: Steady diffusion with a constant source.
    Boussinesq: Transient Rayleigh-Benard convection in the Boussinesq
        approximation, fields U, V, P, T.

Example:
    >>> from femgax.physics import Boussinesq
    >>> from femgax.fem.assembler import LocalAssembler
    >>> local = LocalAssembler(Boussinesq())
"""
import jax.numpy as np

from femgax.fem.weak_form import WeakForm


class Poisson(WeakForm):
    """Steady Poisson problem.

    Solves:
        -div(grad u) = f  in Omega

    so that the residual integrand is ``grad u . grad phi - f phi``.

    Args:
        source (float): Constant right-hand side ``f``.
        field_name (str): Name of the unknown.
    """

    default_coefficients = {"source": 0.0}

    def __init__(self, source=0.0, field_name="u"):
        self.field_names = (field_name,)
        self.default_coefficients = {"source": float(source)}

    def integrand(self, u, grad_u, x, coefficients):
        source = -coefficients["source"] * np.ones_like(u)
        return source, grad_u


class Boussinesq(WeakForm):
    """Rayleigh-Benard convection in the Boussinesq approximation.

    Solves, with ``nu = sqrt(Pr / Ra)`` and ``kappa = 1 / sqrt(Ra Pr)``:

        dT/dt + V . grad T - kappa lap T = 0
        dV/dt + (V . grad) V - nu div(grad V + grad V^T) + grad P = beta T j
        div V = 0

    U, V and T are integrated in time with the trapezoidal rule; the
    continuity equation is enforced at the current state.

    Args:
        prandtl (float): Prandtl number.
        rayleigh (float): Rayleigh number.
        beta (float): Buoyancy coefficient.
    """

    field_names = ("U", "V", "P", "T")
    transient_fields = ("U", "V", "T")
    default_coefficients = {"prandtl": 0.015, "rayleigh": 3000.0, "beta": 1.0}

    def __init__(self, prandtl=0.015, rayleigh=3000.0, beta=1.0):
        self.default_coefficients = {"prandtl": float(prandtl), "rayleigh": float(rayleigh),
                                     "beta": float(beta)}

    def integrand(self, u, grad_u, x, coefficients):
        pr, ra, beta = coefficients["prandtl"], coefficients["rayleigh"], coefficients["beta"]
        nu = np.sqrt(pr / ra)
        kappa = 1.0 / np.sqrt(ra * pr)
        vel, pressure, temp = u[0:2], u[2], u[3]
        grad_v, grad_t = grad_u[0:2], grad_u[3]

        # (2, dim)
        viscous = nu * (grad_v + grad_v.T) - pressure * np.eye(2)
        convection = grad_v @ vel
        buoyancy = np.array([0.0, beta * temp])

        source = np.concatenate([
            convection - buoyancy,
            np.array([-np.trace(grad_v)]),
            np.array([vel @ grad_t]),
        ])
        flux = np.concatenate([
            viscous,
            np.zeros((1, grad_u.shape[1])),
            (kappa * grad_t)[None, :],
        ])
        return source, flux
