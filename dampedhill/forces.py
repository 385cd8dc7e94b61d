"""Force and stiffness computations of the fiber, and their projection onto the tendon. All functions are pure and
vectorized. They do not raise on floating-point floor violations: they return `NaN` instead, since they are called
from performance-sensitive paths where the caller decides what to do with such values.
"""

import torch as th
from dampedhill.state import FiberForces


NUMERIC_FLOOR = 1e-12


def calc_fiber_force(fiso, a, fal, fv, fpe, damping, norm_fiber_velocity) -> FiberForces:
  """Computes the fiber force (N) along the fiber direction, and its decomposition into an active part, a passive
  elastic (conservative) part and a passive damping (non-conservative) part.

  Args:
    fiso: `Tensor`, the maximum isometric force (N).
    a: `Tensor`, the activation.
    fal: `Tensor`, the active-force-length multiplier.
    fv: `Tensor`, the force-velocity multiplier.
    fpe: `Tensor`, the passive-force-length multiplier.
    damping: `Tensor`, the normalized fiber damping coefficient.
    norm_fiber_velocity: `Tensor`, the fiber velocity normalized by the maximum contraction velocity.

  Returns:
    A :class:`dampedhill.state.FiberForces` tuple.
  """
  active = fiso * (a * fal * fv)
  passive_elastic = fiso * fpe
  passive_damping = fiso * damping * norm_fiber_velocity
  total = active + passive_elastic + passive_damping
  return FiberForces(total=total, active=active, passive_elastic=passive_elastic, passive_damping=passive_damping)


def calc_fiber_stiffness(fiso, a, fv, norm_fiber_length, optimal_fiber_length, active_force_length_curve,
                         fiber_force_length_curve):
  """Stiffness (N/m) of the fiber along its own direction, at fixed activation and fiber velocity."""
  dfal_dlce = active_force_length_curve.derivative(norm_fiber_length) / optimal_fiber_length
  dfpe_dlce = fiber_force_length_curve.derivative(norm_fiber_length) / optimal_fiber_length
  return fiso * (a * dfal_dlce * fv + dfpe_dlce)


def calc_dfiber_force_dnorm_fiber_velocity(fiso, a, fal, damping, norm_fiber_velocity, force_velocity_curve):
  """Partial derivative (N) of the fiber force with respect to the normalized fiber velocity."""
  dfv = force_velocity_curve.derivative(norm_fiber_velocity)
  return fiso * (a * fal * dfv + damping)


def calc_dfiber_force_at_dfiber_length(fiber_force, fiber_stiffness, fiber_length, sin_phi, cos_phi, pennation_model):
  """Partial derivative of the fiber force projected onto the tendon, with respect to small changes in fiber
  length along the fiber. This accounts for the change in pennation angle with fiber length.
  """
  dphi_dlce = pennation_model.calc_dpennation_angle_dfiber_length(fiber_length)
  dcos_phi_dlce = -sin_phi * dphi_dlce
  return fiber_stiffness * cos_phi + fiber_force * dcos_phi_dlce


def calc_dfiber_force_at_dfiber_length_at(dfiber_force_at_dlce, sin_phi, cos_phi, fiber_length, pennation_model):
  """Stiffness (N/m) of the fiber along the tendon direction, from the output of
  :func:`calc_dfiber_force_at_dfiber_length`.
  """
  dphi_dlce = pennation_model.calc_dpennation_angle_dfiber_length(fiber_length)
  dlce_at_dlce = pennation_model.calc_dfiber_length_along_tendon_dfiber_length(
    fiber_length, sin_phi, cos_phi, dphi_dlce)
  return th.where(
    th.abs(dlce_at_dlce) > NUMERIC_FLOOR,
    input=dfiber_force_at_dlce / dlce_at_dlce,
    other=th.full_like(dlce_at_dlce, float('nan')),
    )


def calc_dtendon_force_dfiber_length(dtendon_force_dtl, fiber_length, sin_phi, cos_phi, pennation_model):
  """Partial derivative of the tendon force with respect to small changes in fiber length."""
  dphi_dlce = pennation_model.calc_dpennation_angle_dfiber_length(fiber_length)
  dtl_dlce = pennation_model.calc_dtendon_length_dfiber_length(fiber_length, sin_phi, cos_phi, dphi_dlce)
  return dtendon_force_dtl * dtl_dlce


def calc_tendon_stiffness(fiso, norm_tendon_length, tendon_slack_length, tendon_force_length_curve):
  """Stiffness (N/m) of the tendon."""
  return fiso * tendon_force_length_curve.derivative(norm_tendon_length) / tendon_slack_length


def calc_musculotendon_stiffness(fiber_stiffness_along_tendon, tendon_stiffness, rigid_tendon: bool = False):
  """Stiffness (N/m) of the fiber and tendon in series. With a rigid tendon, this is the fiber stiffness along the
  tendon.
  """
  if rigid_tendon:
    return fiber_stiffness_along_tendon
  total = fiber_stiffness_along_tendon + tendon_stiffness
  return th.where(
    th.abs(total) > NUMERIC_FLOOR,
    input=fiber_stiffness_along_tendon * tendon_stiffness / total,
    other=th.zeros_like(total),
    )


def calc_activation(fiso, tendon_force, cos_phi, fal, fv, fpe, damping, norm_fiber_velocity):
  """Inverts the force balance to find the activation that produces a given tendon force at a fixed kinematic
  state. This is a direct algebraic inversion, valid only where the active force capacity
  :math:`f_{iso} f_{al} f_v` is above the numeric floor. Elsewhere the returned activation is `NaN`.
  """
  capacity = fiso * fal * fv
  required = tendon_force / cos_phi - fiso * (fpe + damping * norm_fiber_velocity)
  valid = th.logical_and(capacity > NUMERIC_FLOOR * fiso, th.abs(cos_phi) > NUMERIC_FLOOR)
  return th.where(
    valid,
    input=required / th.where(valid, input=capacity, other=th.ones_like(capacity)),
    other=th.full_like(capacity, float('nan')),
    )
