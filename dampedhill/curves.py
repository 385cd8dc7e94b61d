"""This module contains the normalized characteristic curves of the muscle model: the active-force-length,
passive-force-length (parallel elastic element), tendon-force-length (serial elastic element) and force-velocity
curves, following the shapes of Haeufle et al. (2014) `[1]`, plus a singularity-free numerical inverse of the
force-velocity curve.

Any object exposing ``evaluate(x)`` and ``derivative(x)`` can stand in for one of these curves (see :class:`Curve`),
provided it is continuous and monotone over its documented domain.

References:
  [1] `Haeufle DFB, Guenther M, Bayer A, Schmitt S. Hill-type muscle model with serial damping and eccentric
  force-velocity relation. J Biomech. 2014 Apr 11;47(6):1531-6. doi: 10.1016/j.jbiomech.2014.02.009.`
"""

import torch as th
from typing import NamedTuple, Protocol, runtime_checkable
from torch.nn.parameter import Parameter


DTYPE = th.float64


def _as_parameter(value):
  return Parameter(th.tensor(value, dtype=DTYPE), requires_grad=False)


@runtime_checkable
class Curve(Protocol):
  """Capability shared by every characteristic curve: a value and a first derivative at a normalized input."""

  def evaluate(self, x: th.Tensor) -> th.Tensor:
    ...

  def derivative(self, x: th.Tensor) -> th.Tensor:
    ...


class ActiveForceLengthCurve(th.nn.Module):
  """Isometric force-length relationship of the contractile element. With :math:`u = \\tilde{l}_{CE} - 1`:

  .. math::
    f_{al} = \\exp(-|u / \\Delta W|^{\\nu})

  with distinct width :math:`\\Delta W` and exponent :math:`\\nu` on the ascending (:math:`u < 0`) and descending
  limbs.

  Args:
    width_ascending: `Float`, width of the ascending limb, in normalized fiber lengths.
    exponent_ascending: `Float`, exponent of the ascending limb.
    width_descending: `Float`, width of the descending limb, in normalized fiber lengths.
    exponent_descending: `Float`, exponent of the descending limb.
    min_norm_active_fiber_length: `Float`, lower support bound of the curve. The muscle model does not allow the
      normalized fiber length to fall below this value.
  """

  def __init__(
    self,
    width_ascending: float = 0.57,
    exponent_ascending: float = 4.,
    width_descending: float = 0.14,
    exponent_descending: float = 1.5,
    min_norm_active_fiber_length: float = 0.4,
  ):
    super().__init__()
    self.__name__ = 'ActiveForceLengthCurve'
    if min(width_ascending, width_descending) <= 0.:
      raise ValueError('Curve widths must be positive.')
    if min(exponent_ascending, exponent_descending) < 1.:
      raise ValueError('Curve exponents must be at least 1 for the derivative to be defined.')
    if not 0. < min_norm_active_fiber_length < 1.:
      raise ValueError('`min_norm_active_fiber_length` must be in the (0, 1) range.')
    self.width_ascending = _as_parameter(width_ascending)
    self.exponent_ascending = _as_parameter(exponent_ascending)
    self.width_descending = _as_parameter(width_descending)
    self.exponent_descending = _as_parameter(exponent_descending)
    self.min_norm_active_fiber_length = min_norm_active_fiber_length

  def _limb(self, x):
    ascending = th.less(x, 1.)
    width = th.where(ascending, self.width_ascending, self.width_descending)
    exponent = th.where(ascending, self.exponent_ascending, self.exponent_descending)
    return x - 1., width, exponent

  def evaluate(self, x: th.Tensor) -> th.Tensor:
    u, width, exponent = self._limb(x)
    return th.exp(-(th.abs(u) / width) ** exponent)

  def derivative(self, x: th.Tensor) -> th.Tensor:
    u, width, exponent = self._limb(x)
    z = th.abs(u) / width
    return -th.exp(-z ** exponent) * exponent * z ** (exponent - 1.) * th.sign(u) / width

  def forward(self, x):
    return self.evaluate(x)

  def get_save_config(self):
    return {
      'name': self.__name__,
      'width_ascending': self.width_ascending.item(),
      'exponent_ascending': self.exponent_ascending.item(),
      'width_descending': self.width_descending.item(),
      'exponent_descending': self.exponent_descending.item(),
      'min_norm_active_fiber_length': self.min_norm_active_fiber_length,
    }


class FiberForceLengthCurve(th.nn.Module):
  """Passive force-length relationship of the parallel elastic element:

  .. math::
    f_{pe} = k (\\tilde{l}_{CE} - \\tilde{l}_{PE,0})^{\\nu}

  for normalized fiber lengths above the slack length :math:`\\tilde{l}_{PE,0}`, and zero below. The stiffness
  :math:`k` is chosen so that the curve reaches `reference_force` at `norm_reference_length`.

  Args:
    norm_slack_length: `Float`, normalized fiber length at which passive force starts to develop.
    exponent: `Float`, exponent of the power law.
    reference_force: `Float`, normalized passive force reached at `norm_reference_length`.
    norm_reference_length: `Float`, normalized fiber length at which `reference_force` is reached.
  """

  def __init__(
    self,
    norm_slack_length: float = 0.9,
    exponent: float = 2.5,
    reference_force: float = 2.,
    norm_reference_length: float = 1.14,
  ):
    super().__init__()
    self.__name__ = 'FiberForceLengthCurve'
    if norm_reference_length <= norm_slack_length:
      raise ValueError('`norm_reference_length` must be larger than `norm_slack_length`.')
    if exponent < 1.:
      raise ValueError('`exponent` must be at least 1 for the derivative to be defined.')
    self.norm_slack_length = _as_parameter(norm_slack_length)
    self.exponent = _as_parameter(exponent)
    self.stiffness = _as_parameter(reference_force / (norm_reference_length - norm_slack_length) ** exponent)
    self.reference_force = reference_force
    self.norm_reference_length = norm_reference_length

  def evaluate(self, x: th.Tensor) -> th.Tensor:
    stretch = th.clip(x - self.norm_slack_length, min=0.)
    return self.stiffness * stretch ** self.exponent

  def derivative(self, x: th.Tensor) -> th.Tensor:
    stretch = th.clip(x - self.norm_slack_length, min=0.)
    return self.stiffness * self.exponent * stretch ** (self.exponent - 1.)

  def forward(self, x):
    return self.evaluate(x)

  def get_save_config(self):
    return {
      'name': self.__name__,
      'norm_slack_length': self.norm_slack_length.item(),
      'exponent': self.exponent.item(),
      'reference_force': self.reference_force,
      'norm_reference_length': self.norm_reference_length,
    }


class TendonForceLengthCurve(th.nn.Module):
  """Force-length relationship of the serial elastic element, as a function of the tendon length normalized by
  the tendon slack length. Below a strain of `nonlinear_strain` the curve is a power law, above it the curve is
  linear with a slope matching the power law at the transition (so the curve is continuously differentiable).

  Args:
    nonlinear_strain: `Float`, tendon strain at the end of the non-linear toe region.
    linear_strain: `Float`, strain increase that raises the force by `transition_force` in the linear region.
    transition_force: `Float`, normalized tendon force at the end of the toe region.
  """

  def __init__(self, nonlinear_strain: float = 0.0425, linear_strain: float = 0.017, transition_force: float = 0.4):
    super().__init__()
    self.__name__ = 'TendonForceLengthCurve'
    if min(nonlinear_strain, linear_strain, transition_force) <= 0.:
      raise ValueError('Tendon curve parameters must be positive.')
    self.nonlinear_strain = _as_parameter(nonlinear_strain)
    self.linear_strain = _as_parameter(linear_strain)
    self.transition_force = _as_parameter(transition_force)
    self.exponent = _as_parameter(nonlinear_strain / linear_strain)

  def evaluate(self, x: th.Tensor) -> th.Tensor:
    strain = x - 1.
    toe = self.transition_force * (th.clip(strain, min=0.) / self.nonlinear_strain) ** self.exponent
    linear = self.transition_force * (1. + (strain - self.nonlinear_strain) / self.linear_strain)
    return th.where(
      condition=strain <= 0.,
      input=th.zeros_like(toe),
      other=th.where(strain < self.nonlinear_strain, input=toe, other=linear),
      )

  def derivative(self, x: th.Tensor) -> th.Tensor:
    strain = x - 1.
    rel = th.clip(strain, min=0.) / self.nonlinear_strain
    toe = self.transition_force * self.exponent * rel ** (self.exponent - 1.) / self.nonlinear_strain
    linear = th.ones_like(toe) * self.transition_force / self.linear_strain
    return th.where(
      condition=strain <= 0.,
      input=th.zeros_like(toe),
      other=th.where(strain < self.nonlinear_strain, input=toe, other=linear),
      )

  def inverse(self, fse: th.Tensor) -> th.Tensor:
    """Normalized tendon length at which the curve produces the multiplier `fse`. Non-positive multipliers map to
    the slack length.
    """
    fse = th.clip(th.as_tensor(fse, dtype=DTYPE), min=0.)
    rel = fse / self.transition_force
    toe = self.nonlinear_strain * rel ** (1. / self.exponent)
    linear = self.nonlinear_strain + self.linear_strain * (rel - 1.)
    return 1. + th.where(rel < 1., input=toe, other=linear)

  def forward(self, x):
    return self.evaluate(x)

  def get_save_config(self):
    return {
      'name': self.__name__,
      'nonlinear_strain': self.nonlinear_strain.item(),
      'linear_strain': self.linear_strain.item(),
      'transition_force': self.transition_force.item(),
    }


class ForceVelocityCurve(th.nn.Module):
  """Force-velocity relationship of the contractile element, as a function of the fiber velocity normalized by the
  maximum contraction velocity (negative when shortening). The concentric branch is a Hill hyperbola reaching zero
  at maximum shortening velocity (:math:`v=-1`), the eccentric branch is a hyperbola saturating at
  `max_eccentric_force` at maximum lengthening velocity (:math:`v=1`). The eccentric curvature is derived so that
  both branches share the same slope at the isometric point.

  Outside of the `[-1, 1]` domain the curve is extended linearly with the slope it has at the domain boundaries, so
  that it remains strictly increasing everywhere.

  Args:
    concentric_curvature: `Float`, curvature of the concentric hyperbola (Hill's :math:`a/F_{iso}`).
    max_eccentric_force: `Float`, force multiplier at maximum lengthening velocity. Must be larger than `1`.
  """

  def __init__(self, concentric_curvature: float = 0.25, max_eccentric_force: float = 1.5):
    super().__init__()
    self.__name__ = 'ForceVelocityCurve'
    if concentric_curvature <= 0.:
      raise ValueError('`concentric_curvature` must be positive.')
    if max_eccentric_force <= 1.:
      raise ValueError('`max_eccentric_force` must be larger than 1.')
    isometric_slope = 1. + 1. / concentric_curvature
    self.concentric_curvature = concentric_curvature
    self.max_eccentric_force = max_eccentric_force
    self.d = _as_parameter(1. / concentric_curvature)
    self.c = _as_parameter(isometric_slope / (max_eccentric_force - 1.) - 1.)
    self.fv_max = _as_parameter(max_eccentric_force)
    self.concentric_slope_at_vmax = _as_parameter(1. / isometric_slope)
    self.eccentric_slope_at_vmax = _as_parameter((max_eccentric_force - 1.) / (1. + self.c.item()))

  @property
  def min_value(self) -> float:
    return 0.

  @property
  def max_value(self) -> float:
    return self.max_eccentric_force

  def evaluate(self, x: th.Tensor) -> th.Tensor:
    vc = th.clip(x, min=-1., max=0.)
    ve = th.clip(x, min=0., max=1.)
    concentric = (1. + vc) / (1. - self.d * vc)
    eccentric = self.fv_max - (self.fv_max - 1.) * (1. - ve) / (1. + self.c * ve)
    fv = th.where(th.less_equal(x, 0.), input=concentric, other=eccentric)
    fv = th.where(th.less(x, -1.), input=self.concentric_slope_at_vmax * (x + 1.), other=fv)
    return th.where(th.greater(x, 1.), input=self.fv_max + self.eccentric_slope_at_vmax * (x - 1.), other=fv)

  def derivative(self, x: th.Tensor) -> th.Tensor:
    vc = th.clip(x, min=-1., max=0.)
    ve = th.clip(x, min=0., max=1.)
    concentric = (1. + self.d) / (1. - self.d * vc) ** 2
    eccentric = (self.fv_max - 1.) * (1. + self.c) / (1. + self.c * ve) ** 2
    return th.where(th.less_equal(x, 0.), input=concentric, other=eccentric)

  def forward(self, x):
    return self.evaluate(x)

  def get_save_config(self):
    return {
      'name': self.__name__,
      'concentric_curvature': self.concentric_curvature,
      'max_eccentric_force': self.max_eccentric_force,
    }


class ForceVelocityInverseCurve(th.nn.Module):
  """Numerical inverse of a force-velocity curve over its `[-1, 1]` normalized velocity domain. The inverse is a
  monotone cubic Hermite spline built once from `n_nodes` control points of the forward curve, with node slopes equal
  to the reciprocal of the forward curve's slopes. Evaluating it never touches the forward curve, and never divides
  by the forward curve's slope at run time.

  Force-velocity multipliers outside the range of the forward curve are clamped to the nearest valid velocity, and
  flagged by :meth:`evaluate_clamped`.

  Args:
    force_velocity_curve: The forward :class:`ForceVelocityCurve` (or any curve with the same capability) to
      invert. It must be strictly increasing over `[-1, 1]`.
    n_nodes: `Integer`, the number of control points.
  """

  def __init__(self, force_velocity_curve: Curve, n_nodes: int = 501):
    super().__init__()
    self.__name__ = 'ForceVelocityInverseCurve'
    if n_nodes < 3:
      raise ValueError('At least 3 control points are required.')

    with th.no_grad():
      velocity = th.linspace(-1., 1., n_nodes, dtype=DTYPE)
      fv = force_velocity_curve.evaluate(velocity).to(DTYPE)
      dfv = force_velocity_curve.derivative(velocity).to(DTYPE)

    if not th.all(fv[1:] > fv[:-1]) or not th.all(dfv > 0.):
      raise ValueError('The force-velocity curve must be strictly increasing over [-1, 1] to be inverted.')

    self.n_nodes = n_nodes
    self.fv_nodes = Parameter(fv, requires_grad=False)
    self.velocity_nodes = Parameter(velocity, requires_grad=False)
    self.slope_nodes = Parameter(1. / dfv, requires_grad=False)

  @property
  def min_value(self) -> float:
    return self.fv_nodes[0].item()

  @property
  def max_value(self) -> float:
    return self.fv_nodes[-1].item()

  def _locate(self, fv):
    fv = th.as_tensor(fv, dtype=DTYPE, device=self.fv_nodes.device)
    invalid = th.isnan(fv)
    out_of_range = th.logical_or(invalid, th.logical_or(fv < self.fv_nodes[0], fv > self.fv_nodes[-1]))
    # NaN inputs are mapped to the isometric point
    fv = th.where(invalid, th.ones_like(fv), fv)
    fv = th.clip(fv, min=self.fv_nodes[0], max=self.fv_nodes[-1]).contiguous()
    k = th.clip(th.searchsorted(self.fv_nodes, fv) - 1, min=0, max=self.n_nodes - 2)
    h = self.fv_nodes[k + 1] - self.fv_nodes[k]
    t = (fv - self.fv_nodes[k]) / h
    return k, h, t, out_of_range

  def evaluate_clamped(self, fv: th.Tensor) -> tuple[th.Tensor, th.Tensor]:
    """Computes the normalized fiber velocity producing a force-velocity multiplier.

    Args:
      fv: `Tensor`, the force-velocity multiplier(s).

    Returns:
      - A `tensor` containing the normalized fiber velocities.
      - A boolean `tensor` flagging the inputs that were outside of the curve's range (or NaN), and were clamped.
    """
    k, h, t, out_of_range = self._locate(fv)
    t2 = t * t
    t3 = t2 * t
    h00 = 2 * t3 - 3 * t2 + 1
    h10 = t3 - 2 * t2 + t
    h01 = -2 * t3 + 3 * t2
    h11 = t3 - t2
    velocity = h00 * self.velocity_nodes[k] + h10 * h * self.slope_nodes[k] \
      + h01 * self.velocity_nodes[k + 1] + h11 * h * self.slope_nodes[k + 1]
    return velocity, out_of_range

  def evaluate(self, fv: th.Tensor) -> th.Tensor:
    return self.evaluate_clamped(fv)[0]

  def derivative(self, fv: th.Tensor) -> th.Tensor:
    k, h, t, _ = self._locate(fv)
    t2 = t * t
    dh00 = 6 * t2 - 6 * t
    dh10 = 3 * t2 - 4 * t + 1
    dh01 = -6 * t2 + 6 * t
    dh11 = 3 * t2 - 2 * t
    return (dh00 * self.velocity_nodes[k] + dh01 * self.velocity_nodes[k + 1]) / h \
      + dh10 * self.slope_nodes[k] + dh11 * self.slope_nodes[k + 1]

  def forward(self, fv):
    return self.evaluate(fv)


class CurveSet(NamedTuple):
  """The four characteristic curves of a muscle model."""
  active_force_length: Curve
  fiber_force_length: Curve
  tendon_force_length: Curve
  force_velocity: Curve
