import torch as th
from dampedhill.errors import ActivationSingularity
from dampedhill.state import FiberVelocitySolution, NormalizedMultipliers


DTYPE = th.float64


def calc_fv(a, fal, fp, fse, cos_phi):
  """Force-velocity multiplier that balances the tendon force for an undamped fiber:

  .. math::
    f_v = \\frac{f_{se} / \\cos(\\phi) - f_p}{a f_{al}}

  Args:
    a: `Tensor`, the activation.
    fal: `Tensor`, the active-force-length multiplier.
    fp: `Tensor`, the total normalized parallel fiber force.
    fse: `Tensor`, the tendon-force-length multiplier.
    cos_phi: `Tensor`, the cosine of the pennation angle.

  Returns:
    A `tensor` containing the force-velocity multiplier(s).
  """
  return (fse / cos_phi - fp) / (a * fal)


class DampedFiberVelocitySolver:
  """Solves the fiber force-velocity equilibrium at a fixed fiber length, for the normalized fiber velocity
  :math:`v`:

  .. math::
    a f_{al} f_v(v) + f_{pe} + \\beta v = f_{se} / \\cos(\\phi)

  For muscles without damping (:math:`\\beta = 0`) the solution is in closed form, through the inverse
  force-velocity curve, and then polished with Newton steps on the forward curve. For damped muscles the equation
  is solved with a Newton iteration seeded at the isometric point, reseeded with the undamped solution if the first
  few steps do not reduce the residual, and protected by a bisection over the `[-1, 1]` normalized velocity domain if
  a Newton step leaves the bracket around the root.

  The solver holds configuration only; :meth:`solve` is a pure function of its inputs.

  Args:
    force_velocity_curve: The forward force-velocity curve.
    force_velocity_inverse_curve: The :class:`dampedhill.curves.ForceVelocityInverseCurve` of that curve.
    tolerance: `Float`, tolerance on the normalized force residual.
    max_iterations: `Integer`, the iteration cap of the Newton iteration.
    singularity_floor: `Float`, smallest :math:`a f_{al}` product for which the closed-form solution is computed.
    fallback_after: `Integer`, the number of Newton steps after which a non-decreasing residual triggers a reseed.
  """

  def __init__(
    self,
    force_velocity_curve,
    force_velocity_inverse_curve,
    tolerance: float = 1e-9,
    max_iterations: int = 50,
    singularity_floor: float = 1e-8,
    fallback_after: int = 3,
  ):
    if tolerance <= 0.:
      raise ValueError('`tolerance` must be positive.')
    if max_iterations < 1:
      raise ValueError('`max_iterations` must be at least 1.')
    self.fv_curve = force_velocity_curve
    self.fv_inverse_curve = force_velocity_inverse_curve
    self.tolerance = tolerance
    self.max_iterations = max_iterations
    self.singularity_floor = singularity_floor
    self.fallback_after = fallback_after

  def __call__(self, activation, multipliers: NormalizedMultipliers, cos_phi, damping, **kwargs):
    return self.solve(activation, multipliers, cos_phi, damping, **kwargs)

  def solve(
    self,
    activation,
    multipliers: NormalizedMultipliers,
    cos_phi,
    damping,
    raise_on_singularity: bool = True,
  ) -> FiberVelocitySolution:
    """Computes the normalized fiber velocity satisfying the equilibrium equation.

    Args:
      activation: `Tensor`, the activation.
      multipliers: A :class:`dampedhill.state.NormalizedMultipliers` tuple evaluated at the fixed fiber length.
      cos_phi: `Tensor`, the cosine of the pennation angle.
      damping: `Float` or `tensor`, the normalized damping coefficient. A value of `0` disables damping.
      raise_on_singularity: `Boolean`, whether an undamped element with :math:`a f_{al}` below the floor raises
        an error. If `False`, such elements are returned at the isometric point and flagged as not converged.

    Returns:
      A :class:`dampedhill.state.FiberVelocitySolution` tuple. Elements whose residual is above tolerance are
      flagged as not converged; no error is raised for them.

    Raises:
      ActivationSingularity: If `raise_on_singularity` is `True` and an undamped element is singular.
    """
    a, fal, fpe, fse, cos_phi, damping = th.broadcast_tensors(*[
      th.as_tensor(x, dtype=DTYPE) for x in (activation, *multipliers, cos_phi, damping)])
    afal = a * fal
    target = fse / cos_phi - fpe
    undamped = damping <= 0.
    singular = afal < self.singularity_floor

    if raise_on_singularity and th.any(th.logical_and(undamped, singular)):
      raise ActivationSingularity(
        f'Activation times active-force-length multiplier fell to {afal.min().item():.3g}, below the floor of '
        f'{self.singularity_floor:.3g}. Increase `min_activation` or enable fiber damping.')

    def residual(v):
      return afal * self.fv_curve.evaluate(v) + damping * v - target

    # closed-form solution of the undamped equation
    ones = th.ones_like(afal)
    fv = calc_fv(th.where(singular, input=ones, other=a), th.where(singular, input=ones, other=fal), fpe, fse, cos_phi)
    v_closed, clamped = self.fv_inverse_curve.evaluate_clamped(fv)
    v_closed = th.where(singular, input=th.zeros_like(v_closed), other=v_closed)

    # Newton iteration: seeded at the isometric point for damped fibers, and at the closed-form solution for
    # undamped fibers, where it only polishes the interpolation error of the inverse curve
    v = th.where(undamped, input=v_closed, other=th.zeros_like(afal))
    lo = -th.ones_like(afal)
    hi = th.ones_like(afal)
    bracketed = th.logical_and(residual(lo) <= 0., residual(hi) >= 0.)
    r = residual(v)
    r0 = th.abs(r)
    done = th.logical_or(undamped & (clamped | singular), th.abs(r) <= self.tolerance)

    for iteration in range(self.max_iterations):
      if th.all(done):
        break

      if iteration == self.fallback_after:
        reseed = ~done & ~undamped & (th.abs(r) >= r0) & ~singular
        v = th.where(reseed, input=v_closed, other=v)
        r = residual(v)
        done = done | (th.abs(r) <= self.tolerance)

      lo = th.where(bracketed & (r < 0.), input=th.maximum(lo, v), other=lo)
      hi = th.where(bracketed & (r > 0.), input=th.minimum(hi, v), other=hi)
      slope = afal * self.fv_curve.derivative(v) + damping
      slope = th.where(th.abs(slope) > 0., input=slope, other=th.ones_like(slope))
      v_newton = v - r / slope
      out_of_bracket = bracketed & ((v_newton <= lo) | (v_newton >= hi))
      v_new = th.where(out_of_bracket, input=0.5 * (lo + hi), other=v_newton)

      v = th.where(done, input=v, other=v_new)
      r = residual(v)
      done = done | (th.abs(r) <= self.tolerance)

    error = residual(v)
    converged = th.abs(error) <= self.tolerance
    converged = converged & ~(undamped & (clamped | singular))
    return FiberVelocitySolution(norm_fiber_velocity=v, error=error, converged=converged)
