"""Fiber-length equilibrium of a musculotendon unit with a compliant tendon.

At a given activation, path length and path lengthening speed, the fiber length is found such that the fiber force
projected onto the tendon equals the tendon force. The outer iteration is a Newton-Raphson iteration over the fiber
length. Within each iteration the path lengthening speed is shared between the fiber and the tendon in proportion to
their stiffnesses, so that the residual remains a function of the fiber length only. The derivative of the residual
is analytic at a fixed fiber velocity, plus the fiber force change due to the shared velocity changing with fiber
length, which is taken by central difference.
"""

import logging
import torch as th
from typing import NamedTuple
from dampedhill import forces
from dampedhill.curves import CurveSet
from dampedhill.state import (
  EquilibriumInputs,
  FiberEquilibriumResult,
  FiberState,
  MuscleGeometry,
  NormalizedMultipliers,
  SolveStatus,
)


logger = logging.getLogger(__name__)

DTYPE = th.float64
NUMERIC_FLOOR = 1e-12
FINITE_DIFFERENCE_STEP = 1e-7


def split_path_velocity(path_lengthening_speed, fiber_stiffness_along_tendon, tendon_stiffness, norm_tendon_length):
  """Shares the path lengthening speed between the fiber (projected onto the tendon) and the tendon, in inverse
  proportion to their stiffnesses:

  .. math::
    \\dot{l}_{CE,AT} = \\frac{k_T}{k_{CE,AT} + k_T} \\dot{l}_{MT}

  If the tendon is slack, or if the stiffness sum is not positive, the entire path velocity is assigned to the fiber.

  Args:
    path_lengthening_speed: `Tensor`, the path lengthening speed (m/s).
    fiber_stiffness_along_tendon: `Tensor`, the fiber stiffness along the tendon (N/m).
    tendon_stiffness: `Tensor`, the tendon stiffness (N/m).
    norm_tendon_length: `Tensor`, the tendon length normalized by the tendon slack length.

  Returns:
    A `tensor` containing the fiber velocity along the tendon (m/s).
  """
  total = fiber_stiffness_along_tendon + tendon_stiffness
  share = th.logical_and(total > NUMERIC_FLOOR, norm_tendon_length > 1.)
  ratio = tendon_stiffness / th.where(share, input=total, other=th.ones_like(total))
  return th.where(share, input=ratio * path_lengthening_speed, other=path_lengthening_speed)


class _Evaluation(NamedTuple):
  error: th.Tensor
  derror: th.Tensor
  fiber_velocity: th.Tensor
  multipliers: NormalizedMultipliers
  pennation_angle: th.Tensor
  cos_phi: th.Tensor
  tendon_force: th.Tensor


class FiberLengthEquilibriumEstimator:
  """Newton-Raphson estimator of the equilibrium fiber length and velocity.

  Args:
    geometry: A :class:`dampedhill.state.MuscleGeometry` tuple.
    max_isometric_force: `Float` or `tensor`, the maximum isometric force (N).
    max_contraction_velocity: `Float` or `tensor`, the maximum contraction velocity, in optimal fiber lengths per
      second.
    pennation_model: A :class:`dampedhill.pennation.FixedWidthPennationModel` built from the same geometry.
    curves: A :class:`dampedhill.curves.CurveSet` tuple.
    velocity_solver: A :class:`dampedhill.velocity.DampedFiberVelocitySolver`, used to refine the reported fiber
      velocity once the fiber length is found.
    ignore_tendon_compliance: `Boolean`, if `True` the tendon velocity is zero and the whole path lengthening speed
      is assigned to the fiber.
    max_step: `Float`, the largest fiber length change allowed per iteration, in optimal fiber lengths.
  """

  def __init__(
    self,
    geometry: MuscleGeometry,
    max_isometric_force,
    max_contraction_velocity,
    pennation_model,
    curves: CurveSet,
    velocity_solver,
    ignore_tendon_compliance: bool = False,
    max_step: float = 0.25,
  ):
    self.optimal_fiber_length = th.as_tensor(geometry.optimal_fiber_length, dtype=DTYPE)
    self.tendon_slack_length = th.as_tensor(geometry.tendon_slack_length, dtype=DTYPE)
    self.max_isometric_force = th.as_tensor(max_isometric_force, dtype=DTYPE)
    # absolute maximum contraction velocity (m/s)
    self.vmax = th.as_tensor(max_contraction_velocity, dtype=DTYPE) * self.optimal_fiber_length
    self.pennation_model = pennation_model
    self.curves = curves
    self.velocity_solver = velocity_solver
    self.ignore_tendon_compliance = ignore_tendon_compliance
    self.max_step = max_step

  def __call__(self, inputs: EquilibriumInputs, **kwargs) -> FiberEquilibriumResult:
    return self.estimate(inputs, **kwargs)

  def minimum_fiber_length(self) -> th.Tensor:
    """The larger of the pennation model's geometric minimum and the lower support bound of the active
    force-length curve.
    """
    curve_minimum = self.optimal_fiber_length * self.curves.active_force_length.min_norm_active_fiber_length
    return th.maximum(self.pennation_model.minimum_fiber_length(), curve_minimum)

  def minimum_fiber_length_along_tendon(self) -> th.Tensor:
    min_length = self.minimum_fiber_length()
    return min_length * th.cos(self.pennation_model.calc_pennation_angle(min_length))

  def is_fiber_state_clamped(self, fiber_length, fiber_velocity) -> th.Tensor:
    """A fiber is clamped if it sits at (or below) its minimum length and is still shortening."""
    return th.logical_and(fiber_length <= self.minimum_fiber_length(), fiber_velocity <= 0.)

  def clamp_fiber_length(self, fiber_length) -> th.Tensor:
    return th.maximum(th.as_tensor(fiber_length, dtype=DTYPE), self.minimum_fiber_length())

  def _fiber_stiffness_along_tendon(self, a, fal, fpe, damping, norm_fiber_velocity, fiber_length, sin_phi, cos_phi):
    fv = self.curves.force_velocity.evaluate(norm_fiber_velocity)
    fiber_force = forces.calc_fiber_force(
      self.max_isometric_force, a, fal, fv, fpe, damping, norm_fiber_velocity).total
    k_fiber = forces.calc_fiber_stiffness(
      self.max_isometric_force, a, fv, fiber_length / self.optimal_fiber_length, self.optimal_fiber_length,
      self.curves.active_force_length, self.curves.fiber_force_length)
    dfiber_force_at_dlce = forces.calc_dfiber_force_at_dfiber_length(
      fiber_force, k_fiber, fiber_length, sin_phi, cos_phi, self.pennation_model)
    return forces.calc_dfiber_force_at_dfiber_length_at(
      dfiber_force_at_dlce, sin_phi, cos_phi, fiber_length, self.pennation_model)

  def _fiber_velocity(self, a, fiber_length, path_length, path_lengthening_speed, damping):
    """Fiber velocity (m/s) assigned by the stiffness split of the path lengthening speed at a trial fiber length."""
    _, sin_phi, cos_phi = self.pennation_model.calc_pennation_trig(fiber_length)
    if self.ignore_tendon_compliance:
      return self.pennation_model.calc_fiber_velocity(cos_phi, path_lengthening_speed)

    norm_fiber_length = fiber_length / self.optimal_fiber_length
    tendon_length = self.pennation_model.calc_tendon_length(cos_phi, fiber_length, path_length)
    norm_tendon_length = tendon_length / self.tendon_slack_length
    fal = self.curves.active_force_length.evaluate(norm_fiber_length)
    fpe = self.curves.fiber_force_length.evaluate(norm_fiber_length)
    k_tendon = forces.calc_tendon_stiffness(
      self.max_isometric_force, norm_tendon_length, self.tendon_slack_length, self.curves.tendon_force_length)

    # isometric split first, then one refinement at the resulting velocity
    norm_fiber_velocity = th.zeros_like(fiber_length)
    for _ in range(2):
      k_fiber_at = self._fiber_stiffness_along_tendon(
        a, fal, fpe, damping, norm_fiber_velocity, fiber_length, sin_phi, cos_phi)
      k_fiber_at = th.where(th.isnan(k_fiber_at), input=th.zeros_like(k_fiber_at), other=k_fiber_at)
      fiber_velocity_at = split_path_velocity(path_lengthening_speed, k_fiber_at, k_tendon, norm_tendon_length)
      fiber_velocity = self.pennation_model.calc_fiber_velocity(cos_phi, fiber_velocity_at)
      norm_fiber_velocity = fiber_velocity / self.vmax
    return fiber_velocity

  def _evaluate(self, a, fiber_length, path_length, path_lengthening_speed, damping, static_solution):
    fiso = self.max_isometric_force
    lopt = self.optimal_fiber_length
    phi, sin_phi, cos_phi = self.pennation_model.calc_pennation_trig(fiber_length)
    tendon_length = self.pennation_model.calc_tendon_length(cos_phi, fiber_length, path_length)
    norm_fiber_length = fiber_length / lopt
    norm_tendon_length = tendon_length / self.tendon_slack_length

    fal = self.curves.active_force_length.evaluate(norm_fiber_length)
    fpe = self.curves.fiber_force_length.evaluate(norm_fiber_length)
    fse = self.curves.tendon_force_length.evaluate(norm_tendon_length)
    k_tendon = forces.calc_tendon_stiffness(
      fiso, norm_tendon_length, self.tendon_slack_length, self.curves.tendon_force_length)

    if static_solution:
      fiber_velocity = th.zeros_like(fiber_length)
      dfiber_velocity_dlce = th.zeros_like(fiber_length)
    else:
      fiber_velocity = self._fiber_velocity(a, fiber_length, path_length, path_lengthening_speed, damping)
      # the split velocity depends on the fiber length through both stiffnesses
      h = FINITE_DIFFERENCE_STEP * lopt
      dfiber_velocity_dlce = (
        self._fiber_velocity(a, fiber_length + h, path_length, path_lengthening_speed, damping)
        - self._fiber_velocity(a, fiber_length - h, path_length, path_lengthening_speed, damping)
      ) / (2. * h)

    norm_fiber_velocity = fiber_velocity / self.vmax
    fv = self.curves.force_velocity.evaluate(norm_fiber_velocity)
    fiber_force = forces.calc_fiber_force(fiso, a, fal, fv, fpe, damping, norm_fiber_velocity).total
    tendon_force = fiso * fse
    error = (fiber_force * cos_phi - tendon_force) / fiso

    k_fiber = forces.calc_fiber_stiffness(
      fiso, a, fv, norm_fiber_length, lopt, self.curves.active_force_length, self.curves.fiber_force_length)
    dfiber_force_at_dlce = forces.calc_dfiber_force_at_dfiber_length(
      fiber_force, k_fiber, fiber_length, sin_phi, cos_phi, self.pennation_model)
    dfiber_force_dv = forces.calc_dfiber_force_dnorm_fiber_velocity(
      fiso, a, fal, damping, norm_fiber_velocity, self.curves.force_velocity) / self.vmax
    dfiber_force_at_dlce = dfiber_force_at_dlce + cos_phi * dfiber_force_dv * dfiber_velocity_dlce
    dtendon_force_dlce = forces.calc_dtendon_force_dfiber_length(
      k_tendon, fiber_length, sin_phi, cos_phi, self.pennation_model)
    derror = (dfiber_force_at_dlce - dtendon_force_dlce) / fiso

    return _Evaluation(
      error=error,
      derror=derror,
      fiber_velocity=fiber_velocity,
      multipliers=NormalizedMultipliers(fal=fal, fpe=fpe, fse=fse),
      pennation_angle=phi,
      cos_phi=cos_phi,
      tendon_force=tendon_force,
    )

  def initial_fiber_length(self, path_length) -> th.Tensor:
    """Initial guess of the iteration: the fiber fills the path left by a tendon stretched to 1.01 times its slack
    length, or sits at its minimum length if the path is too short for that.
    """
    fiber_length_along_tendon = th.clip(
      path_length - 1.01 * self.tendon_slack_length, min=0.)
    fiber_length = self.pennation_model.fiber_length_from_pennation(fiber_length_along_tendon)[0]
    return self.clamp_fiber_length(fiber_length)

  def estimate(
    self,
    inputs: EquilibriumInputs,
    tolerance: float = 1e-8,
    max_iterations: int = 200,
    static_solution: bool = False,
    initial_fiber_length=None,
  ) -> FiberEquilibriumResult:
    """Finds the fiber length and velocity at which the fiber and tendon forces balance.

    Args:
      inputs: A :class:`dampedhill.state.EquilibriumInputs` tuple.
      tolerance: `Float`, tolerance on the force residual, normalized by the maximum isometric force.
      max_iterations: `Integer`, the maximum number of Newton steps.
      static_solution: `Boolean`, if `True` the fiber velocity is held at zero.
      initial_fiber_length: `Tensor`, an optional initial guess (m). If `None`, :meth:`initial_fiber_length` is used.

    Returns:
      A :class:`dampedhill.state.FiberEquilibriumResult` tuple. No error is raised if the iteration does not
      converge: the status of each element tells the caller what happened.
    """
    a, path_length, path_lengthening_speed, damping, _ = th.broadcast_tensors(
      *[th.as_tensor(x, dtype=DTYPE) for x in inputs], self.optimal_fiber_length)
    min_length = self.minimum_fiber_length().expand_as(a)
    lopt = self.optimal_fiber_length.expand_as(a)

    if initial_fiber_length is None:
      fiber_length = self.initial_fiber_length(path_length)
    else:
      fiber_length = self.clamp_fiber_length(initial_fiber_length)
    fiber_length = fiber_length.expand_as(a)

    iterations = th.zeros_like(a, dtype=th.long)
    stalled = th.zeros_like(a, dtype=th.bool)

    for iteration in range(max_iterations + 1):
      ev = self._evaluate(a, fiber_length, path_length, path_lengthening_speed, damping, static_solution)
      done = th.logical_or(th.abs(ev.error) < tolerance, stalled)
      if th.all(done) or iteration == max_iterations:
        break

      usable = th.logical_and(th.isfinite(ev.derror), th.abs(ev.derror) > NUMERIC_FLOOR)
      newton_step = -ev.error / th.where(usable, input=ev.derror, other=th.ones_like(ev.derror))
      # fixed step towards balance where the derivative is useless, e.g. on a slack tendon
      step = th.where(usable, input=newton_step, other=-th.sign(ev.error) * 0.1 * lopt)
      step = th.clip(step, min=-self.max_step * lopt, max=self.max_step * lopt)

      proposal = fiber_length + step
      below = proposal < min_length
      stalled = th.logical_or(stalled, ~done & below & (fiber_length <= min_length))
      proposal = th.where(below, input=min_length, other=proposal)

      moving = th.logical_and(~done, ~stalled)
      fiber_length = th.where(moving, input=proposal, other=fiber_length)
      iterations = iterations + moving.long()

    error = ev.error
    converged = th.abs(error) < tolerance
    at_bound = fiber_length <= min_length
    status = th.where(
      converged,
      input=th.full_like(iterations, int(SolveStatus.CONVERGED)),
      other=th.where(
        at_bound,
        input=th.full_like(iterations, int(SolveStatus.CLAMPED_AT_LOWER_BOUND)),
        other=th.full_like(iterations, int(SolveStatus.MAX_ITERATIONS_REACHED)),
      ),
    )

    fiber_velocity = ev.fiber_velocity
    if not static_solution and not self.ignore_tendon_compliance:
      solution = self.velocity_solver.solve(
        a, ev.multipliers, ev.cos_phi, damping, raise_on_singularity=False)
      refine = th.logical_and(converged, solution.converged)
      fiber_velocity = th.where(refine, input=solution.norm_fiber_velocity * self.vmax, other=fiber_velocity)

    clamped = status == int(SolveStatus.CLAMPED_AT_LOWER_BOUND)
    fiber_length = th.where(clamped, input=min_length, other=fiber_length)
    fiber_velocity = th.where(clamped, input=th.clip(fiber_velocity, min=0.), other=fiber_velocity)

    logger.debug(
      'Fiber equilibrium: %d converged, %d clamped, %d at iteration cap; max residual %.3g after %d iterations.',
      int((status == int(SolveStatus.CONVERGED)).sum()),
      int(clamped.sum()),
      int((status == int(SolveStatus.MAX_ITERATIONS_REACHED)).sum()),
      float(th.abs(error).max()),
      int(iterations.max()),
    )

    state = FiberState(
      fiber_length=fiber_length,
      fiber_velocity=fiber_velocity,
      pennation_angle=ev.pennation_angle,
      tendon_force=ev.tendon_force,
    )
    return FiberEquilibriumResult(status=status, solution_error=error, iterations=iterations, state=state)
