"""Containers passed between the solver components. Every field is a `tensor`, usually of shape
`n_batches * 1 * n_muscles`, so that all the muscles of a model are solved at once.
"""

import enum
import torch as th
from typing import NamedTuple


class SolveStatus(enum.IntEnum):
  """Outcome of a fiber-length equilibrium solve, per muscle. Larger values are worse outcomes."""
  CONVERGED = 0
  CLAMPED_AT_LOWER_BOUND = 1
  MAX_ITERATIONS_REACHED = 2


class MuscleGeometry(NamedTuple):
  """Musculotendon geometry. Lengths are in meters, angles in radians."""
  optimal_fiber_length: th.Tensor
  tendon_slack_length: th.Tensor
  pennation_angle_at_optimal: th.Tensor
  maximum_pennation_angle: th.Tensor

  @property
  def fiber_width(self) -> th.Tensor:
    """Height of the pennation parallelogram, constant for the lifetime of the model."""
    return self.optimal_fiber_length * th.sin(self.pennation_angle_at_optimal)


class EquilibriumInputs(NamedTuple):
  """Boundary conditions of an equilibrium solve, built fresh from the host state at each call."""
  activation: th.Tensor
  path_length: th.Tensor
  path_lengthening_speed: th.Tensor
  damping: th.Tensor


class NormalizedMultipliers(NamedTuple):
  fal: th.Tensor
  fpe: th.Tensor
  fse: th.Tensor


class FiberState(NamedTuple):
  fiber_length: th.Tensor
  fiber_velocity: th.Tensor
  pennation_angle: th.Tensor
  tendon_force: th.Tensor


class BoundaryFiberState(NamedTuple):
  """Fiber state recovered from the musculotendon boundary conditions. Lengths and velocities are normalized by
  the optimal fiber length and the maximum contraction velocity respectively.
  """
  activation: th.Tensor
  norm_fiber_length: th.Tensor
  pennation_angle: th.Tensor
  norm_fiber_velocity: th.Tensor


class FiberVelocitySolution(NamedTuple):
  """Result of the damped fiber velocity solve. `error` is the normalized force residual of the equilibrium
  equation, and `converged` is `True` only where that residual is within tolerance.
  """
  norm_fiber_velocity: th.Tensor
  error: th.Tensor
  converged: th.Tensor


class FiberForces(NamedTuple):
  """Fiber force and its decomposition, in newtons, along the fiber direction."""
  total: th.Tensor
  active: th.Tensor
  passive_elastic: th.Tensor
  passive_damping: th.Tensor


class FiberEquilibriumResult(NamedTuple):
  """Tagged result of :meth:`dampedhill.equilibrium.FiberLengthEquilibriumEstimator.estimate`. The `status` tensor
  holds one :class:`SolveStatus` code per muscle, and the payload is always populated regardless of the status so
  that callers can decide whether a non-converged result is acceptable.
  """
  status: th.Tensor
  solution_error: th.Tensor
  iterations: th.Tensor
  state: FiberState

  @property
  def fiber_length(self) -> th.Tensor:
    return self.state.fiber_length

  @property
  def fiber_velocity(self) -> th.Tensor:
    return self.state.fiber_velocity

  @property
  def tendon_force(self) -> th.Tensor:
    return self.state.tendon_force

  @property
  def overall_status(self) -> SolveStatus:
    """The worst status over all muscles and batch elements."""
    return SolveStatus(int(self.status.max()))

  def has_status(self, status: SolveStatus) -> th.Tensor:
    return self.status == int(status)

  def to_dict(self) -> dict[str, th.Tensor]:
    return {
      'solution_error': self.solution_error,
      'iterations': self.iterations,
      'fiber_length': self.fiber_length,
      'fiber_velocity': self.fiber_velocity,
      'tendon_force': self.tendon_force,
    }
