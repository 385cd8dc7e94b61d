import logging
import math
import numpy as np
import torch as th
from typing import NamedTuple
from torch.nn.parameter import Parameter
from dampedhill import forces
from dampedhill.curves import (
  ActiveForceLengthCurve,
  CurveSet,
  FiberForceLengthCurve,
  ForceVelocityCurve,
  ForceVelocityInverseCurve,
  TendonForceLengthCurve,
)
from dampedhill.equilibrium import FiberLengthEquilibriumEstimator
from dampedhill.errors import CannotEquilibrate
from dampedhill.pennation import FixedWidthPennationModel
from dampedhill.state import (
  BoundaryFiberState,
  EquilibriumInputs,
  FiberEquilibriumResult,
  FiberForces,
  FiberState,
  MuscleGeometry,
  NormalizedMultipliers,
  SolveStatus,
)
from dampedhill.velocity import DampedFiberVelocitySolver


logger = logging.getLogger(__name__)

DEVICE = th.device("cpu")
DTYPE = th.float64
MIN_DAMPING = 0.001


class Muscle(th.nn.Module):
  """Base class for `Muscle` objects. If a model contains several muscles, this object will contain all of
  those in a vectorized format, meaning for any given model there will always be only `one` muscle object,
  regardless of the number of muscles it holds.

  The dimensionality of the muscle states produced by this object and subclasses will always be
  `n_batches * n_states * n_muscles`. The `geometry state` passed to the muscle holds the path length (m) and the
  path lengthening speed (m/s) as its first two states, so its dimensionality is `n_batches * 2 * n_muscles` (any
  additional states are ignored).

  Args:
    min_activation: `Float`, the minimum activation value that this muscle can have. Any activation value lower than
      this value will be clipped.
    tau_activation: `Float`, the time constant for activation of the muscle. This is used for the Ordinary
      Differential Equation of the muscle activation method :meth:`activation_ode`.
    tau_deactivation: `Float`, the time constant for deactivation of the muscle. This is used for the Ordinary
      Differential Equation of the muscle activation method :meth:`activation_ode`.
  """

  def __init__(self, min_activation: float = 0., tau_activation: float = 0.015, tau_deactivation: float = 0.05):
    super().__init__()

    if tau_activation <= 0. or tau_deactivation <= 0.:
      raise ValueError('Activation and deactivation time constants must be positive.')

    self.state_name = []
    self.min_activation = Parameter(th.tensor(min_activation, dtype=DTYPE), requires_grad=False)
    self.tau_activation = Parameter(th.tensor(tau_activation, dtype=DTYPE), requires_grad=False)
    self.tau_deactivation = Parameter(th.tensor(tau_deactivation, dtype=DTYPE), requires_grad=False)
    self.to_build_dict = {'max_isometric_force': []}
    self.to_build_dict_default = {}
    self.dt = None
    self.n_muscles = None
    self.max_iso_force = None
    self.vmax = None
    self.l0_se = None
    self.l0_ce = None
    self.built = False

  def clip_activation(self, a):
    return th.clamp(a, self.min_activation, 1.)

  @property
  def device(self):
    """Returns the device of the first parameter in the module or the 1st CPU device if no parameter is yet declared.
    The parameter search includes children modules.
    """
    try:
      return next(self.parameters()).device
    except StopIteration:
      return DEVICE

  @property
  def state_dim(self):
    return len(self.state_name)

  def build(self, timestep, max_isometric_force, **kwargs):
    """Build the muscle given the per-muscle parameters.

    Args:
      timestep: `Float`, the size of a single timestep in seconds.
      max_isometric_force: `Float` or `list` of `float`, the maximum amount of force (N) that this particular
        muscle can use. If several muscles are being built, then this should be a `list` containing as many
        elements as there are muscles.
      **kwargs: Optional keyword arguments. This allows for extra parameters to be passed in the :meth:`build`
        method for a :class:`Muscle` subclass, if needed.
    """
    max_isometric_force = np.array(max_isometric_force, dtype=np.float64).reshape(1, 1, -1)
    self.n_muscles = max_isometric_force.size
    self.max_iso_force = Parameter(th.tensor(max_isometric_force, dtype=DTYPE), requires_grad=False)
    self.dt = timestep
    self.built = True

  def _check_built(self):
    if not self.built:
      raise ValueError(f'{self.__name__} must be built before use. Call the `build` method first.')

  def get_initial_muscle_state(self, batch_size, geometry_state):
    """Infers the `muscle state` matching a provided `geometry state` array.

    Args:
      batch_size: `Integer`, the size of the batch passed in `geometry state`.
      geometry_state: `Tensor`, the `geometry state` array from which the matching initial `muscle state` is
        inferred.

    Returns:
      A `tensor` containing the initial `muscle state` matching the input `geometry state` array.
    """
    self._check_built()
    return self._get_initial_muscle_state(batch_size, geometry_state)

  def _get_initial_muscle_state(self, batch_size, geometry_state):
    raise NotImplementedError

  def integrate(self, dt, state_derivative, muscle_state, geometry_state):
    """Performs one integration step for the muscle step.

    Args:
      dt: `Float`, size of the timestep in seconds for this integration step.
      state_derivative: `Tensor`, the derivatives of the `muscle state`. These are usually obtained using this
        object's :meth:`ode` method.
      muscle_state: `Tensor`, the `muscle state` used as the initial state value for the numerical integration.
      geometry_state: `Tensor`, the `geometry state` at the end of the integration step.

    Returns:
      A `tensor` containing the new `muscle state` following numerical integration.
    """
    return self._integrate(dt, state_derivative, muscle_state, geometry_state)

  def _integrate(self, dt, state_derivative, muscle_state, geometry_state):
    raise NotImplementedError

  def ode(self, action, muscle_state):
    """Computes the derivatives of `muscle state` using the corresponding Ordinary Differential Equations.

    Args:
      action: `Tensor`, the descending excitation drive to the muscle(s).
      muscle_state: `Tensor`, the `muscle state` used as the initial value for the evaluation of the Ordinary
        Differential Equations.

    Returns:
      A `tensor` containing the derivatives of the `muscle state`.
    """
    return self._ode(action, muscle_state)

  def _ode(self, action, muscle_state):
    activation = muscle_state[:, :1, :]
    return self.activation_ode(action, activation)

  def activation_ode(self, action, activation):
    """Computes the activation derivative of the (set of) muscle(s) according to the Ordinary Differential Equation
    shown in equations 1-2 in `[1]`.

    References:
      [1] `Thelen DG. Adjustment of muscle mechanics model parameters to simulate dynamic contractions in older
      adults. J Biomech Eng. 2003 Feb;125(1):70-7. doi: 10.1115/1.1531112. PMID: 12661198.`

    Args:
      action: `Float` or `tensor`, the descending excitation drive to the muscle(s).
      activation: `Tensor`, the current activation of the muscle(s).

    Returns:
      A `tensor` containing the activation derivatives.
    """
    action = self.clip_activation(th.reshape(th.as_tensor(action, dtype=DTYPE), (-1, 1, self.n_muscles)))
    activation = self.clip_activation(activation)
    tmp = 0.5 + 1.5 * activation
    tau = th.where(action > activation, self.tau_activation * tmp, self.tau_deactivation / tmp)
    return (action - activation) / tau

  def get_save_config(self):
    """Gets the object instance's configuration. This is the set of configuration entries that will be useful
    for any muscle objects or subclasses.

    Returns:
       - A `dictionary` containing the muscle object's name and state names.
    """
    cfg = {'name': str(self.__name__), 'state names': self.state_name}
    return cfg


class _MuscleSnapshot(NamedTuple):
  activation: th.Tensor
  fiber_length: th.Tensor
  fiber_velocity: th.Tensor
  norm_fiber_velocity: th.Tensor
  pennation_angle: th.Tensor
  sin_phi: th.Tensor
  cos_phi: th.Tensor
  norm_fiber_length: th.Tensor
  norm_tendon_length: th.Tensor
  multipliers: NormalizedMultipliers
  fv: th.Tensor
  fiber_forces: FiberForces
  tendon_force: th.Tensor


class Haeufle2014Muscle(Muscle):
  """Hill-type muscle with serial damping and an eccentric force-velocity relation, as described in `[1]`, with the
  fiber-length equilibrium handled as in the equilibrium muscle model of `[2]`. The fiber is a contractile element
  in parallel with an elastic element and a linear damper, in series with a compliant (or optionally rigid)
  tendon, and pennated following a fixed-width parallelogram model.

  The muscle state holds the activation and the fiber length, which are integrated over time, and a set of
  derived quantities computed at the end of each integration step (fiber velocity, the curve multipliers and the
  tendon force). The fiber velocity is found at each step by solving the force balance between the fiber and the
  tendon at the current fiber length, using :class:`dampedhill.velocity.DampedFiberVelocitySolver`.

  References:
    [1] `Haeufle DFB, Guenther M, Bayer A, Schmitt S. Hill-type muscle model with serial damping and eccentric
    force-velocity relation. J Biomech. 2014 Apr 11;47(6):1531-6. doi: 10.1016/j.jbiomech.2014.02.009.`
    [2] `Millard M, Uchida T, Seth A, Delp SL. Flexing computational muscle: modeling and simulation of
    musculotendon dynamics. J Biomech Eng. 2013 Feb;135(2):021005. doi: 10.1115/1.4023390.`

  Args:
    min_activation: `Float`, the minimum activation value that this muscle can have. Must be positive, since the
      force-velocity multiplier of an undamped fiber is unbounded at zero activation.
    default_activation: `Float`, the activation used to build the initial muscle state.
    tau_activation: `Float`, the activation time constant (sec).
    tau_deactivation: `Float`, the deactivation time constant (sec).
    fiber_damping: `Float`, the fiber damping coefficient, normalized by the maximum isometric force and maximum
      contraction velocity. `0` disables fiber damping, otherwise it must be at least `0.001`.
    maximum_pennation_angle: `Float`, the largest pennation angle (rad) the fibers can reach.
    ignore_tendon_compliance: `Boolean`, if `True` the tendon is rigid and the fiber length follows from the path
      length.
    ignore_activation_dynamics: `Boolean`, if `True` the activation follows the excitation within one timestep.
    active_force_length_curve: The active-force-length curve. Defaults to a
      :class:`dampedhill.curves.ActiveForceLengthCurve` with default parameters.
    fiber_force_length_curve: The passive-force-length curve. Defaults to a
      :class:`dampedhill.curves.FiberForceLengthCurve` with default parameters.
    tendon_force_length_curve: The tendon-force-length curve. Defaults to a
      :class:`dampedhill.curves.TendonForceLengthCurve` with default parameters.
    force_velocity_curve: The force-velocity curve. Defaults to a :class:`dampedhill.curves.ForceVelocityCurve`
      with default parameters.
    equilibrium_tolerance: `Float`, tolerance of the fiber-length equilibrium, relative to the maximum isometric
      force.
    equilibrium_max_iterations: `Integer`, iteration cap of the fiber-length equilibrium.
    velocity_tolerance: `Float`, tolerance of the fiber velocity solve.
    velocity_max_iterations: `Integer`, iteration cap of the fiber velocity solve.
  """

  def __init__(
    self,
    min_activation: float = 0.01,
    default_activation: float = 0.05,
    tau_activation: float = 0.01,
    tau_deactivation: float = 0.04,
    fiber_damping: float = 0.1,
    maximum_pennation_angle: float = math.acos(0.1),
    ignore_tendon_compliance: bool = False,
    ignore_activation_dynamics: bool = False,
    active_force_length_curve=None,
    fiber_force_length_curve=None,
    tendon_force_length_curve=None,
    force_velocity_curve=None,
    equilibrium_tolerance: float = 1e-8,
    equilibrium_max_iterations: int = 200,
    velocity_tolerance: float = 1e-9,
    velocity_max_iterations: int = 50,
  ):
    if min_activation <= 0.:
      raise ValueError('`min_activation` must be positive.')
    if not min_activation <= default_activation <= 1.:
      raise ValueError('`default_activation` must be in the [min_activation, 1] range.')
    if not 0. < maximum_pennation_angle < math.pi / 2:
      raise ValueError('`maximum_pennation_angle` must be in the (0, pi/2) range.')
    if equilibrium_tolerance <= 0. or equilibrium_max_iterations < 1:
      raise ValueError('Equilibrium tolerance and iteration cap must be positive.')

    super().__init__(min_activation=min_activation, tau_activation=tau_activation, tau_deactivation=tau_deactivation)
    self.__name__ = 'Haeufle2014Muscle'

    self.state_name = [
      'activation',
      'fiber length',
      'fiber velocity',
      'force-length CE',
      'force-length PE',
      'force-length SE',
      'force-velocity CE',
      'force',
      ]

    self.default_activation = default_activation
    self.fiber_damping = self._validate_damping(fiber_damping)
    self.maximum_pennation_angle = maximum_pennation_angle
    self.ignore_tendon_compliance = ignore_tendon_compliance
    self.ignore_activation_dynamics = ignore_activation_dynamics
    self.equilibrium_tolerance = equilibrium_tolerance
    self.equilibrium_max_iterations = equilibrium_max_iterations
    self.velocity_tolerance = velocity_tolerance
    self.velocity_max_iterations = velocity_max_iterations

    self.active_force_length_curve = (
      ActiveForceLengthCurve() if active_force_length_curve is None else active_force_length_curve)
    self.fiber_force_length_curve = (
      FiberForceLengthCurve() if fiber_force_length_curve is None else fiber_force_length_curve)
    self.tendon_force_length_curve = (
      TendonForceLengthCurve() if tendon_force_length_curve is None else tendon_force_length_curve)
    self.force_velocity_curve = ForceVelocityCurve() if force_velocity_curve is None else force_velocity_curve
    self.force_velocity_inverse_curve = ForceVelocityInverseCurve(self.force_velocity_curve)
    self.velocity_solver = DampedFiberVelocitySolver(
      self.force_velocity_curve,
      self.force_velocity_inverse_curve,
      tolerance=velocity_tolerance,
      max_iterations=velocity_max_iterations,
      )

    self.to_build_dict = {
      'max_isometric_force': [],
      'tendon_length': [],
      'optimal_muscle_length': [],
      'pennation_angle': [],
      'max_contraction_velocity': [],
      'default_fiber_length': [],
      }
    self.to_build_dict_default = {
      'pennation_angle': 0.,
      'max_contraction_velocity': 10.,
      'default_fiber_length': None,
      }

    self.pennation_model = None
    self.estimator = None
    self.pennation_angle = None
    self.max_contraction_velocity = None
    self.default_fiber_length = None

  @staticmethod
  def _validate_damping(damping_coefficient):
    if damping_coefficient < 0.:
      raise ValueError('Fiber damping must be non-negative.')
    if 0. < damping_coefficient < MIN_DAMPING:
      raise ValueError(f'Fiber damping must be 0 (disabled) or at least {MIN_DAMPING}, got {damping_coefficient}.')
    return float(damping_coefficient)

  @property
  def curves(self) -> CurveSet:
    return CurveSet(
      active_force_length=self.active_force_length_curve,
      fiber_force_length=self.fiber_force_length_curve,
      tendon_force_length=self.tendon_force_length_curve,
      force_velocity=self.force_velocity_curve,
      )

  def build(
    self,
    timestep,
    max_isometric_force,
    tendon_length,
    optimal_muscle_length,
    pennation_angle=0.,
    max_contraction_velocity=10.,
    default_fiber_length=None,
  ):
    """Build the muscle using the per-muscle parameters. Every argument but `timestep` can be a `list` with one
    element per muscle, or a single value shared by all muscles.

    Args:
      timestep: `Float`, the size of a single timestep in seconds.
      max_isometric_force: `Float` or `list` of `float`, the maximum isometric force (N) of the muscle(s).
      tendon_length: `Float` or `list` of `float`, the tendon slack length (m) of the muscle(s).
      optimal_muscle_length: `Float` or `list` of `float`, the optimal fiber length (m) of the muscle(s).
      pennation_angle: `Float` or `list` of `float`, the pennation angle (rad) at optimal fiber length.
      max_contraction_velocity: `Float` or `list` of `float`, the maximum contraction velocity, in optimal fiber
        lengths per second.
      default_fiber_length: `Float` or `list` of `float`, the fiber length (m) assumed when no fiber length is
        assigned, as in :meth:`get_default_muscle_state`. If `None`, this is the optimal fiber length.
    """
    self.n_muscles = max(np.array(x).size for x in (max_isometric_force, tendon_length, optimal_muscle_length))
    shape = (1, 1, self.n_muscles)

    def as_param(value):
      value = np.broadcast_to(np.array(value, dtype=np.float64).reshape(1, 1, -1), shape).copy()
      return th.tensor(value, dtype=DTYPE)

    max_isometric_force = as_param(max_isometric_force)
    tendon_length = as_param(tendon_length)
    optimal_muscle_length = as_param(optimal_muscle_length)
    pennation_angle = as_param(pennation_angle)
    max_contraction_velocity = as_param(max_contraction_velocity)
    if default_fiber_length is None:
      default_fiber_length = optimal_muscle_length.clone()
    else:
      default_fiber_length = as_param(default_fiber_length)

    if th.any(max_isometric_force <= 0.):
      raise ValueError('Maximum isometric force must be positive.')
    if th.any(tendon_length <= 0.) or th.any(optimal_muscle_length <= 0.):
      raise ValueError('Tendon slack length and optimal fiber length must be positive.')
    if th.any(max_contraction_velocity <= 0.):
      raise ValueError('Maximum contraction velocity must be positive.')
    if th.any(default_fiber_length <= 0.):
      raise ValueError('Default fiber length must be positive.')

    self.dt = timestep
    self.max_iso_force = Parameter(max_isometric_force, requires_grad=False)
    self.l0_se = Parameter(tendon_length, requires_grad=False)
    self.l0_ce = Parameter(optimal_muscle_length, requires_grad=False)
    self.pennation_angle = Parameter(pennation_angle, requires_grad=False)
    self.max_contraction_velocity = Parameter(max_contraction_velocity, requires_grad=False)
    self.vmax = Parameter(max_contraction_velocity * optimal_muscle_length, requires_grad=False)
    self.default_fiber_length = Parameter(default_fiber_length, requires_grad=False)

    self.pennation_model = FixedWidthPennationModel(
      optimal_fiber_length=self.l0_ce,
      pennation_angle_at_optimal=self.pennation_angle,
      maximum_pennation_angle=self.maximum_pennation_angle,
      )
    self.estimator = FiberLengthEquilibriumEstimator(
      geometry=self.geometry,
      max_isometric_force=self.max_iso_force,
      max_contraction_velocity=self.max_contraction_velocity,
      pennation_model=self.pennation_model,
      curves=self.curves,
      velocity_solver=self.velocity_solver,
      ignore_tendon_compliance=self.ignore_tendon_compliance,
      )
    self.built = True

  @property
  def geometry(self) -> MuscleGeometry:
    return MuscleGeometry(
      optimal_fiber_length=self.l0_ce,
      tendon_slack_length=self.l0_se,
      pennation_angle_at_optimal=self.pennation_angle,
      maximum_pennation_angle=th.full_like(self.l0_ce, self.maximum_pennation_angle),
      )

  def set_muscle_configuration(
    self,
    ignore_tendon_compliance: bool,
    ignore_activation_dynamics: bool,
    damping_coefficient: float,
  ):
    """Validates and applies a new model configuration.

    Args:
      ignore_tendon_compliance: `Boolean`, whether the tendon is treated as rigid.
      ignore_activation_dynamics: `Boolean`, whether the activation follows the excitation within one timestep.
      damping_coefficient: `Float`, the normalized fiber damping. `0` disables damping, otherwise it must be at
        least `0.001`.
    """
    self.fiber_damping = self._validate_damping(damping_coefficient)
    self.ignore_tendon_compliance = bool(ignore_tendon_compliance)
    self.ignore_activation_dynamics = bool(ignore_activation_dynamics)
    if self.estimator is not None:
      self.estimator.ignore_tendon_compliance = self.ignore_tendon_compliance
    logger.debug(
      '%s configuration: ignore_tendon_compliance=%s, ignore_activation_dynamics=%s, fiber_damping=%g.',
      self.__name__, self.ignore_tendon_compliance, self.ignore_activation_dynamics, self.fiber_damping)

  def set_fiber_damping(self, damping_coefficient: float):
    self.set_muscle_configuration(self.ignore_tendon_compliance, self.ignore_activation_dynamics, damping_coefficient)

  def scale(self, length_ratio):
    """Scales the optimal fiber length and the tendon slack length by the ratio of the path length after and
    before a model scaling, and rebuilds the muscle. The maximum contraction velocity stays the same in optimal
    fiber lengths per second.

    Args:
      length_ratio: `Float` or `list` of `float`, the post-scale over pre-scale path length ratio, per muscle.
    """
    self._check_built()
    length_ratio = np.array(length_ratio, dtype=np.float64).reshape(1, 1, -1)
    if np.any(length_ratio <= 0.):
      raise ValueError('Length scaling ratio must be positive.')
    self.build(
      timestep=self.dt,
      max_isometric_force=self.max_iso_force.detach().cpu().numpy(),
      tendon_length=self.l0_se.detach().cpu().numpy() * length_ratio,
      optimal_muscle_length=self.l0_ce.detach().cpu().numpy() * length_ratio,
      pennation_angle=self.pennation_angle.detach().cpu().numpy(),
      max_contraction_velocity=self.max_contraction_velocity.detach().cpu().numpy(),
      default_fiber_length=self.default_fiber_length.detach().cpu().numpy() * length_ratio,
      )

  def get_save_config(self):
    cfg = super().get_save_config()
    cfg.update({
      'min_activation': self.min_activation.item(),
      'default_activation': self.default_activation,
      'tau_activation': self.tau_activation.item(),
      'tau_deactivation': self.tau_deactivation.item(),
      'fiber_damping': self.fiber_damping,
      'maximum_pennation_angle': self.maximum_pennation_angle,
      'ignore_tendon_compliance': self.ignore_tendon_compliance,
      'ignore_activation_dynamics': self.ignore_activation_dynamics,
      'equilibrium_tolerance': self.equilibrium_tolerance,
      'equilibrium_max_iterations': self.equilibrium_max_iterations,
      'velocity_tolerance': self.velocity_tolerance,
      'velocity_max_iterations': self.velocity_max_iterations,
      'curves': [curve.get_save_config() for curve in self.curves],
      })
    if self.built:
      cfg.update({
        'max_isometric_force': self.max_iso_force.flatten().tolist(),
        'tendon_length': self.l0_se.flatten().tolist(),
        'optimal_muscle_length': self.l0_ce.flatten().tolist(),
        'pennation_angle': self.pennation_angle.flatten().tolist(),
        'max_contraction_velocity': self.max_contraction_velocity.flatten().tolist(),
        'default_fiber_length': self.default_fiber_length.flatten().tolist(),
        })
    return cfg

  def get_minimum_fiber_length(self):
    self._check_built()
    return self.estimator.minimum_fiber_length()

  def get_minimum_fiber_length_along_tendon(self):
    self._check_built()
    return self.estimator.minimum_fiber_length_along_tendon()

  def is_fiber_state_clamped(self, fiber_length, fiber_velocity):
    """Returns `True` where the fiber is at its minimum length and still shortening. Such fibers are held at the
    minimum length with a zero velocity, and may only leave it by lengthening.
    """
    return self.estimator.is_fiber_state_clamped(fiber_length, fiber_velocity)

  def clamp_fiber_length(self, fiber_length):
    return self.estimator.clamp_fiber_length(fiber_length)

  def _rigid_tendon_fiber_length(self, path_length):
    fiber_length_along_tendon = th.clip(path_length - self.l0_se, min=0.)
    fiber_length = self.pennation_model.fiber_length_from_pennation(fiber_length_along_tendon)[0]
    return self.clamp_fiber_length(fiber_length)

  def _snapshot(self, activation, fiber_length, geometry_state, fiber_velocity=None) -> _MuscleSnapshot:
    self._check_built()
    path_length = geometry_state[:, 0:1, :].to(DTYPE)
    path_lengthening_speed = geometry_state[:, 1:2, :].to(DTYPE)
    activation = self.clip_activation(activation.to(DTYPE))
    fiber_length = self.clamp_fiber_length(fiber_length.to(DTYPE))
    fiso = self.max_iso_force

    phi, sin_phi, cos_phi = self.pennation_model.calc_pennation_trig(fiber_length)
    norm_fiber_length = fiber_length / self.l0_ce
    fal = self.active_force_length_curve.evaluate(norm_fiber_length)
    fpe = self.fiber_force_length_curve.evaluate(norm_fiber_length)

    if self.ignore_tendon_compliance:
      norm_tendon_length = th.ones_like(fiber_length)
      if fiber_velocity is None:
        fiber_velocity = self.pennation_model.calc_fiber_velocity(cos_phi, path_lengthening_speed)
      fse = None
    else:
      tendon_length = self.pennation_model.calc_tendon_length(cos_phi, fiber_length, path_length)
      norm_tendon_length = tendon_length / self.l0_se
      fse = self.tendon_force_length_curve.evaluate(norm_tendon_length)
      if fiber_velocity is None:
        solution = self.velocity_solver.solve(
          activation, NormalizedMultipliers(fal=fal, fpe=fpe, fse=fse), cos_phi, self.fiber_damping)
        fiber_velocity = solution.norm_fiber_velocity * self.vmax

    fiber_velocity = th.as_tensor(fiber_velocity, dtype=DTYPE).expand_as(fiber_length)
    fiber_velocity = th.where(
      self.is_fiber_state_clamped(fiber_length, fiber_velocity),
      input=th.zeros_like(fiber_velocity),
      other=fiber_velocity,
      )
    norm_fiber_velocity = fiber_velocity / self.vmax
    fv = self.force_velocity_curve.evaluate(norm_fiber_velocity)
    fiber_forces = forces.calc_fiber_force(fiso, activation, fal, fv, fpe, self.fiber_damping, norm_fiber_velocity)

    if self.ignore_tendon_compliance:
      # a rigid tendon transmits whatever the fiber produces along it
      tendon_force = fiber_forces.total * cos_phi
      fse = tendon_force / fiso
    else:
      tendon_force = fiso * fse

    return _MuscleSnapshot(
      activation=activation,
      fiber_length=fiber_length,
      fiber_velocity=fiber_velocity,
      norm_fiber_velocity=norm_fiber_velocity,
      pennation_angle=phi,
      sin_phi=sin_phi,
      cos_phi=cos_phi,
      norm_fiber_length=norm_fiber_length,
      norm_tendon_length=norm_tendon_length,
      multipliers=NormalizedMultipliers(fal=fal, fpe=fpe, fse=fse),
      fv=fv,
      fiber_forces=fiber_forces,
      tendon_force=tendon_force,
      )

  def _evaluate_state(self, muscle_state, geometry_state) -> _MuscleSnapshot:
    return self._snapshot(
      activation=muscle_state[:, 0:1, :],
      fiber_length=muscle_state[:, 1:2, :],
      geometry_state=geometry_state,
      fiber_velocity=muscle_state[:, 2:3, :].to(DTYPE),
      )

  def _to_muscle_state(self, snapshot: _MuscleSnapshot):
    return th.cat([
      snapshot.activation,
      snapshot.fiber_length,
      snapshot.fiber_velocity,
      snapshot.multipliers.fal,
      snapshot.multipliers.fpe,
      snapshot.multipliers.fse,
      snapshot.fv,
      snapshot.tendon_force,
      ], dim=1)

  def _ode(self, action, muscle_state):
    activation = muscle_state[:, 0:1, :].to(DTYPE)
    if self.ignore_activation_dynamics:
      target = self.clip_activation(th.reshape(th.as_tensor(action, dtype=DTYPE), (-1, 1, self.n_muscles)))
      d_activation = (target - activation) / self.dt
    else:
      d_activation = self.activation_ode(action, activation)
    d_activation = d_activation.expand_as(activation)
    fiber_velocity = muscle_state[:, 2:3, :].to(DTYPE)
    return th.cat([d_activation, fiber_velocity], dim=1)

  def _integrate(self, dt, state_derivative, muscle_state, geometry_state):
    activation = muscle_state[:, 0:1, :].to(DTYPE) + state_derivative[:, 0:1, :] * dt
    activation = self.clip_activation(activation)
    if self.ignore_tendon_compliance:
      fiber_length = self._rigid_tendon_fiber_length(geometry_state[:, 0:1, :].to(DTYPE))
    else:
      fiber_length = muscle_state[:, 1:2, :].to(DTYPE) + state_derivative[:, 1:2, :] * dt
      fiber_length = self.clamp_fiber_length(fiber_length)
    return self._to_muscle_state(self._snapshot(activation, fiber_length, geometry_state))

  def get_activation_derivative(self, action, muscle_state):
    return self.ode(action, muscle_state)[:, 0:1, :]

  def _get_initial_muscle_state(self, batch_size, geometry_state):
    muscle_state = self.get_default_muscle_state(batch_size, geometry_state)
    muscle_state, _ = self.compute_initial_fiber_equilibrium(muscle_state, geometry_state)
    return muscle_state

  def get_default_muscle_state(self, batch_size, geometry_state):
    """Muscle state at the default activation and default fiber length, before any equilibration. With a rigid
    tendon the fiber length follows from the path length instead.

    Args:
      batch_size: `Integer`, the batch size.
      geometry_state: `Tensor`, the `geometry state` the muscle state is evaluated at.

    Returns:
      A `tensor` containing the default `muscle state`.
    """
    self._check_built()
    geometry_state = th.as_tensor(geometry_state, dtype=DTYPE)
    shape = (batch_size, 1, self.n_muscles)
    activation = th.ones(shape, dtype=DTYPE, device=self.device) * self.default_activation
    if self.ignore_tendon_compliance:
      fiber_length = self._rigid_tendon_fiber_length(geometry_state[:, 0:1, :]).expand(shape)
    else:
      fiber_length = self.default_fiber_length.expand(shape)
    return self._to_muscle_state(self._snapshot(activation, fiber_length, geometry_state))

  def set_fiber_length(self, muscle_state, geometry_state, fiber_length):
    """Assigns a new fiber length (m) to `muscle_state`, clamped at the minimum fiber length. The fiber velocity and
    the other derived channels are recomputed at that length, so the returned state is not necessarily in
    equilibrium with the path.

    Returns:
      A `tensor` containing the new `muscle state`.
    """
    activation = muscle_state[:, 0:1, :].to(DTYPE)
    fiber_length = th.as_tensor(fiber_length, dtype=DTYPE).expand_as(activation)
    return self._to_muscle_state(self._snapshot(activation, fiber_length, geometry_state))

  def set_activation(self, muscle_state, geometry_state, activation):
    """Assigns a new activation to `muscle_state`, clipped to the `[min_activation, 1]` range. The fiber length is
    kept, and the fiber velocity and the other derived channels are recomputed.

    Returns:
      A `tensor` containing the new `muscle state`.
    """
    fiber_length = muscle_state[:, 1:2, :].to(DTYPE)
    activation = th.as_tensor(activation, dtype=DTYPE).expand_as(fiber_length)
    return self._to_muscle_state(self._snapshot(activation, fiber_length, geometry_state))

  def compute_fiber_equilibrium(self, muscle_state, geometry_state, solve_for_velocity: bool = False,
                                use_current_fiber_length: bool = True):
    """Finds the fiber length at which the fiber and tendon forces balance, for the activation in `muscle_state`
    and the path length and lengthening speed in `geometry_state`.

    Args:
      muscle_state: `Tensor`, the current `muscle state`.
      geometry_state: `Tensor`, the current `geometry state`.
      solve_for_velocity: `Boolean`, if `False` the fiber is assumed isometric (static equilibrium), otherwise the
        path lengthening speed is shared between the fiber and the tendon.
      use_current_fiber_length: `Boolean`, whether the fiber length held in `muscle_state` is used as the initial
        guess. Repeated calls on an equilibrated state then return immediately.

    Returns:
      - A `tensor` containing the new `muscle state`, with the equilibrium fiber length and velocity.
      - The :class:`dampedhill.state.FiberEquilibriumResult` of the solve.

    Raises:
      CannotEquilibrate: If the equilibrium is not reached within the iteration cap for any muscle.
    """
    self._check_built()
    activation = self.clip_activation(muscle_state[:, 0:1, :].to(DTYPE))
    path_length = geometry_state[:, 0:1, :].to(DTYPE)
    path_lengthening_speed = geometry_state[:, 1:2, :].to(DTYPE)
    if not solve_for_velocity:
      path_lengthening_speed = th.zeros_like(path_lengthening_speed)

    if self.ignore_tendon_compliance:
      fiber_length = self._rigid_tendon_fiber_length(path_length)
      snapshot = self._snapshot(activation, fiber_length, geometry_state, fiber_velocity=None if solve_for_velocity
                                else th.zeros_like(fiber_length))
      state = FiberState(
        fiber_length=snapshot.fiber_length,
        fiber_velocity=snapshot.fiber_velocity,
        pennation_angle=snapshot.pennation_angle,
        tendon_force=snapshot.tendon_force,
        )
      result = FiberEquilibriumResult(
        status=th.full_like(fiber_length, int(SolveStatus.CONVERGED), dtype=th.long),
        solution_error=th.zeros_like(fiber_length),
        iterations=th.zeros_like(fiber_length, dtype=th.long),
        state=state,
        )
      return self._to_muscle_state(snapshot), result

    initial_fiber_length = None
    if use_current_fiber_length:
      current = muscle_state[:, 1:2, :].to(DTYPE)
      if th.all(th.isfinite(current)) and th.all(current > 0.):
        initial_fiber_length = current

    inputs = EquilibriumInputs(
      activation=activation,
      path_length=path_length,
      path_lengthening_speed=path_lengthening_speed,
      damping=th.full_like(activation, self.fiber_damping),
      )
    result = self.estimator.estimate(
      inputs,
      tolerance=self.equilibrium_tolerance,
      max_iterations=self.equilibrium_max_iterations,
      static_solution=not solve_for_velocity,
      initial_fiber_length=initial_fiber_length,
      )

    failed = result.has_status(SolveStatus.MAX_ITERATIONS_REACHED)
    if th.any(failed):
      worst = th.argmax(th.where(failed, th.abs(result.solution_error), th.zeros_like(result.solution_error)))
      raise CannotEquilibrate(
        f'Failed to compute muscle equilibrium for {int(failed.sum())} muscle(s). '
        f'Solution error {th.abs(result.solution_error).flatten()[worst].item():.3g} exceeds the tolerance of '
        f'{self.equilibrium_tolerance:.3g} after {self.equilibrium_max_iterations} iterations, at activation '
        f'{activation.expand_as(result.fiber_length).flatten()[worst].item():.4g} and fiber length '
        f'{result.fiber_length.flatten()[worst].item():.6g} m.')

    clamped = result.has_status(SolveStatus.CLAMPED_AT_LOWER_BOUND)
    if th.any(clamped):
      logger.warning(
        '%s: %d fiber(s) reached the minimum fiber length during equilibration and were clamped there.',
        self.__name__, int(clamped.sum()))

    snapshot = self._snapshot(activation, result.fiber_length, geometry_state, fiber_velocity=result.fiber_velocity)
    return self._to_muscle_state(snapshot), result

  def compute_initial_fiber_equilibrium(self, muscle_state, geometry_state):
    """Static fiber equilibrium computed from scratch, ignoring the fiber length held in `muscle_state`."""
    return self.compute_fiber_equilibrium(
      muscle_state, geometry_state, solve_for_velocity=False, use_current_fiber_length=False)

  def compute_actuation(self, muscle_state, geometry_state):
    """Returns the tensile force (N) the musculotendon unit applies to its path."""
    return self._evaluate_state(muscle_state, geometry_state).tendon_force

  def get_fiber_velocity(self, muscle_state, geometry_state):
    return self._evaluate_state(muscle_state, geometry_state).fiber_velocity

  def get_pennation_angle(self, muscle_state, geometry_state):
    return self._evaluate_state(muscle_state, geometry_state).pennation_angle

  def get_tendon_force_multiplier(self, muscle_state, geometry_state):
    return self._evaluate_state(muscle_state, geometry_state).multipliers.fse

  def get_fiber_forces(self, muscle_state, geometry_state) -> FiberForces:
    """Fiber force decomposition (N) along the fiber direction."""
    return self._evaluate_state(muscle_state, geometry_state).fiber_forces

  def get_fiber_forces_along_tendon(self, muscle_state, geometry_state) -> FiberForces:
    """Fiber force decomposition (N) projected onto the tendon."""
    snapshot = self._evaluate_state(muscle_state, geometry_state)
    return FiberForces(*[f * snapshot.cos_phi for f in snapshot.fiber_forces])

  def get_active_fiber_force(self, muscle_state, geometry_state):
    return self.get_fiber_forces(muscle_state, geometry_state).active

  def calc_active_fiber_force_along_tendon(self, activation, fiber_length, fiber_velocity):
    """Active fiber force (N) projected onto the tendon, for an arbitrary activation, fiber length (m) and fiber
    velocity (m/s). Neither the activation nor the fiber length are bounded here.
    """
    self._check_built()
    activation = th.as_tensor(activation, dtype=DTYPE)
    fiber_length = th.as_tensor(fiber_length, dtype=DTYPE)
    fiber_velocity = th.as_tensor(fiber_velocity, dtype=DTYPE)
    cos_phi = self.pennation_model.calc_pennation_trig(fiber_length)[2]
    fal = self.active_force_length_curve.evaluate(fiber_length / self.l0_ce)
    fv = self.force_velocity_curve.evaluate(fiber_velocity / self.vmax)
    return self.max_iso_force * activation * fal * fv * cos_phi

  def calc_inextensible_tendon_active_fiber_force(self, geometry_state, activation):
    """Active fiber force (N) along the tendon that the muscle would produce at `activation` if its tendon were
    rigid. The fiber length and velocity then follow from the path length and lengthening speed alone.
    """
    self._check_built()
    geometry_state = th.as_tensor(geometry_state, dtype=DTYPE)
    fiber_length = self._rigid_tendon_fiber_length(geometry_state[:, 0:1, :])
    cos_phi = self.pennation_model.calc_pennation_trig(fiber_length)[2]
    fiber_velocity = self.pennation_model.calc_fiber_velocity(cos_phi, geometry_state[:, 1:2, :])
    fiber_velocity = th.where(
      self.is_fiber_state_clamped(fiber_length, fiber_velocity),
      input=th.zeros_like(fiber_velocity),
      other=fiber_velocity,
      )
    activation = self.clip_activation(th.as_tensor(activation, dtype=DTYPE))
    return self.calc_active_fiber_force_along_tendon(activation, fiber_length, fiber_velocity)

  def get_passive_fiber_elastic_force(self, muscle_state, geometry_state):
    return self.get_fiber_forces(muscle_state, geometry_state).passive_elastic

  def get_passive_fiber_elastic_force_along_tendon(self, muscle_state, geometry_state):
    return self.get_fiber_forces_along_tendon(muscle_state, geometry_state).passive_elastic

  def get_passive_fiber_damping_force(self, muscle_state, geometry_state):
    return self.get_fiber_forces(muscle_state, geometry_state).passive_damping

  def get_passive_fiber_damping_force_along_tendon(self, muscle_state, geometry_state):
    return self.get_fiber_forces_along_tendon(muscle_state, geometry_state).passive_damping

  def _stiffnesses(self, snapshot: _MuscleSnapshot):
    fiso = self.max_iso_force
    fiber_stiffness = forces.calc_fiber_stiffness(
      fiso, snapshot.activation, snapshot.fv, snapshot.norm_fiber_length, self.l0_ce,
      self.active_force_length_curve, self.fiber_force_length_curve)
    dfiber_force_at_dlce = forces.calc_dfiber_force_at_dfiber_length(
      snapshot.fiber_forces.total, fiber_stiffness, snapshot.fiber_length, snapshot.sin_phi, snapshot.cos_phi,
      self.pennation_model)
    fiber_stiffness_along_tendon = forces.calc_dfiber_force_at_dfiber_length_at(
      dfiber_force_at_dlce, snapshot.sin_phi, snapshot.cos_phi, snapshot.fiber_length, self.pennation_model)
    if self.ignore_tendon_compliance:
      tendon_stiffness = th.full_like(fiber_stiffness, float('inf'))
    else:
      tendon_stiffness = forces.calc_tendon_stiffness(
        fiso, snapshot.norm_tendon_length, self.l0_se, self.tendon_force_length_curve)
    return fiber_stiffness, fiber_stiffness_along_tendon, tendon_stiffness

  def get_fiber_stiffness(self, muscle_state, geometry_state):
    """Stiffness (N/m) of the fiber along its own direction."""
    return self._stiffnesses(self._evaluate_state(muscle_state, geometry_state))[0]

  def get_fiber_stiffness_along_tendon(self, muscle_state, geometry_state):
    """Stiffness (N/m) of the fiber along the tendon, accounting for the change in pennation angle."""
    return self._stiffnesses(self._evaluate_state(muscle_state, geometry_state))[1]

  def get_tendon_stiffness(self, muscle_state, geometry_state):
    """Stiffness (N/m) of the tendon. A rigid tendon has an infinite stiffness."""
    return self._stiffnesses(self._evaluate_state(muscle_state, geometry_state))[2]

  def get_musculotendon_stiffness(self, muscle_state, geometry_state):
    _, fiber_stiffness_along_tendon, tendon_stiffness = self._stiffnesses(
      self._evaluate_state(muscle_state, geometry_state))
    return forces.calc_musculotendon_stiffness(
      fiber_stiffness_along_tendon, tendon_stiffness, rigid_tendon=self.ignore_tendon_compliance)

  def get_fiber_damping(self, muscle_state, geometry_state):
    """Partial derivative (N.s/m) of the fiber force with respect to the fiber velocity."""
    snapshot = self._evaluate_state(muscle_state, geometry_state)
    dforce_dnorm_velocity = forces.calc_dfiber_force_dnorm_fiber_velocity(
      self.max_iso_force, snapshot.activation, snapshot.multipliers.fal, self.fiber_damping,
      snapshot.norm_fiber_velocity, self.force_velocity_curve)
    return dforce_dnorm_velocity / self.vmax

  def compute_activation_for_tendon_force(self, tendon_force, muscle_state, geometry_state):
    """Activation that would produce `tendon_force` (N) at the kinematic state of `muscle_state`. The result is
    `NaN` where the fiber cannot produce active force.
    """
    snapshot = self._evaluate_state(muscle_state, geometry_state)
    return forces.calc_activation(
      self.max_iso_force, th.as_tensor(tendon_force, dtype=DTYPE), snapshot.cos_phi, snapshot.multipliers.fal,
      snapshot.fv, snapshot.multipliers.fpe, self.fiber_damping, snapshot.norm_fiber_velocity)

  def calc_fiber_state_given_boundary_cond(self, path_length, path_lengthening_speed, tendon_force,
                                           dtendon_force_dt) -> BoundaryFiberState:
    """Recovers the fiber state from the musculotendon boundary conditions. The tendon length follows from the
    tendon force through the inverse of the tendon-force-length curve, and the tendon velocity from the rate of
    change of the tendon force over the tendon stiffness. The fiber takes up the remainder of the path length and
    lengthening speed, and the activation is the one that balances the tendon force at that kinematic state.

    Args:
      path_length: `Tensor`, the path length (m).
      path_lengthening_speed: `Tensor`, the path lengthening speed (m/s).
      tendon_force: `Tensor`, the tendon force (N).
      dtendon_force_dt: `Tensor`, the rate of change of the tendon force (N/s).

    Returns:
      A :class:`dampedhill.state.BoundaryFiberState` tuple. The activation is not clipped, and is `NaN` where the
      fiber cannot produce active force.

    Raises:
      GeometryError: If the path is shorter than the tendon at the given tendon force.
    """
    self._check_built()
    path_length = th.as_tensor(path_length, dtype=DTYPE)
    path_lengthening_speed = th.as_tensor(path_lengthening_speed, dtype=DTYPE)
    tendon_force = th.as_tensor(tendon_force, dtype=DTYPE)
    dtendon_force_dt = th.as_tensor(dtendon_force_dt, dtype=DTYPE)
    fiso = self.max_iso_force

    if self.ignore_tendon_compliance:
      norm_tendon_length = th.ones_like(tendon_force)
      tendon_velocity = th.zeros_like(dtendon_force_dt)
    else:
      norm_tendon_length = self.tendon_force_length_curve.inverse(tendon_force / fiso)
      tendon_stiffness = forces.calc_tendon_stiffness(
        fiso, norm_tendon_length, self.l0_se, self.tendon_force_length_curve)
      stiff = tendon_stiffness > forces.NUMERIC_FLOOR
      tendon_velocity = th.where(
        stiff,
        input=dtendon_force_dt / th.where(stiff, input=tendon_stiffness, other=th.ones_like(tendon_stiffness)),
        other=th.zeros_like(tendon_stiffness),
        )

    fiber_length_along_tendon = path_length - norm_tendon_length * self.l0_se
    fiber_length = self.pennation_model.fiber_length_from_pennation(fiber_length_along_tendon)[0]
    fiber_length = self.clamp_fiber_length(fiber_length)
    phi, _, cos_phi = self.pennation_model.calc_pennation_trig(fiber_length)

    fiber_velocity_along_tendon = path_lengthening_speed - tendon_velocity
    fiber_velocity = self.pennation_model.calc_fiber_velocity(cos_phi, fiber_velocity_along_tendon)
    fiber_velocity = th.where(
      self.is_fiber_state_clamped(fiber_length, fiber_velocity),
      input=th.zeros_like(fiber_velocity),
      other=fiber_velocity,
      )

    norm_fiber_length = fiber_length / self.l0_ce
    norm_fiber_velocity = fiber_velocity / self.vmax
    fal = self.active_force_length_curve.evaluate(norm_fiber_length)
    fpe = self.fiber_force_length_curve.evaluate(norm_fiber_length)
    fv = self.force_velocity_curve.evaluate(norm_fiber_velocity)
    activation = forces.calc_activation(
      fiso, tendon_force, cos_phi, fal, fv, fpe, self.fiber_damping, norm_fiber_velocity)
    return BoundaryFiberState(
      activation=activation,
      norm_fiber_length=norm_fiber_length,
      pennation_angle=phi,
      norm_fiber_velocity=norm_fiber_velocity,
      )
