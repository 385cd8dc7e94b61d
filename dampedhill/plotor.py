"""This module contains various functions for plotting the characteristic curves of a muscle and the outcome of
fiber-length equilibrium solves.
"""

import numpy as np
import torch as th
import matplotlib.pyplot as plt
from dampedhill.state import EquilibriumInputs, SolveStatus


def compute_limits(data, margin=0.1):
  """Computes the limits to use for plotting data, given the range of the dataset and a margin size around that range.

  Args:
    data: A `numpy.ndarray` containing the data to plot.
    margin: `Float`, the proportion of the data's range to add as margin for plotting. For instance, if the data
      value range from `0` to `10`, and the margin is set to `0.2`, then the limits would become `[-2, 12]` since
      the range is `10`.

  Returns:
    A `list` of two `float` values, representing the lower and upper limits to use on the plot, in that order.
  """
  data = np.asarray(data)
  m = np.ptp(data) * margin
  minval = np.min(data) - m
  maxval = np.max(data) + m
  return minval, maxval


def _to_numpy(x):
  return x.detach().cpu().numpy() if isinstance(x, th.Tensor) else np.asarray(x)


def plot_curves(curves, figure=None, n_points: int = 200):
  """Plots the four characteristic curves of a muscle model on a 2x2 grid.

  Args:
    curves: A :class:`dampedhill.curves.CurveSet` tuple, for instance the ``curves`` attribute of a
      :class:`dampedhill.muscle.Haeufle2014Muscle`.
    figure: A `matplotlib` figure handle. If `None`, a new figure is created.
    n_points: `Integer`, the number of points at which each curve is evaluated.

  Returns:
    The `matplotlib` figure handle.
  """
  if figure is None:
    figure = plt.figure(figsize=(10, 8))
  axes = figure.subplots(2, 2)

  min_length = curves.active_force_length.min_norm_active_fiber_length
  fiber_length = th.linspace(min_length, 1.8, n_points, dtype=th.float64)
  tendon_length = th.linspace(0.98, 1.08, n_points, dtype=th.float64)
  velocity = th.linspace(-1.2, 1.2, n_points, dtype=th.float64)

  panels = [
    (axes[0, 0], fiber_length, curves.active_force_length, 'normalized fiber length', 'active force-length'),
    (axes[0, 1], fiber_length, curves.fiber_force_length, 'normalized fiber length', 'passive force-length'),
    (axes[1, 0], tendon_length, curves.tendon_force_length, 'normalized tendon length', 'tendon force-length'),
    (axes[1, 1], velocity, curves.force_velocity, 'normalized fiber velocity', 'force-velocity'),
  ]
  for axis, x, curve, xlabel, title in panels:
    with th.no_grad():
      y = curve.evaluate(x)
    axis.plot(_to_numpy(x), _to_numpy(y), 'k')
    axis.set_xlabel(xlabel)
    axis.set_ylabel('force multiplier')
    axis.set_title(title)
    axis.set_ylim(compute_limits(_to_numpy(y)))

  axes[1, 1].axvline(0., color='grey', linestyle=':', linewidth=1)
  figure.tight_layout()
  return figure


def equilibrium_sweep(muscle, path_lengths, activation=1., path_lengthening_speed=0., muscle_index=0):
  """Solves the fiber-length equilibrium of one muscle over a range of path lengths.

  Args:
    muscle: A built :class:`dampedhill.muscle.Haeufle2014Muscle`.
    path_lengths: `List` or `numpy.ndarray` of path lengths (m) to solve for.
    activation: `Float`, the activation held constant over the sweep.
    path_lengthening_speed: `Float`, the path lengthening speed (m/s). If `0`, static solves are performed.
    muscle_index: `Integer`, the muscle to solve for if `muscle` holds several of them.

  Returns:
    A `dictionary` of `numpy.ndarray` holding the path lengths, the resulting fiber lengths, fiber velocities,
    tendon forces and solve statuses.
  """
  path_lengths = th.as_tensor(np.asarray(path_lengths, dtype=np.float64)).reshape(-1, 1, 1)
  n = path_lengths.shape[0]
  shape = (n, 1, muscle.n_muscles)
  path_length = path_lengths.expand(shape).clone()
  inputs = EquilibriumInputs(
    activation=th.full(shape, float(activation), dtype=th.float64),
    path_length=path_length,
    path_lengthening_speed=th.full(shape, float(path_lengthening_speed), dtype=th.float64),
    damping=th.full(shape, muscle.fiber_damping, dtype=th.float64),
  )
  with th.no_grad():
    result = muscle.estimator.estimate(
      inputs,
      tolerance=muscle.equilibrium_tolerance,
      max_iterations=muscle.equilibrium_max_iterations,
      static_solution=path_lengthening_speed == 0.,
    )

  def pick(x):
    return _to_numpy(x)[:, 0, muscle_index]

  return {
    'path_length': pick(path_length),
    'fiber_length': pick(result.fiber_length),
    'fiber_velocity': pick(result.fiber_velocity),
    'tendon_force': pick(result.tendon_force),
    'status': pick(result.status),
  }


def plot_equilibrium_sweep(axis, sweep, quantity: str = 'tendon_force'):
  """Plots a quantity of an equilibrium sweep against path length, marking clamped and failed solves.

  Args:
    axis: A `matplotlib` axis handle.
    sweep: The `dictionary` returned by :func:`equilibrium_sweep`.
    quantity: `String`, the key of the quantity to plot.
  """
  x = sweep['path_length']
  y = sweep[quantity]
  axis.plot(x, y, 'k')

  for status, marker in ((SolveStatus.CLAMPED_AT_LOWER_BOUND, 'v'), (SolveStatus.MAX_ITERATIONS_REACHED, 'x')):
    mask = sweep['status'] == int(status)
    if np.any(mask):
      axis.plot(x[mask], y[mask], marker, linestyle='none', label=status.name.lower().replace('_', ' '))

  axis.set_xlabel('path length (m)')
  axis.set_ylabel(quantity.replace('_', ' '))
  if axis.get_legend_handles_labels()[0]:
    axis.legend()
