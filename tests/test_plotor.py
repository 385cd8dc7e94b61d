import matplotlib
matplotlib.use('Agg')

import matplotlib.pyplot as plt
import numpy as np
import pytest

from dampedhill import plotor


def test_compute_limits():
  assert plotor.compute_limits([0., 10.], margin=0.2) == pytest.approx((-2., 12.))


def test_plot_curves(muscle):
  figure = plotor.plot_curves(muscle.curves, n_points=50)
  assert len(figure.axes) == 4
  plt.close(figure)


class TestEquilibriumSweep:

  @pytest.fixture
  def path_lengths(self):
    return np.linspace(0.27, 0.33, 5)

  def test_sweep(self, muscle, path_lengths):
    sweep = plotor.equilibrium_sweep(muscle, path_lengths)
    assert set(sweep) == {'path_length', 'fiber_length', 'fiber_velocity', 'tendon_force', 'status'}
    assert np.allclose(sweep['path_length'], path_lengths)
    assert np.all(sweep['status'] == 0)
    assert np.all(sweep['tendon_force'] > 0.)
    assert np.all(sweep['fiber_velocity'] == 0.)

  def test_sweep_selects_muscle(self, build_muscle, path_lengths):
    muscle = build_muscle(max_isometric_force=[1000., 500.], tendon_length=[0.2, 0.2],
                          optimal_muscle_length=[0.1, 0.1])
    first = plotor.equilibrium_sweep(muscle, path_lengths, activation=0.5, muscle_index=0)
    second = plotor.equilibrium_sweep(muscle, path_lengths, activation=0.5, muscle_index=1)
    # same geometry, half the force: the normalized equilibrium is the same
    assert np.allclose(first['fiber_length'], second['fiber_length'])
    assert np.allclose(first['tendon_force'], 2. * second['tendon_force'])

  def test_plot_sweep_marks_clamped_solves(self, muscle):
    sweep = plotor.equilibrium_sweep(muscle, np.linspace(0.2, 0.3, 6))
    assert np.any(sweep['status'] == 1)
    figure, axis = plt.subplots()
    plotor.plot_equilibrium_sweep(axis, sweep)
    labels = axis.get_legend_handles_labels()[1]
    assert 'clamped at lower bound' in labels
    plt.close(figure)
