import pytest
import torch as th

from dampedhill.muscle import Haeufle2014Muscle


def geometry_state(path_length, path_lengthening_speed=0.):
  """Builds a `n_batches * 2 * n_muscles` geometry state from nested lists of path lengths (m) and speeds (m/s)."""
  path_length = th.as_tensor(path_length, dtype=th.float64)
  if path_length.dim() == 1:
    path_length = path_length.reshape(-1, 1, 1)
  elif path_length.dim() == 2:
    path_length = path_length.unsqueeze(1)
  speed = th.as_tensor(path_lengthening_speed, dtype=th.float64) * th.ones_like(path_length)
  return th.cat([path_length, speed], dim=1)


@pytest.fixture
def build_muscle():
  """Factory building a single-muscle model with the reference geometry used throughout the tests."""

  def _build(max_isometric_force=1000., tendon_length=0.2, optimal_muscle_length=0.1, pennation_angle=0.,
             timestep=0.001, **kwargs):
    muscle = Haeufle2014Muscle(**kwargs)
    muscle.build(
      timestep=timestep,
      max_isometric_force=max_isometric_force,
      tendon_length=tendon_length,
      optimal_muscle_length=optimal_muscle_length,
      pennation_angle=pennation_angle,
    )
    return muscle

  return _build


@pytest.fixture
def muscle(build_muscle):
  return build_muscle()
