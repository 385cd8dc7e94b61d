import math
import pytest
import torch as th

from dampedhill.errors import GeometryError
from dampedhill.pennation import FixedWidthPennationModel


MAX_ANGLE = math.acos(0.1)


class TestFixedWidthPennationModel:

  @pytest.fixture
  def model(self):
    return FixedWidthPennationModel(optimal_fiber_length=0.1, pennation_angle_at_optimal=0.3)

  @pytest.fixture
  def parallel_model(self):
    return FixedWidthPennationModel(optimal_fiber_length=0.1)

  def test_fiber_width(self, model):
    assert math.isclose(model.fiber_width.item(), 0.1 * math.sin(0.3), rel_tol=1e-12)

  def test_angle_at_optimal_length(self, model):
    phi = model.calc_pennation_angle(th.tensor([0.1], dtype=th.float64))
    assert math.isclose(phi.item(), 0.3, rel_tol=1e-9)

  def test_parallel_fibers_have_no_pennation(self, parallel_model):
    lengths = th.tensor([0.01, 0.1, 0.2], dtype=th.float64)
    assert th.all(parallel_model.calc_pennation_angle(lengths) == 0.)
    assert parallel_model.minimum_fiber_length().item() < 1e-9

  def test_minimum_fiber_length(self, model):
    expected = 0.1 * math.sin(0.3) / math.sin(MAX_ANGLE)
    assert math.isclose(model.minimum_fiber_length().item(), expected, rel_tol=1e-12)
    expected_along_tendon = expected * math.cos(MAX_ANGLE)
    assert math.isclose(model.minimum_fiber_length_along_tendon().item(), expected_along_tendon, rel_tol=1e-9)

  def test_angle_capped_at_maximum(self, model):
    short = 0.5 * model.minimum_fiber_length()
    phi = model.calc_pennation_angle(short)
    assert math.isclose(phi.item(), MAX_ANGLE, rel_tol=1e-9)

  def test_fiber_length_from_pennation(self, model):
    fiber_length = th.tensor([0.05, 0.1, 0.15], dtype=th.float64)
    _, _, cos_phi = model.calc_pennation_trig(fiber_length)
    along_tendon = model.calc_fiber_length_along_tendon(fiber_length, cos_phi)
    recovered, phi, sin_phi, cos_recovered = model.fiber_length_from_pennation(along_tendon)
    assert th.allclose(recovered, fiber_length)
    assert th.allclose(cos_recovered, cos_phi)
    assert th.allclose(sin_phi, th.sin(phi))

  def test_infeasible_geometry_raises(self, model):
    with pytest.raises(GeometryError):
      model.fiber_length_from_pennation(th.tensor([-0.01], dtype=th.float64))
    with pytest.raises(ValueError):
      model.fiber_length_from_pennation(th.tensor([float('nan')], dtype=th.float64))

  def test_tendon_length(self, model):
    fiber_length = th.tensor([0.1], dtype=th.float64)
    _, _, cos_phi = model.calc_pennation_trig(fiber_length)
    tendon_length = model.calc_tendon_length(cos_phi, fiber_length, th.tensor([0.3], dtype=th.float64))
    assert math.isclose(tendon_length.item(), 0.3 - 0.1 * math.cos(0.3), rel_tol=1e-12)

  def test_velocity_projection(self, model):
    fiber_length = th.tensor([0.1], dtype=th.float64)
    fiber_velocity = th.tensor([-0.2], dtype=th.float64)
    _, sin_phi, cos_phi = model.calc_pennation_trig(fiber_length)
    first_order = model.velocity_projection(fiber_velocity, sin_phi, cos_phi)
    assert th.allclose(first_order, fiber_velocity * cos_phi)

    dphi = model.calc_pennation_angular_velocity(sin_phi / cos_phi, fiber_length, fiber_velocity)
    exact = model.velocity_projection(fiber_velocity, sin_phi, cos_phi, fiber_length, dphi)
    # exact projection is the time derivative of lce * cos(phi)
    h = 1e-7
    lce_at = lambda l: l * th.cos(model.calc_pennation_angle(l))
    numeric = (lce_at(fiber_length + h * fiber_velocity) - lce_at(fiber_length - h * fiber_velocity)) / (2 * h)
    assert th.allclose(exact, numeric, rtol=1e-6)

  def test_derivatives_match_finite_differences(self, model):
    fiber_length = th.tensor([0.06, 0.1, 0.14], dtype=th.float64)
    h = 1e-7
    _, sin_phi, cos_phi = model.calc_pennation_trig(fiber_length)

    dphi = model.calc_dpennation_angle_dfiber_length(fiber_length)
    numeric_dphi = (model.calc_pennation_angle(fiber_length + h)
                    - model.calc_pennation_angle(fiber_length - h)) / (2 * h)
    assert th.allclose(dphi, numeric_dphi, rtol=1e-6)

    lce_at = lambda l: l * th.cos(model.calc_pennation_angle(l))
    dlce_at = model.calc_dfiber_length_along_tendon_dfiber_length(fiber_length, sin_phi, cos_phi, dphi)
    numeric_dlce_at = (lce_at(fiber_length + h) - lce_at(fiber_length - h)) / (2 * h)
    assert th.allclose(dlce_at, numeric_dlce_at, rtol=1e-6)

    dtl = model.calc_dtendon_length_dfiber_length(fiber_length, sin_phi, cos_phi, dphi)
    assert th.allclose(dtl, -dlce_at)

  def test_angle_derivative_vanishes_when_capped(self, model):
    short = 0.5 * model.minimum_fiber_length()
    assert model.calc_dpennation_angle_dfiber_length(short).item() == 0.

  def test_fiber_velocity_from_along_tendon_velocity(self, model):
    cos_phi = th.tensor([0.9], dtype=th.float64)
    velocity = model.calc_fiber_velocity(cos_phi, th.tensor([0.5], dtype=th.float64))
    assert math.isclose(velocity.item(), 0.45, rel_tol=1e-12)
    tendon_velocity = model.calc_tendon_velocity(th.tensor([0.6], dtype=th.float64), th.tensor([0.5], dtype=th.float64))
    assert math.isclose(tendon_velocity.item(), 0.1, rel_tol=1e-9)

  @pytest.mark.parametrize('kwargs', [
    {'optimal_fiber_length': 0.},
    {'optimal_fiber_length': 0.1, 'maximum_pennation_angle': math.pi / 2},
    {'optimal_fiber_length': 0.1, 'pennation_angle_at_optimal': 1.5},
  ])
  def test_invalid_parameters(self, kwargs):
    with pytest.raises(ValueError):
      FixedWidthPennationModel(**kwargs)

  def test_get_save_config(self, model):
    cfg = model.get_save_config()
    assert cfg['name'] == 'FixedWidthPennationModel'
    assert cfg['pennation_angle_at_optimal'] == pytest.approx([0.3])
