"""Tests for the characteristic curves and the inverse force-velocity curve."""

import math
import pytest
import torch as th

from dampedhill.curves import (
  ActiveForceLengthCurve,
  Curve,
  FiberForceLengthCurve,
  ForceVelocityCurve,
  ForceVelocityInverseCurve,
  TendonForceLengthCurve,
)


def finite_difference(curve, x, h=1e-6):
  return (curve.evaluate(x + h) - curve.evaluate(x - h)) / (2 * h)


class TestActiveForceLengthCurve:

  @pytest.fixture
  def curve(self):
    return ActiveForceLengthCurve()

  def test_peak_at_optimal_length(self, curve):
    x = th.tensor([1.], dtype=th.float64)
    assert th.allclose(curve.evaluate(x), th.ones_like(x))
    assert th.allclose(curve.derivative(x), th.zeros_like(x))

  def test_force_decreases_away_from_optimal(self, curve):
    values = curve.evaluate(th.tensor([0.7, 1., 1.2], dtype=th.float64))
    assert values[0] < values[1]
    assert values[2] < values[1]

  def test_derivative_matches_finite_difference(self, curve):
    x = th.tensor([0.5, 0.8, 0.95, 1.05, 1.3], dtype=th.float64)
    assert th.allclose(curve.derivative(x), finite_difference(curve, x), rtol=1e-5, atol=1e-7)

  def test_invalid_parameters(self):
    with pytest.raises(ValueError):
      ActiveForceLengthCurve(width_ascending=0.)
    with pytest.raises(ValueError):
      ActiveForceLengthCurve(min_norm_active_fiber_length=1.2)

  def test_satisfies_curve_protocol(self, curve):
    assert isinstance(curve, Curve)


class TestFiberForceLengthCurve:

  @pytest.fixture
  def curve(self):
    return FiberForceLengthCurve()

  def test_zero_below_slack_length(self, curve):
    x = th.tensor([0.5, 0.85, 0.9], dtype=th.float64)
    assert th.all(curve.evaluate(x) == 0.)
    assert th.all(curve.derivative(x) == 0.)

  def test_reaches_reference_force(self, curve):
    x = th.tensor([1.14], dtype=th.float64)
    assert th.allclose(curve.evaluate(x), th.tensor([2.], dtype=th.float64))

  def test_monotone_above_slack_length(self, curve):
    values = curve.evaluate(th.linspace(0.9, 1.6, 50, dtype=th.float64))
    assert th.all(values[1:] > values[:-1])

  def test_derivative_matches_finite_difference(self, curve):
    x = th.tensor([0.95, 1.1, 1.4], dtype=th.float64)
    assert th.allclose(curve.derivative(x), finite_difference(curve, x), rtol=1e-5)


class TestTendonForceLengthCurve:

  @pytest.fixture
  def curve(self):
    return TendonForceLengthCurve()

  def test_slack_tendon_has_no_force(self, curve):
    x = th.tensor([0.9, 1.], dtype=th.float64)
    assert th.all(curve.evaluate(x) == 0.)

  def test_continuous_at_transition(self, curve):
    transition = 1. + 0.0425
    below = curve.evaluate(th.tensor([transition - 1e-9], dtype=th.float64))
    above = curve.evaluate(th.tensor([transition], dtype=th.float64))
    assert th.allclose(below, above, atol=1e-6)
    assert th.allclose(above, th.tensor([0.4], dtype=th.float64))

  def test_slope_continuous_at_transition(self, curve):
    transition = 1. + 0.0425
    below = curve.derivative(th.tensor([transition - 1e-9], dtype=th.float64))
    above = curve.derivative(th.tensor([transition + 1e-9], dtype=th.float64))
    assert th.allclose(below, above, rtol=1e-5)

  def test_derivative_matches_finite_difference(self, curve):
    x = th.tensor([1.01, 1.03, 1.08], dtype=th.float64)
    assert th.allclose(curve.derivative(x), finite_difference(curve, x), rtol=1e-5)

  def test_inverse_on_toe_and_linear_regions(self, curve):
    x = th.tensor([1.005, 1.03, 1.0425, 1.06, 1.1], dtype=th.float64)
    assert th.allclose(curve.inverse(curve.evaluate(x)), x, rtol=0., atol=1e-12)

  def test_inverse_of_no_force_is_slack_length(self, curve):
    fse = th.tensor([-0.1, 0.], dtype=th.float64)
    assert th.all(curve.inverse(fse) == 1.)


class TestForceVelocityCurve:

  @pytest.fixture
  def curve(self):
    return ForceVelocityCurve()

  def test_landmarks(self, curve):
    values = curve.evaluate(th.tensor([-1., 0., 1.], dtype=th.float64))
    assert th.allclose(values, th.tensor([0., 1., 1.5], dtype=th.float64))

  def test_strictly_increasing(self, curve):
    values = curve.evaluate(th.linspace(-1.5, 1.5, 301, dtype=th.float64))
    assert th.all(values[1:] > values[:-1])

  def test_slope_continuous_at_isometric_point(self, curve):
    slopes = curve.derivative(th.tensor([-1e-12, 1e-12], dtype=th.float64))
    assert math.isclose(slopes[0].item(), slopes[1].item(), rel_tol=1e-6)

  def test_derivative_matches_finite_difference(self, curve):
    x = th.tensor([-0.8, -0.3, 0.2, 0.7, 1.3], dtype=th.float64)
    assert th.allclose(curve.derivative(x), finite_difference(curve, x), rtol=1e-5)

  def test_invalid_parameters(self):
    with pytest.raises(ValueError):
      ForceVelocityCurve(max_eccentric_force=1.)
    with pytest.raises(ValueError):
      ForceVelocityCurve(concentric_curvature=0.)


class TestForceVelocityInverseCurve:

  @pytest.fixture
  def curve(self):
    return ForceVelocityCurve()

  @pytest.fixture
  def inverse(self, curve):
    return ForceVelocityInverseCurve(curve)

  def test_inverts_forward_curve(self, curve, inverse):
    velocity = th.linspace(-0.98, 0.98, 97, dtype=th.float64)
    recovered = inverse.evaluate(curve.evaluate(velocity))
    assert th.allclose(recovered, velocity, atol=1e-6)

  def test_range_matches_forward_curve(self, inverse):
    assert math.isclose(inverse.min_value, 0., abs_tol=1e-12)
    assert math.isclose(inverse.max_value, 1.5, rel_tol=1e-12)

  def test_out_of_range_values_are_clamped_and_flagged(self, inverse):
    velocity, clamped = inverse.evaluate_clamped(th.tensor([-0.1, 2., float('nan'), 0.5], dtype=th.float64))
    assert th.allclose(velocity[:3], th.tensor([-1., 1., 0.], dtype=th.float64), atol=1e-9)
    assert clamped.tolist() == [True, True, True, False]
    assert th.all(th.isfinite(velocity))

  def test_derivative_is_reciprocal_of_forward_slope(self, curve, inverse):
    velocity = th.tensor([-0.6, -0.2, 0.3, 0.8], dtype=th.float64)
    slope = inverse.derivative(curve.evaluate(velocity))
    assert th.allclose(slope, 1. / curve.derivative(velocity), rtol=1e-3)

  def test_rejects_non_monotone_curve(self):

    class Flat:
      def evaluate(self, x):
        return th.ones_like(x)

      def derivative(self, x):
        return th.zeros_like(x)

    with pytest.raises(ValueError):
      ForceVelocityInverseCurve(Flat())
