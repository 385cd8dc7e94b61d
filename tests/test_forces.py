import math
import pytest
import torch as th

from dampedhill import forces
from dampedhill.curves import ActiveForceLengthCurve, FiberForceLengthCurve, ForceVelocityCurve, TendonForceLengthCurve
from dampedhill.pennation import FixedWidthPennationModel


FISO = 1000.
LOPT = 0.1
LTS = 0.2


def t(*values):
  return th.tensor(values, dtype=th.float64)


class TestForceAndStiffness:

  @pytest.fixture
  def curves(self):
    return ActiveForceLengthCurve(), FiberForceLengthCurve(), TendonForceLengthCurve(), ForceVelocityCurve()

  @pytest.fixture
  def pennation(self):
    return FixedWidthPennationModel(optimal_fiber_length=LOPT, pennation_angle_at_optimal=0.25)

  def fiber_force(self, curves, pennation, a, fiber_length, fv):
    fal_curve, fpe_curve, _, _ = curves
    lce_n = fiber_length / LOPT
    return FISO * (a * fal_curve.evaluate(lce_n) * fv + fpe_curve.evaluate(lce_n))

  def test_force_decomposition(self):
    result = forces.calc_fiber_force(FISO, t(0.5), t(0.9), t(1.1), t(0.2), 0.1, t(0.3))
    assert result.active.item() == pytest.approx(FISO * 0.5 * 0.9 * 1.1)
    assert result.passive_elastic.item() == pytest.approx(FISO * 0.2)
    assert result.passive_damping.item() == pytest.approx(FISO * 0.1 * 0.3)
    assert result.total.item() == pytest.approx(result.active.item() + result.passive_elastic.item()
                                                + result.passive_damping.item())

  def test_fiber_stiffness_matches_finite_difference(self, curves, pennation):
    fal_curve, fpe_curve, _, _ = curves
    fiber_length = t(0.08, 0.095, 0.115)
    a, fv, h = 0.6, 1.2, 1e-7
    stiffness = forces.calc_fiber_stiffness(FISO, a, fv, fiber_length / LOPT, LOPT, fal_curve, fpe_curve)
    numeric = (self.fiber_force(curves, pennation, a, fiber_length + h, fv)
               - self.fiber_force(curves, pennation, a, fiber_length - h, fv)) / (2 * h)
    assert th.allclose(stiffness, numeric, rtol=1e-5)

  def test_projected_stiffness_matches_finite_difference(self, curves, pennation):
    fal_curve, fpe_curve, _, _ = curves
    fiber_length = t(0.08, 0.095, 0.115)
    a, fv, h = 0.6, 1.2, 1e-7
    _, sin_phi, cos_phi = pennation.calc_pennation_trig(fiber_length)
    fiber_force = self.fiber_force(curves, pennation, a, fiber_length, fv)
    stiffness = forces.calc_fiber_stiffness(FISO, a, fv, fiber_length / LOPT, LOPT, fal_curve, fpe_curve)

    dforce_at = forces.calc_dfiber_force_at_dfiber_length(
      fiber_force, stiffness, fiber_length, sin_phi, cos_phi, pennation)

    def force_at(length):
      return self.fiber_force(curves, pennation, a, length, fv) * th.cos(pennation.calc_pennation_angle(length))

    def length_at(length):
      return length * th.cos(pennation.calc_pennation_angle(length))

    numeric = (force_at(fiber_length + h) - force_at(fiber_length - h)) / (2 * h)
    assert th.allclose(dforce_at, numeric, rtol=1e-5)

    stiffness_at = forces.calc_dfiber_force_at_dfiber_length_at(dforce_at, sin_phi, cos_phi, fiber_length, pennation)
    numeric_at = (force_at(fiber_length + h) - force_at(fiber_length - h)) \
      / (length_at(fiber_length + h) - length_at(fiber_length - h))
    assert th.allclose(stiffness_at, numeric_at, rtol=1e-5)

  def test_tendon_force_derivative_matches_finite_difference(self, curves, pennation):
    _, _, fse_curve, _ = curves
    fiber_length = t(0.085, 0.09)
    path_length, h = 0.3, 1e-8

    def tendon_force(length):
      cos_phi = th.cos(pennation.calc_pennation_angle(length))
      return FISO * fse_curve.evaluate(pennation.calc_tendon_length(cos_phi, length, path_length) / LTS)

    _, sin_phi, cos_phi = pennation.calc_pennation_trig(fiber_length)
    tendon_length = pennation.calc_tendon_length(cos_phi, fiber_length, path_length)
    tendon_stiffness = forces.calc_tendon_stiffness(FISO, tendon_length / LTS, LTS, fse_curve)
    derivative = forces.calc_dtendon_force_dfiber_length(tendon_stiffness, fiber_length, sin_phi, cos_phi, pennation)
    numeric = (tendon_force(fiber_length + h) - tendon_force(fiber_length - h)) / (2 * h)
    assert th.all(derivative < 0.)
    assert th.allclose(derivative, numeric, rtol=1e-4)

  def test_slack_tendon_has_no_stiffness(self, curves):
    _, _, fse_curve, _ = curves
    assert forces.calc_tendon_stiffness(FISO, t(0.99), LTS, fse_curve).item() == 0.

  def test_musculotendon_stiffness(self):
    k_fiber, k_tendon = t(2e4), t(6e4)
    assert forces.calc_musculotendon_stiffness(k_fiber, k_tendon).item() == pytest.approx(1.5e4)
    assert forces.calc_musculotendon_stiffness(k_fiber, k_tendon, rigid_tendon=True).item() == pytest.approx(2e4)
    assert forces.calc_musculotendon_stiffness(t(0.), t(0.)).item() == 0.

  def test_velocity_derivative(self, curves):
    _, _, _, fv_curve = curves
    derivative = forces.calc_dfiber_force_dnorm_fiber_velocity(FISO, t(0.5), t(0.8), 0.1, t(0.), fv_curve)
    # isometric slope of the force-velocity curve is 1 + 1 / 0.25
    assert derivative.item() == pytest.approx(FISO * (0.5 * 0.8 * 5. + 0.1))

  def test_activation_inverts_force_balance(self):
    a, fal, fv, fpe, damping, v = 0.4, t(0.9), t(1.1), t(0.05), 0.1, t(0.2)
    cos_phi = t(math.cos(0.2))
    fiber_force = forces.calc_fiber_force(FISO, a, fal, fv, fpe, damping, v).total
    activation = forces.calc_activation(FISO, fiber_force * cos_phi, cos_phi, fal, fv, fpe, damping, v)
    assert activation.item() == pytest.approx(a)

  def test_activation_is_nan_without_active_capacity(self):
    activation = forces.calc_activation(FISO, t(100.), t(1.), t(0.), t(1.), t(0.), 0., t(0.))
    assert th.isnan(activation).all()
