import pytest
import torch as th

from dampedhill.curves import ForceVelocityCurve, ForceVelocityInverseCurve
from dampedhill.errors import ActivationSingularity
from dampedhill.state import NormalizedMultipliers
from dampedhill.velocity import DampedFiberVelocitySolver, calc_fv


def t(*values):
  return th.tensor(values, dtype=th.float64)


def balance_residual(fv_curve, a, multipliers, cos_phi, damping, v):
  return a * multipliers.fal * fv_curve.evaluate(v) + multipliers.fpe + damping * v - multipliers.fse / cos_phi


class TestDampedFiberVelocitySolver:

  @pytest.fixture
  def fv_curve(self):
    return ForceVelocityCurve()

  @pytest.fixture
  def solver(self, fv_curve):
    return DampedFiberVelocitySolver(fv_curve, ForceVelocityInverseCurve(fv_curve))

  @pytest.fixture
  def case(self):
    activation = t(1., 0.5, 0.8, 0.3)
    multipliers = NormalizedMultipliers(fal=t(1., 0.9, 0.6, 1.), fpe=t(0., 0.1, 0.05, 0.), fse=t(0.5, 0.6, 0.5, 0.4))
    cos_phi = t(1., 0.95, 0.9, 1.)
    return activation, multipliers, cos_phi

  def test_undamped_closed_form_balances_forces(self, fv_curve, solver, case):
    activation, multipliers, cos_phi = case
    solution = solver.solve(activation, multipliers, cos_phi, damping=0.)
    residual = balance_residual(fv_curve, activation, multipliers, cos_phi, 0., solution.norm_fiber_velocity)
    assert th.all(solution.converged)
    assert th.allclose(residual, th.zeros_like(residual), atol=1e-7)

  def test_undamped_solution_matches_calc_fv(self, fv_curve, solver, case):
    activation, multipliers, cos_phi = case
    solution = solver.solve(activation, multipliers, cos_phi, damping=0.)
    expected = calc_fv(activation, multipliers.fal, multipliers.fpe, multipliers.fse, cos_phi)
    assert th.allclose(fv_curve.evaluate(solution.norm_fiber_velocity), expected, rtol=1e-6)

  def test_singular_element_does_not_affect_batch(self, solver):
    multipliers = NormalizedMultipliers(fal=t(1., 1.), fpe=t(0., 0.), fse=t(0.5, 0.5))
    solution = solver.solve(t(1e-10, 0.8), multipliers, t(1., 1.), damping=0., raise_on_singularity=False)
    assert solution.norm_fiber_velocity[0].item() == 0.
    assert not solution.converged[0]
    assert solution.converged[1]
    assert th.all(th.isfinite(solution.norm_fiber_velocity))

  def test_damped_newton_balances_forces(self, fv_curve, solver, case):
    activation, multipliers, cos_phi = case
    solution = solver.solve(activation, multipliers, cos_phi, damping=0.1)
    residual = balance_residual(fv_curve, activation, multipliers, cos_phi, 0.1, solution.norm_fiber_velocity)
    assert th.all(solution.converged)
    assert th.all(th.abs(residual) <= solver.tolerance)
    assert th.allclose(solution.error, residual)

  def test_never_reports_convergence_above_tolerance(self, fv_curve, case):
    activation, multipliers, cos_phi = case
    solver = DampedFiberVelocitySolver(
      fv_curve, ForceVelocityInverseCurve(fv_curve), tolerance=1e-14, max_iterations=1)
    solution = solver.solve(activation, multipliers, cos_phi, damping=0.5)
    above = th.abs(solution.error) > solver.tolerance
    assert not th.any(solution.converged & above)

  def test_damping_resists_motion(self, solver):
    # one lengthening and one shortening fiber
    activation = t(0.5, 0.5)
    multipliers = NormalizedMultipliers(fal=t(1., 1.), fpe=t(0., 0.), fse=t(0.6, 0.3))
    cos_phi = t(1., 1.)
    undamped = solver.solve(activation, multipliers, cos_phi, damping=0.).norm_fiber_velocity
    damped = solver.solve(activation, multipliers, cos_phi, damping=0.2).norm_fiber_velocity
    assert undamped[0] > 0. and undamped[1] < 0.
    assert th.all(th.sign(damped) == th.sign(undamped))
    assert th.all(th.abs(damped) < th.abs(undamped))

  def test_isometric_balance_gives_zero_velocity(self, solver):
    multipliers = NormalizedMultipliers(fal=t(0.8), fpe=t(0.1), fse=t(0.5))
    for damping in (0., 0.1):
      solution = solver.solve(t(0.5), multipliers, t(1.), damping=damping)
      assert abs(solution.norm_fiber_velocity.item()) < 1e-8

  def test_singular_undamped_fiber_raises(self, solver):
    multipliers = NormalizedMultipliers(fal=t(1e-6), fpe=t(0.), fse=t(0.2))
    with pytest.raises(ActivationSingularity):
      solver.solve(t(1e-6), multipliers, t(1.), damping=0.)
    with pytest.raises(ArithmeticError):
      solver.solve(t(1e-6), multipliers, t(1.), damping=0.)

  def test_singular_undamped_fiber_flagged_when_not_raising(self, solver):
    multipliers = NormalizedMultipliers(fal=t(1e-6), fpe=t(0.), fse=t(0.2))
    solution = solver.solve(t(1e-6), multipliers, t(1.), damping=0., raise_on_singularity=False)
    assert solution.norm_fiber_velocity.item() == 0.
    assert not solution.converged.item()

  def test_damping_removes_singularity(self, fv_curve, solver):
    multipliers = NormalizedMultipliers(fal=t(1e-6), fpe=t(0.), fse=t(0.05))
    solution = solver.solve(t(1e-6), multipliers, t(1.), damping=0.1)
    assert solution.converged.item()
    assert th.isfinite(solution.norm_fiber_velocity).all()

  def test_out_of_range_target_is_flagged(self, solver):
    # the fiber cannot balance a tendon force above its eccentric capacity without damping
    multipliers = NormalizedMultipliers(fal=t(1.), fpe=t(0.), fse=t(0.9))
    solution = solver.solve(t(0.5), multipliers, t(1.), damping=0.)
    assert not solution.converged.item()
    assert solution.norm_fiber_velocity.item() == pytest.approx(1.)

  def test_broadcasts_over_batches(self, solver):
    activation = th.full((4, 1, 3), 0.5, dtype=th.float64)
    multipliers = NormalizedMultipliers(fal=t(1., 0.9, 0.8), fpe=t(0., 0., 0.), fse=t(0.4, 0.5, 0.6))
    solution = solver.solve(activation, multipliers, t(1., 1., 1.), damping=0.1)
    assert solution.norm_fiber_velocity.shape == (4, 1, 3)

  def test_invalid_configuration(self, fv_curve):
    inverse = ForceVelocityInverseCurve(fv_curve)
    with pytest.raises(ValueError):
      DampedFiberVelocitySolver(fv_curve, inverse, tolerance=0.)
    with pytest.raises(ValueError):
      DampedFiberVelocitySolver(fv_curve, inverse, max_iterations=0)


def test_calc_fv():
  fv = calc_fv(a=t(0.5), fal=t(0.8), fp=t(0.1), fse=t(0.5), cos_phi=t(1.))
  assert fv.item() == pytest.approx(1.)
