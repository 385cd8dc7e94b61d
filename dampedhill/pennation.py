import math
import torch as th
from torch.nn.parameter import Parameter
from dampedhill.errors import GeometryError


DTYPE = th.float64
TINY = 1e-12


class FixedWidthPennationModel(th.nn.Module):
  """Pennation model assuming that muscle fibers are arranged in a parallelogram of constant height (the fiber
  width). The fiber width is the projection of the fiber orthogonal to the tendon at optimal fiber length:

  .. math::
    w = l_{opt} \\sin(\\phi_{opt})

  and the pennation angle :math:`\\phi` of a fiber of length :math:`l_{CE}` satisfies
  :math:`l_{CE} \\sin(\\phi) = w`. The angle is capped at `maximum_pennation_angle`, which defines the shortest
  fiber length this model supports. If several muscles are modelled, every argument can be a `tensor` with one
  value per muscle.

  Args:
    optimal_fiber_length: `Float` or `tensor`, the optimal fiber length (m).
    pennation_angle_at_optimal: `Float` or `tensor`, the pennation angle (rad) at optimal fiber length.
    maximum_pennation_angle: `Float` or `tensor`, the largest pennation angle (rad) allowed. Must be in the
      `(0, pi/2)` range.
  """

  def __init__(self, optimal_fiber_length, pennation_angle_at_optimal=0., maximum_pennation_angle=math.acos(0.1)):
    super().__init__()
    self.__name__ = 'FixedWidthPennationModel'

    optimal_fiber_length = th.as_tensor(optimal_fiber_length, dtype=DTYPE)
    pennation_angle_at_optimal = th.as_tensor(pennation_angle_at_optimal, dtype=DTYPE)
    maximum_pennation_angle = th.as_tensor(maximum_pennation_angle, dtype=DTYPE)

    if th.any(optimal_fiber_length <= 0.):
      raise ValueError('Optimal fiber length must be positive.')
    if th.any(maximum_pennation_angle <= 0.) or th.any(maximum_pennation_angle >= math.pi / 2):
      raise ValueError('Maximum pennation angle must be in the (0, pi/2) range.')
    if th.any(pennation_angle_at_optimal < 0.) or th.any(pennation_angle_at_optimal > maximum_pennation_angle):
      raise ValueError('Pennation angle at optimal fiber length must be in the [0, maximum_pennation_angle] range.')

    height = optimal_fiber_length * th.sin(pennation_angle_at_optimal)
    max_sin = th.sin(maximum_pennation_angle)
    min_length = th.clip(height / max_sin, min=TINY)

    self.optimal_fiber_length = Parameter(optimal_fiber_length, requires_grad=False)
    self.pennation_angle_at_optimal = Parameter(pennation_angle_at_optimal, requires_grad=False)
    self.maximum_pennation_angle = Parameter(maximum_pennation_angle, requires_grad=False)
    self.parallelogram_height = Parameter(height, requires_grad=False)
    self.maximum_sin_pennation = Parameter(max_sin, requires_grad=False)
    self._minimum_fiber_length = Parameter(min_length, requires_grad=False)

  @property
  def fiber_width(self) -> th.Tensor:
    return self.parallelogram_height

  def minimum_fiber_length(self) -> th.Tensor:
    """Returns the shortest fiber length (m) for which the pennation angle does not exceed its maximum."""
    return self._minimum_fiber_length

  def minimum_fiber_length_along_tendon(self) -> th.Tensor:
    min_length = self._minimum_fiber_length
    return min_length * th.cos(self.calc_pennation_angle(min_length))

  def calc_pennation_angle(self, fiber_length: th.Tensor) -> th.Tensor:
    """Computes the pennation angle (rad), capped at the maximum pennation angle for fibers shorter than the
    minimum fiber length.
    """
    sin_phi = self.parallelogram_height / th.clip(fiber_length, min=TINY)
    sin_phi = th.where(self.parallelogram_height > TINY, input=sin_phi, other=th.zeros_like(sin_phi))
    return th.asin(th.minimum(sin_phi, self.maximum_sin_pennation))

  def calc_pennation_trig(self, fiber_length: th.Tensor) -> tuple[th.Tensor, th.Tensor, th.Tensor]:
    phi = self.calc_pennation_angle(fiber_length)
    return phi, th.sin(phi), th.cos(phi)

  def fiber_length_from_pennation(self, fiber_length_along_tendon: th.Tensor):
    """Finds the fiber length whose projection onto the tendon is `fiber_length_along_tendon`, given the fixed fiber
    width. The angle is the exact geometric angle of that configuration, so callers should keep the projected
    length above :meth:`minimum_fiber_length_along_tendon` if the maximum angle is to be respected.

    Args:
      fiber_length_along_tendon: `Tensor`, the fiber length projected onto the tendon (m).

    Returns:
      A `tuple` containing the fiber length, the pennation angle, and the sine and cosine of that angle.

    Raises:
      GeometryError: If any projected length is negative or not finite.
    """
    fiber_length_along_tendon = th.as_tensor(fiber_length_along_tendon, dtype=DTYPE)
    if not th.all(th.isfinite(fiber_length_along_tendon)):
      raise GeometryError('Fiber length along tendon must be finite.')
    if th.any(fiber_length_along_tendon < 0.):
      raise GeometryError(
        f'Fiber length along tendon must be non-negative, got {fiber_length_along_tendon.min().item():.6g} m. '
        'This configuration would require a fiber shorter than its width.')
    height = self.parallelogram_height
    fiber_length = th.sqrt(height ** 2 + fiber_length_along_tendon ** 2)
    phi = th.atan2(height, fiber_length_along_tendon)
    sin_phi = height / th.clip(fiber_length, min=TINY)
    cos_phi = fiber_length_along_tendon / th.clip(fiber_length, min=TINY)
    cos_phi = th.where(fiber_length > TINY, input=cos_phi, other=th.ones_like(cos_phi))
    return fiber_length, phi, sin_phi, cos_phi

  def calc_fiber_length_along_tendon(self, fiber_length, cos_phi):
    return fiber_length * cos_phi

  def calc_tendon_length(self, cos_phi, fiber_length, path_length):
    return path_length - fiber_length * cos_phi

  def velocity_projection(self, fiber_velocity, sin_phi, cos_phi, fiber_length=None, pennation_angular_velocity=None):
    """Projects the fiber velocity onto the tendon. By default the angular velocity cross term is ignored, which is
    a first-order approximation. If `fiber_length` and `pennation_angular_velocity` are both provided, the cross
    term :math:`-l_{CE} \\dot{\\phi} \\sin(\\phi)` is included.
    """
    velocity = fiber_velocity * cos_phi
    if fiber_length is not None and pennation_angular_velocity is not None:
      velocity = velocity - fiber_length * pennation_angular_velocity * sin_phi
    return velocity

  def calc_pennation_angular_velocity(self, tan_phi, fiber_length, fiber_velocity):
    return -(fiber_velocity / fiber_length) * tan_phi

  def calc_fiber_velocity(self, cos_phi, fiber_velocity_along_tendon):
    """Fiber velocity (m/s) matching a velocity of the fiber projection onto the tendon."""
    return fiber_velocity_along_tendon * cos_phi

  def calc_tendon_velocity(self, path_lengthening_speed, fiber_velocity_along_tendon):
    return path_lengthening_speed - fiber_velocity_along_tendon

  def calc_dpennation_angle_dfiber_length(self, fiber_length):
    height = self.parallelogram_height
    sin_phi = height / th.clip(fiber_length, min=TINY)
    free = th.logical_and(height > TINY, sin_phi < self.maximum_sin_pennation)
    cos_phi = th.sqrt(th.clip(1. - sin_phi ** 2, min=TINY))
    return th.where(free, input=-sin_phi / (cos_phi * fiber_length), other=th.zeros_like(sin_phi))

  def calc_dfiber_length_along_tendon_dfiber_length(self, fiber_length, sin_phi, cos_phi, dphi_dlce):
    return cos_phi - fiber_length * sin_phi * dphi_dlce

  def calc_dtendon_length_dfiber_length(self, fiber_length, sin_phi, cos_phi, dphi_dlce):
    return -self.calc_dfiber_length_along_tendon_dfiber_length(fiber_length, sin_phi, cos_phi, dphi_dlce)

  def get_save_config(self):
    return {
      'name': self.__name__,
      'pennation_angle_at_optimal': self.pennation_angle_at_optimal.flatten().tolist(),
      'maximum_pennation_angle': self.maximum_pennation_angle.flatten().tolist(),
    }
