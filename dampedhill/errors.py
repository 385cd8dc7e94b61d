"""Exceptions raised by `dampedhill` objects. Convergence problems are not exceptions: the solvers return them as
status tensors (see :class:`dampedhill.state.SolveStatus`).
"""


class MuscleError(Exception):
  """Base class for the exceptions raised by this package."""


class GeometryError(MuscleError, ValueError):
  """The requested pennation geometry is infeasible, for instance a negative fiber length along the tendon."""


class ActivationSingularity(MuscleError, ArithmeticError):
  """The product of activation and active-force-length multiplier is below the numeric floor, so that the
  force-velocity multiplier of an undamped fiber is unbounded.
  """


class CannotEquilibrate(MuscleError, RuntimeError):
  """The fiber-length equilibrium could not be found within the iteration cap."""
