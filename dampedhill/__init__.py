"""
A PyTorch-powered Hill-type muscle model with serial damping, and its fiber-length equilibrium solvers.
"""

from importlib import metadata

__name__ = "dampedhill"
__version__ = metadata.version("dampedhill")

from . import errors
from . import state
from . import curves
from . import pennation
from . import forces
from . import velocity
from . import equilibrium
from . import muscle
from . import plotor
