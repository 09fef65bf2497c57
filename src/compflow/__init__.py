"""
*COMPFLOW*

Compressible multi-phase, multi-component pressure solver with
IMPES-style explicit transport.
"""

from ._precision import *  # noqa
from .errors import *  # noqa
from .types import *  # noqa
from .models import *  # noqa
from .interfaces import *  # noqa
from .config import *  # noqa
from .boundary_conditions import *  # noqa
from .wells import *  # noqa
from .convergence import *  # noqa
from .properties import *  # noqa
from .linear_solvers import *  # noqa
from .linearization import *  # noqa
from .solver import *  # noqa
