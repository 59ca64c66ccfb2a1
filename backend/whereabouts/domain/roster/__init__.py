"""Live roster exports."""

from .models import RosterEntry, RosterState  # noqa: F401
from .synchronizer import RosterSynchronizer  # noqa: F401
