"""
vet_dispatch
============
Broadcast-then-race dispatch of veterinary cases: every eligible vet is
notified, the first acceptance wins, everybody else is told the case is gone.
"""

__version__ = "1.0.0"
