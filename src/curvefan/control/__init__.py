"""
Control package for Curvefan

This package provides the fan curve and the control loop that drives
the BMC from CPU package temperatures.
"""

from .curve import map_duty
from .loop import Action, ControlLoop, LoopState, TickDecision, step

__all__ = [
    'map_duty',
    'Action',
    'ControlLoop',
    'LoopState',
    'TickDecision',
    'step'
]
