"""
IPMI Communication Package for Curvefan

This package sends raw IPMI commands to the BMC through ipmitool to take
manual control of the chassis fans.

Key Components:
- FanCommander: Capability probe and the two-step duty command sequence

Example Usage:
    >>> from curvefan.ipmi import FanCommander
    >>>
    >>> commander = FanCommander()
    >>> commander.probe()      # Get Device ID, then fan status (best effort)
    >>> commander.apply(30)    # Manual mode, then 30% on all fan zones

Note:
    This package requires ipmitool and access to /dev/ipmi0 (usually root).
"""

from .commander import (
    FanCommander,
    IPMIError,
    BmcUnreachableError,
    IPMICommandError,
    CommandFailedError,
    parse_response
)

__all__ = [
    'FanCommander',
    'IPMIError',
    'BmcUnreachableError',
    'IPMICommandError',
    'CommandFailedError',
    'parse_response'
]
