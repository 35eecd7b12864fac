"""
Curvefan - CPU package temperature driven fan control for IPMI servers

Samples the hottest CPU package temperature, maps it through a power curve
to a fan duty percentage and sends the duty to the BMC with raw IPMI
commands.
"""

__version__ = "0.1.0"
