"""
Profile package for roastprofile

This package provides the roast curve model: setpoints, interpolation of
target temperature and fan speed over elapsed time, and the binary layout
profiles are stored in.
"""

from .curve import ProfileCurve, Setpoint, sample_curve, MAX_SETPOINTS

__all__ = [
    'ProfileCurve',
    'Setpoint',
    'sample_curve',
    'MAX_SETPOINTS'
]
