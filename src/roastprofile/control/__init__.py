"""
Control package for roastprofile

This package provides the roast state machine that follows the active
profile curve.
"""

from .roaster import RoastController, RoasterState

__all__ = [
    'RoastController',
    'RoasterState'
]
