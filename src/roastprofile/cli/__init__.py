"""
CLI package for roastprofile

This package provides the command-line interface for managing
stored roast profiles.
"""

from .interface import main

__all__ = ['main']
