"""
Catalog package for roastprofile

This package provides the persistent profile catalog: create, load,
update, delete and activate roast profiles, and recover from a store that
is out of space or left inconsistent by an interrupted save.
"""

from .manager import (
    ProfileCatalog,
    ProfileError,
    ProfileOperationResult,
    ProfileSummary,
    ProfileDetail,
    DEFAULT_PROFILE,
    build_curve,
    generate_id
)

__all__ = [
    'ProfileCatalog',
    'ProfileError',
    'ProfileOperationResult',
    'ProfileSummary',
    'ProfileDetail',
    'DEFAULT_PROFILE',
    'build_curve',
    'generate_id'
]
