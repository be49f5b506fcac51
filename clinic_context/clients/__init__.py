"""
Clinic Context Client Modules

HTTP clients for the hosted clinic backend.
"""

from .profile_client import (
    PatientProfile,
    ProfileClient,
    ProfileFetchError,
    get_profile_client,
    set_profile_client,
)

__all__ = [
    "PatientProfile",
    "ProfileClient",
    "ProfileFetchError",
    "get_profile_client",
    "set_profile_client",
]
