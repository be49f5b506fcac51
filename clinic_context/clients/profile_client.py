"""
=============================================================================
PATIENT PROFILE CLIENT
=============================================================================

PURPOSE:
    Fetch the authoritative patient record by id from the hosted clinic
    backend (PostgREST-style `/rest/v1/user_profiles`).

WHY IT EXISTS:
    The active patient context is only a pointer. Pages confirm the pointer
    by fetching the record fresh; a stale or bogus id shows up here as
    "not found" and is reported through the page's own error path.

USAGE:
    from clinic_context.clients import get_profile_client

    client = get_profile_client()
    profile = await client.fetch_profile("123e4567-e89b-12d3-a456-426614174000")

=============================================================================
"""

import logging
import os
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

PROFILE_COLUMNS = "*, role:roles(name)"


class ProfileFetchError(Exception):
    """The backend could not be reached or answered with an error."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class PatientProfile(BaseModel):
    """A row of `user_profiles` as the clinic pages use it."""
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: Optional[str] = None
    role: Optional[Dict[str, Any]] = None

    ci: Optional[str] = None
    fecha_nacimiento: Optional[str] = None
    sexo: Optional[str] = None
    direccion_calle: Optional[str] = None
    direccion_zona_ciudad: Optional[str] = None
    direccion_departamento: Optional[str] = None
    telefono_contacto: Optional[str] = None

    @property
    def role_name(self) -> Optional[str]:
        return (self.role or {}).get("name")


class ProfileClient:
    """
    Async HTTP client for patient profiles.

    FEATURES:
        - One request per lookup, no caching (records are fetched fresh)
        - Missing rows are None, transport/HTTP failures raise ProfileFetchError
        - URL, key and timeout configurable via environment variables
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or os.getenv("CLINIC_BACKEND_URL", "http://localhost:54321")).rstrip("/")
        self.api_key = api_key if api_key is not None else os.getenv("CLINIC_BACKEND_KEY", "")
        self.timeout = timeout if timeout is not None else float(os.getenv("CLINIC_BACKEND_TIMEOUT", "5"))
        self._transport = transport

        logger.info(f"ProfileClient initialized: {self.base_url} (timeout={self.timeout}s)")

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def fetch_profile(self, patient_id: str) -> Optional[PatientProfile]:
        """
        Fetch one profile by id.

        Returns:
            The profile, or None if no row matches

        Raises:
            ProfileFetchError: on network errors or non-2xx responses
        """
        params = {"select": PROFILE_COLUMNS, "id": f"eq.{patient_id}", "limit": "1"}
        url = f"{self.base_url}/rest/v1/user_profiles"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, params=params, headers=self._headers())
        except httpx.TimeoutException as e:
            logger.warning(f"Profile fetch timeout for {patient_id}")
            raise ProfileFetchError(f"Timed out fetching profile {patient_id}") from e
        except httpx.HTTPError as e:
            logger.warning(f"Profile backend not reachable: {e}")
            raise ProfileFetchError(f"Could not reach profile backend: {e}") from e

        if response.status_code != 200:
            logger.warning(
                f"Profile fetch failed ({response.status_code}): {response.text[:200]}"
            )
            raise ProfileFetchError(
                f"Profile backend returned {response.status_code}",
                status=response.status_code,
            )

        rows = response.json()
        if isinstance(rows, dict):
            rows = [rows]
        if not rows:
            logger.info(f"Profile not found: {patient_id}")
            return None

        return PatientProfile(**rows[0])


# ============================================================
# SINGLETON INSTANCE
# ============================================================

_client: Optional[ProfileClient] = None


def get_profile_client() -> ProfileClient:
    """Get or create the shared profile client."""
    global _client
    if _client is None:
        _client = ProfileClient()
    return _client


def set_profile_client(client: Optional[ProfileClient]) -> None:
    """Replace the shared client (tests, alternate backends)."""
    global _client
    _client = client
