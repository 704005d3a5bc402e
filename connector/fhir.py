"""FHIR-backed patient directory.

Looks a patient up by telecom (phone, then email) and creates a ``Patient``
resource when none matches, so every booking can carry a longitudinal-record
reference.
"""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import requests

from .http_client import DEFAULT_TIMEOUT_SECONDS, OAuthHTTPClient

logger = logging.getLogger(__name__)

DEFAULT_FHIR_BASE_URL = os.getenv("FHIR_BASE_URL", "")
DEFAULT_FHIR_TOKEN_URL = os.getenv("FHIR_TOKEN_URL", "")
DEFAULT_CLIENT_ID = os.getenv("FHIR_CLIENT_ID")
DEFAULT_CLIENT_SECRET = os.getenv("FHIR_CLIENT_SECRET")
DEFAULT_SCOPE = os.getenv("FHIR_SCOPE", "")

FHIR_JSON = "application/fhir+json"


class FHIRClient(OAuthHTTPClient):
    """Client for a FHIR R4 server using the client-credentials grant."""

    service_name = "FHIR"

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_FHIR_BASE_URL,
        token_url: Optional[str] = DEFAULT_FHIR_TOKEN_URL,
        client_id: Optional[str] = DEFAULT_CLIENT_ID,
        client_secret: Optional[str] = DEFAULT_CLIENT_SECRET,
        scope: Optional[str] = DEFAULT_SCOPE,
        access_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not access_token and (not client_id or not client_secret):
            raise ValueError("client_id and client_secret must be provided")
        super().__init__(
            base_url=base_url,
            token_url=token_url or None,
            access_token=access_token,
            timeout=timeout,
            session=session,
        )
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope or ""

    def _token_request_payload(self) -> Dict[str, str]:
        payload = {
            "grant_type": "client_credentials",
            "client_id": self.client_id or "",
            "client_secret": self.client_secret or "",
        }
        if self.scope:
            payload["scope"] = self.scope
        return payload

    def search_patients(self, **search_params: Any) -> List[Dict[str, Any]]:
        """Search Patient resources and return the matching resources."""

        params = {key: value for key, value in search_params.items() if value is not None}
        response = self._request("GET", "Patient", params=params, headers={"Accept": FHIR_JSON})
        bundle = response.json()
        return [
            entry["resource"]
            for entry in bundle.get("entry", []) or []
            if isinstance(entry, dict) and isinstance(entry.get("resource"), dict)
        ]

    def create_patient(self, resource: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(resource, dict) or not resource:
            raise ValueError("resource must be a non-empty dictionary")
        response = self._request(
            "POST",
            "Patient",
            json_payload=resource,
            headers={"Accept": FHIR_JSON, "Content-Type": FHIR_JSON},
            expected_status=(200, 201),
        )
        return response.json()


def build_patient_resource(
    name: str,
    phone: Optional[str],
    email: Optional[str],
    timezone: Optional[str] = None,
) -> Dict[str, Any]:
    parts = (name or "").split()
    given = parts[0] if parts else "Unknown"
    family = " ".join(parts[1:])

    telecom = []
    if phone:
        telecom.append({"system": "phone", "value": phone, "use": "mobile"})
    if email:
        telecom.append({"system": "email", "value": email})

    resource: Dict[str, Any] = {
        "resourceType": "Patient",
        "active": True,
        "name": [{"use": "official", "given": [given], "family": family, "text": name}],
        "telecom": telecom,
    }
    if timezone:
        resource["extension"] = [
            {"url": "http://hl7.org/fhir/StructureDefinition/timezone", "valueCode": timezone}
        ]
    return resource


class FHIRPatientDirectory:
    """Resolve or register patients on a FHIR server."""

    def __init__(self, client: FHIRClient) -> None:
        self._client = client

    def get_or_create_patient(
        self,
        name: str,
        phone: Optional[str],
        email: Optional[str],
        timezone: Optional[str] = None,
    ) -> Optional[str]:
        for value in (phone, email):
            if not value:
                continue
            matches = self._client.search_patients(telecom=value)
            if matches:
                logger.info("Found existing FHIR patient %s", matches[0].get("id"))
                return matches[0].get("id")

        created = self._client.create_patient(build_patient_resource(name, phone, email, timezone))
        logger.info("Created FHIR patient %s", created.get("id"))
        return created.get("id")
