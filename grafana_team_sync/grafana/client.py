"""
Grafana HTTP API client.

This module provides the typed transport used for every Grafana call along with
the team operations the reconciler needs: lookup by name, creation, bulk
membership replacement and org user listing. Organization scoping is done with
the X-Grafana-Org-Id header.
"""

import os
import json
import ssl
import base64
import logging
import tempfile
from typing import Any, Dict, List, Optional, Type, TypeVar, Union
from urllib.parse import urlencode, urlparse
from http.client import HTTPConnection, HTTPException, HTTPSConnection

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from grafana_team_sync.grafana.models import (
    AddTeamPayload,
    AddTeamResponse,
    BulkUpdateTeamMembersPayload,
    HealthResponse,
    MessageResponse,
    OrgUser,
    OrgUserList,
    Team,
    TeamList,
)
from grafana_team_sync.models import GrafanaSettings

logger = logging.getLogger(__name__)

T = TypeVar('T')

SEARCH_TEAMS_PATH = '/api/teams/search'
TEAMS_PATH = '/api/teams'
TEAM_MEMBERS_PATH = '/api/teams/{team_id}/members'
ORG_USERS_PATH = '/api/org/users'
HEALTH_PATH = '/api/health'


class GrafanaAPIError(Exception):
    """Base exception for Grafana API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GrafanaAuthenticationError(GrafanaAPIError):
    """Raised when Grafana rejects the configured credentials."""
    pass


class TeamNotFoundError(GrafanaAPIError):
    """Raised when no team with the exact name exists in the organization."""
    pass


class GrafanaClient:
    """
    Client for the subset of the Grafana HTTP API used to converge teams.

    Supports basic authentication (user/password) and bearer tokens (service
    account tokens). Every call is bounded by the configured timeout.
    """

    def __init__(self, settings: GrafanaSettings):
        """
        Initialize Grafana API client.

        Args:
            settings: Grafana URL, credentials and transport settings
        """
        self.settings = settings
        self.base_url = settings.url
        self.timeout = settings.timeout

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.settings.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning("SSL verification disabled for Grafana")
            return

        self.ssl_context = ssl.create_default_context()
        if self.settings.ca_cert_file:
            self.ssl_context.load_verify_locations(cafile=self.settings.ca_cert_file)
            logger.info(f"Loaded CA certificates for Grafana: {self.settings.ca_cert_file}")

        if self.settings.client_cert_file:
            self._load_client_cert(self.settings.client_cert_file)

    def _load_client_cert(self, cert_file: str):
        """Load a client certificate for mutual TLS from PEM files or a PKCS12 bundle."""
        password = self.settings.client_cert_password

        try:
            if self.settings.client_cert_type == 'PKCS12':
                with open(cert_file, 'rb') as f:
                    private_key, certificate, _ = pkcs12.load_key_and_certificates(
                        f.read(), password.encode() if password else None
                    )
                if not private_key or not certificate:
                    raise ValueError("bundle has no private key or certificate")

                cert_path = key_path = None
                try:
                    with tempfile.NamedTemporaryFile(mode='wb', delete=False, suffix='.pem') as f:
                        f.write(certificate.public_bytes(serialization.Encoding.PEM))
                        cert_path = f.name
                    with tempfile.NamedTemporaryFile(mode='wb', delete=False, suffix='.pem') as f:
                        f.write(private_key.private_bytes(
                            encoding=serialization.Encoding.PEM,
                            format=serialization.PrivateFormat.PKCS8,
                            encryption_algorithm=serialization.NoEncryption()
                        ))
                        key_path = f.name
                    self.ssl_context.load_cert_chain(cert_path, key_path)
                finally:
                    for path in (cert_path, key_path):
                        if path:
                            os.remove(path)
                logger.info(f"Loaded PKCS12 client certificate for Grafana: {cert_file}")
            else:
                self.ssl_context.load_cert_chain(cert_file, self.settings.client_key_file, password=password)
                logger.info(f"Loaded PEM client certificate for Grafana: {cert_file}")
        except (OSError, ValueError, ssl.SSLError) as e:
            logger.error(f"Failed to load client certificate {cert_file}: {e}")
            raise GrafanaAPIError(f"Client certificate loading failed: {e}")

    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        if self.settings.token:
            self.auth_headers['Authorization'] = f"Bearer {self.settings.token}"
            logger.debug("Configured Bearer token authentication for Grafana")
        elif self.settings.user and self.settings.password:
            credentials = base64.b64encode(
                f"{self.settings.user}:{self.settings.password}".encode()
            ).decode()
            self.auth_headers['Authorization'] = f"Basic {credentials}"
            logger.debug("Configured Basic authentication for Grafana")
        else:
            logger.warning("No Grafana credentials configured, requests will be anonymous")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def request(self, method: str, path: str, response_type: Type[T],
                body: Optional[Dict[str, Any]] = None,
                params: Optional[Dict[str, str]] = None,
                org_id: Optional[int] = None) -> T:
        """
        Make an HTTP request to Grafana and decode the response into response_type.

        Args:
            method: HTTP method (GET, POST, PUT)
            path: API endpoint path (relative to the Grafana URL)
            response_type: Shape with a from_dict() classmethod
            body: JSON request body
            params: Query string parameters
            org_id: Organization the call is scoped to

        Returns:
            Decoded response

        Raises:
            GrafanaAuthenticationError: On HTTP 401/403
            GrafanaAPIError: On any other transport, status or decoding failure
        """
        full_path = self.base_path + path
        if params:
            full_path += '?' + urlencode(params)

        request_headers = dict(self.auth_headers)
        request_headers['Accept'] = 'application/json'
        if org_id:
            request_headers['X-Grafana-Org-Id'] = str(org_id)

        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)

            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (HTTPException, OSError) as e:
            self.close_connection()
            raise GrafanaAPIError(f"Connection error to Grafana on {method} {path}: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status in (401, 403):
            raise GrafanaAuthenticationError(
                f"Authentication failed for Grafana on {method} {path}: HTTP {response.status}",
                status_code=response.status
            )
        if response.status < 200 or response.status >= 300:
            raise GrafanaAPIError(
                f"Unexpected status code {response.status} on {method} {path}: {_error_message(response_data)}",
                status_code=response.status
            )

        try:
            data = json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            raise GrafanaAPIError(f"Invalid JSON response from Grafana on {method} {path}: {e}")

        try:
            return response_type.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise GrafanaAPIError(f"Unexpected response shape from Grafana on {method} {path}: {e}")

    def find_team_by_name(self, org_id: int, name: str) -> Team:
        """
        Find a team by exact name within an organization.

        Raises:
            TeamNotFoundError: If no team has exactly this name
            GrafanaAPIError: If the search call fails
        """
        result = self.request('GET', SEARCH_TEAMS_PATH, TeamList, params={'name': name}, org_id=org_id)

        for team in result.teams:
            if team.name == name and (not team.org_id or team.org_id == org_id):
                return team

        raise TeamNotFoundError(f"Team '{name}' not found in orgId {org_id}")

    def create_team(self, org_id: int, name: str) -> int:
        """
        Create a team and return its numeric ID.

        Raises:
            GrafanaAPIError: If creation fails
        """
        payload = AddTeamPayload(name=name)
        response = self.request('POST', TEAMS_PATH, AddTeamResponse, body=payload.to_dict(), org_id=org_id)
        logger.debug(f"Create team '{name}' in orgId {org_id}: {response.message}")
        return response.team_id

    def replace_team_members(self, org_id: int, team_id: int,
                             members: List[str], admins: List[str]) -> MessageResponse:
        """
        Replace the full membership of a team in one call.

        Grafana removes everyone not listed, so both lists must be complete.
        """
        payload = BulkUpdateTeamMembersPayload(members=list(members), admins=list(admins))
        path = TEAM_MEMBERS_PATH.format(team_id=team_id)
        return self.request('PUT', path, MessageResponse, body=payload.to_dict(), org_id=org_id)

    def list_org_users(self, org_id: int) -> List[OrgUser]:
        """List every user of an organization."""
        return self.request('GET', ORG_USERS_PATH, OrgUserList, org_id=org_id).users

    def health(self) -> HealthResponse:
        return self.request('GET', HEALTH_PATH, HealthResponse)

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing Grafana connection: {e}")
            finally:
                self.connection = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()


def _error_message(response_data: str) -> str:
    """Pull Grafana's {"message": ...} out of an error body when present."""
    try:
        data = json.loads(response_data)
    except (ValueError, TypeError):
        return response_data[:200]
    if isinstance(data, dict) and data.get('message'):
        return data['message']
    return response_data[:200]
