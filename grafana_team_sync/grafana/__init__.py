"""Grafana HTTP API client and request/response shapes."""

from grafana_team_sync.grafana.client import (
    GrafanaAPIError,
    GrafanaAuthenticationError,
    GrafanaClient,
    TeamNotFoundError,
)

__all__ = [
    'GrafanaAPIError',
    'GrafanaAuthenticationError',
    'GrafanaClient',
    'TeamNotFoundError',
]
