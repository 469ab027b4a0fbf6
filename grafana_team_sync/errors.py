"""
Error taxonomy for Grafana Team Sync.

Every failure the reconciliation pass can hit is represented by a subclass of
SyncError. Each class carries a machine-readable ``kind`` and a ``fatal`` flag
that tells the orchestrator how far the failure reaches:

- directory connect/bind errors abort the whole pass and are raised
- query, lookup, create and update errors are scoped to one team
- snapshot errors are scoped to one organization and abort its team loop
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync errors."""

    kind = 'sync_error'
    fatal = False

    def __init__(self, message: str, org_id: Optional[int] = None,
                 team: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.org_id = org_id
        self.team = team


class DirectoryConnectError(SyncError):
    """Raised when the LDAP server cannot be reached."""

    kind = 'directory_connect_failed'
    fatal = True


class DirectoryBindError(SyncError):
    """Raised when the LDAP bind is rejected."""

    kind = 'directory_bind_failed'
    fatal = True


class DirectoryQueryError(SyncError):
    """Raised when an LDAP search for a team filter fails."""

    kind = 'directory_query_failed'

    def __init__(self, message: str, filter_expression: str = '',
                 org_id: Optional[int] = None, team: Optional[str] = None,
                 role: Optional[str] = None):
        super().__init__(message, org_id=org_id, team=team)
        self.filter_expression = filter_expression
        self.role = role


class RemoteLookupError(SyncError):
    """Raised when searching Grafana for a team fails for a reason other than not-found."""

    kind = 'remote_lookup_failed'


class RemoteCreateError(SyncError):
    """Raised when creating a missing Grafana team fails."""

    kind = 'remote_create_failed'


class RemoteUpdateError(SyncError):
    """Raised when the bulk membership replacement fails."""

    kind = 'remote_update_failed'


class RemoteSnapshotError(SyncError):
    """Raised when the org user listing needed for email filtering fails."""

    kind = 'remote_snapshot_failed'
    fatal = True


class SyncInProgressError(SyncError):
    """Raised when a pass is requested while another one is running."""

    kind = 'sync_in_progress'


class ReconciliationError(SyncError):
    """Composite error raised by ReconciliationResult.raise_for_failures()."""

    kind = 'reconciliation_failed'

    def __init__(self, failures):
        self.failures = list(failures)
        lines = [f"{len(self.failures)} failure(s) during reconciliation pass"]
        lines.extend(f"  - {failure}" for failure in self.failures)
        super().__init__("\n".join(lines))
