"""
Data shapes shared by the configuration layer, the reconciler and the trigger shells.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from grafana_team_sync.errors import ReconciliationError, SyncError


# Configuration values

@dataclass
class LDAPSettings:
    host: str
    bind_dn: str
    base_dn: str
    bind_password: str = ''
    port: int = 389
    use_ssl: bool = False
    start_tls: bool = False
    verify_ssl: bool = True
    ca_cert_file: Optional[str] = None
    email_attribute: str = 'mail'
    connect_timeout: int = 10
    receive_timeout: int = 10
    page_size: int = 500


@dataclass
class GrafanaSettings:
    url: str
    user: str = ''
    password: str = ''
    token: str = ''
    timeout: int = 10
    verify_ssl: bool = True
    ca_cert_file: Optional[str] = None
    client_cert_file: Optional[str] = None
    client_key_file: Optional[str] = None
    client_cert_type: str = 'PEM'
    client_cert_password: Optional[str] = None


@dataclass
class SyncSettings:
    enabled: bool = False
    schedule: str = '*/30 * * * *'
    filter_unknown_users: bool = False


@dataclass
class TeamSpec:
    """One Grafana team and the LDAP filters that populate it."""

    name: str
    admin_filter: str = ''
    member_filter: str = ''


@dataclass
class OrgMapping:
    """Teams to reconcile inside one Grafana organization."""

    org_id: int
    teams: List[TeamSpec] = field(default_factory=list)


@dataclass
class AppConfig:
    ldap: LDAPSettings
    grafana: GrafanaSettings
    sync: SyncSettings = field(default_factory=SyncSettings)
    mapping: List[OrgMapping] = field(default_factory=list)
    listen_address: str = ':8080'
    logging: Dict[str, Any] = field(default_factory=dict)
    error_handling: Dict[str, Any] = field(default_factory=dict)


# Pass results

@dataclass
class SyncFailure:
    """A single recorded failure; the typed form of one joined error."""

    kind: str
    message: str
    fatal: bool = False
    org_id: Optional[int] = None
    team: Optional[str] = None
    role: Optional[str] = None
    filter_expression: Optional[str] = None

    @classmethod
    def from_error(cls, error: Exception, org_id: Optional[int] = None,
                   team: Optional[str] = None) -> 'SyncFailure':
        if isinstance(error, SyncError):
            return cls(
                kind=error.kind,
                message=error.message,
                fatal=error.fatal,
                org_id=error.org_id if error.org_id is not None else org_id,
                team=error.team or team,
                role=getattr(error, 'role', None),
                filter_expression=getattr(error, 'filter_expression', None) or None,
            )
        return cls(kind='unexpected', message=f"{type(error).__name__}: {error}",
                   org_id=org_id, team=team)

    def __str__(self) -> str:
        where = []
        if self.org_id is not None:
            where.append(f"org {self.org_id}")
        if self.team:
            where.append(f"team '{self.team}'")
        if self.role:
            where.append(f"{self.role} filter {self.filter_expression}")
        prefix = f"[{', '.join(where)}] " if where else ''
        return f"{prefix}{self.kind}: {self.message}"


@dataclass
class TeamOutcome:
    org_id: int
    team: str
    team_id: int
    created: bool = False
    members: List[str] = field(default_factory=list)
    admins: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)


@dataclass
class OrgResult:
    org_id: int
    outcomes: List[TeamOutcome] = field(default_factory=list)
    failures: List[SyncFailure] = field(default_factory=list)
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def failed_teams(self) -> List[str]:
        seen = []
        for failure in self.failures:
            if failure.team and failure.team not in seen:
                seen.append(failure.team)
        return seen


@dataclass
class ReconciliationResult:
    """Aggregate of every org processed in one pass."""

    orgs: List[OrgResult] = field(default_factory=list)

    @property
    def failures(self) -> List[SyncFailure]:
        return [failure for org in self.orgs for failure in org.failures]

    @property
    def ok(self) -> bool:
        return not self.failures

    def has_fatal(self) -> bool:
        """True if any recorded failure aborted an organization."""
        return any(failure.fatal for failure in self.failures)

    @property
    def teams_converged(self) -> int:
        return sum(len(org.outcomes) for org in self.orgs)

    @property
    def teams_created(self) -> int:
        return sum(1 for org in self.orgs for outcome in org.outcomes if outcome.created)

    @property
    def teams_failed(self) -> int:
        return sum(len(org.failed_teams) for org in self.orgs)

    @property
    def orgs_failed(self) -> int:
        return sum(1 for org in self.orgs if not org.ok)

    def raise_for_failures(self):
        if self.failures:
            raise ReconciliationError(self.failures)

    def summary(self) -> Dict[str, Any]:
        return {
            'orgs_processed': len(self.orgs),
            'orgs_failed': self.orgs_failed,
            'teams_converged': self.teams_converged,
            'teams_created': self.teams_created,
            'teams_failed': self.teams_failed,
            'failures': [str(failure) for failure in self.failures],
        }
