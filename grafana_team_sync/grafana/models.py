"""
Request and response shapes for the Grafana HTTP API endpoints used by the sync.

Each response type exposes ``from_dict`` so GrafanaClient.request() can decode
a payload into exactly the shape the endpoint returns.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List


@dataclass
class Team:
    """Entry of GET /api/teams/search."""

    id: int
    name: str
    org_id: int = 0
    uid: str = ''
    email: str = ''
    member_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Team':
        return cls(
            id=int(data['id']),
            name=data.get('name', ''),
            org_id=int(data.get('orgId') or 0),
            uid=data.get('uid') or '',
            email=data.get('email') or '',
            member_count=int(data.get('memberCount') or 0),
        )


@dataclass
class TeamList:
    """GET /api/teams/search"""

    total_count: int
    teams: List[Team] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TeamList':
        return cls(
            total_count=int(data.get('totalCount') or 0),
            teams=[Team.from_dict(t) for t in data.get('teams') or []],
        )


@dataclass
class AddTeamPayload:
    """POST /api/teams"""

    name: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AddTeamResponse:
    team_id: int
    message: str = ''
    uid: str = ''

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AddTeamResponse':
        return cls(
            team_id=int(data['teamId']),
            message=data.get('message') or '',
            uid=data.get('uid') or '',
        )


@dataclass
class BulkUpdateTeamMembersPayload:
    """PUT /api/teams/<teamId>/members"""

    members: List[str] = field(default_factory=list)
    admins: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'members': list(self.members), 'admins': list(self.admins)}


@dataclass
class MessageResponse:
    message: str = ''

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MessageResponse':
        return cls(message=data.get('message') or '')


@dataclass
class OrgUser:
    """Entry of GET /api/org/users (org chosen by the X-Grafana-Org-Id header)."""

    user_id: int
    email: str
    org_id: int = 0
    login: str = ''
    role: str = ''

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OrgUser':
        return cls(
            user_id=int(data.get('userId') or 0),
            email=data.get('email') or '',
            org_id=int(data.get('orgId') or 0),
            login=data.get('login') or '',
            role=data.get('role') or '',
        )


@dataclass
class OrgUserList:
    users: List[OrgUser] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> 'OrgUserList':
        # The endpoint returns a bare JSON array
        return cls(users=[OrgUser.from_dict(u) for u in data or []])


@dataclass
class HealthResponse:
    """GET /api/health"""

    database: str = ''
    version: str = ''

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HealthResponse':
        return cls(database=data.get('database') or '', version=data.get('version') or '')
