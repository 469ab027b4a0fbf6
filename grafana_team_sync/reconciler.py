"""
Reconciliation engine for Grafana Team Sync.

A pass opens one LDAP connection, walks every configured organization and
team in order, resolves the team's filters to email lists, applies the
membership policy, and converges the Grafana team with a lookup, an optional
create, and a single bulk membership replacement.

Failures are isolated: a team that fails is recorded and the next team runs,
an organization whose user snapshot cannot be fetched is recorded and the next
organization runs. Only a failure to connect or bind to LDAP aborts the pass.
"""

import logging
from typing import Callable, Dict, List, Optional, Set, Tuple

from grafana_team_sync.errors import (
    DirectoryQueryError,
    RemoteCreateError,
    RemoteLookupError,
    RemoteSnapshotError,
    RemoteUpdateError,
    SyncError,
)
from grafana_team_sync.grafana.client import GrafanaAPIError, GrafanaClient, TeamNotFoundError
from grafana_team_sync.ldap_client import LDAPClient
from grafana_team_sync.logging_setup import audit_logger
from grafana_team_sync.models import (
    AppConfig,
    LDAPSettings,
    OrgMapping,
    OrgResult,
    ReconciliationResult,
    SyncFailure,
    TeamOutcome,
    TeamSpec,
)
from grafana_team_sync.policy import apply_membership_policy

logger = logging.getLogger(__name__)

ROLE_MEMBER = 'member'
ROLE_ADMIN = 'admin'


class Reconciler:
    """
    Converges Grafana teams to the membership described by LDAP filters.

    The configuration is passed in explicitly; nothing is read from globals.
    """

    def __init__(self, config: AppConfig,
                 grafana_client: Optional[GrafanaClient] = None,
                 ldap_client_factory: Callable[[LDAPSettings], LDAPClient] = LDAPClient):
        """
        Initialize the reconciler.

        Args:
            config: Application configuration
            grafana_client: Grafana client to use, built from config when omitted
            ldap_client_factory: Callable building an LDAP client from LDAP settings
        """
        self.config = config
        self.grafana = grafana_client or GrafanaClient(config.grafana)
        self.ldap_client_factory = ldap_client_factory
        self._team_ids: Dict[Tuple[int, str], int] = {}

    def run_pass(self) -> ReconciliationResult:
        """
        Run one reconciliation pass across all configured organizations.

        Returns:
            Aggregated result; result.ok is True when nothing failed

        Raises:
            DirectoryConnectError: If the LDAP server cannot be reached
            DirectoryBindError: If the LDAP bind is rejected
        """
        result = ReconciliationResult()
        self._team_ids = {}

        try:
            with self.ldap_client_factory(self.config.ldap) as ldap_client:
                ldap_client.connect()

                for org in self.config.mapping:
                    result.orgs.append(self.reconcile_org(ldap_client, org))
        finally:
            self.grafana.close_connection()
            self._team_ids = {}

        logger.info(f"Reconciliation pass finished: {result.teams_converged} converged, "
                    f"{result.teams_created} created, {result.teams_failed} failed")
        return result

    def reconcile_org(self, ldap_client: LDAPClient, org: OrgMapping) -> OrgResult:
        """Reconcile every team of one organization, recording failures instead of raising."""
        org_result = OrgResult(org_id=org.org_id)
        logger.info(f"Processing orgId {org.org_id} ({len(org.teams)} teams)")

        known_emails = None
        if self.config.sync.filter_unknown_users:
            try:
                known_emails = self.fetch_known_emails(org.org_id)
            except RemoteSnapshotError as e:
                logger.error(f"Skipping orgId {org.org_id}: {e}")
                org_result.failures.append(SyncFailure.from_error(e, org_id=org.org_id))
                org_result.aborted = True
                return org_result

        for team in org.teams:
            try:
                outcome = self.reconcile_team(ldap_client, org.org_id, team, known_emails, org_result)
            except SyncError as e:
                logger.error(f"Failed to sync team '{team.name}' in orgId {org.org_id}: {e}")
                org_result.failures.append(SyncFailure.from_error(e, org_id=org.org_id, team=team.name))
            except Exception as e:
                logger.exception(f"Unexpected error syncing team '{team.name}' in orgId {org.org_id}")
                org_result.failures.append(SyncFailure.from_error(e, org_id=org.org_id, team=team.name))
            else:
                if outcome is not None:
                    org_result.outcomes.append(outcome)

        return org_result

    def fetch_known_emails(self, org_id: int) -> Set[str]:
        """
        Fetch the emails of every user in an organization.

        Raises:
            RemoteSnapshotError: If the listing fails
        """
        try:
            users = self.grafana.list_org_users(org_id)
        except GrafanaAPIError as e:
            raise RemoteSnapshotError(f"failed to list org users: {e}", org_id=org_id)

        emails = {user.email for user in users if user.email}
        logger.debug(f"orgId {org_id} has {len(emails)} users with an email")
        return emails

    def reconcile_team(self, ldap_client: LDAPClient, org_id: int, team: TeamSpec,
                       known_emails: Optional[Set[str]],
                       org_result: OrgResult) -> Optional[TeamOutcome]:
        """
        Resolve, filter and converge one team.

        Filter failures are appended to org_result and the team is skipped so
        that an unavailable role never replaces remote membership with nothing.

        Returns:
            The outcome, or None when the team was skipped
        """
        raw_members, member_error = self._resolve(ldap_client, org_id, team, ROLE_MEMBER, team.member_filter)
        raw_admins, admin_error = self._resolve(ldap_client, org_id, team, ROLE_ADMIN, team.admin_filter)

        query_errors = [e for e in (member_error, admin_error) if e is not None]
        if query_errors:
            for error in query_errors:
                org_result.failures.append(SyncFailure.from_error(error))
            logger.warning(f"Skipping team '{team.name}' in orgId {org_id}: "
                           f"{len(query_errors)} filter(s) could not be resolved")
            return None

        members, admins, dropped = apply_membership_policy(raw_members, raw_admins, known_emails)
        for email in dropped:
            logger.warning(f"Dropping {email} from team '{team.name}' in orgId {org_id}: "
                           f"not a user of the organization")

        logger.info(f"Resolved team '{team.name}' in orgId {org_id}: "
                    f"admins={admins} members={members}")

        outcome = self.converge_team(org_id, team.name, members, admins)
        outcome.dropped = dropped
        return outcome

    def _resolve(self, ldap_client: LDAPClient, org_id: int, team: TeamSpec,
                 role: str, filter_expression: str) -> Tuple[List[str], Optional[DirectoryQueryError]]:
        if not filter_expression:
            return [], None

        try:
            return ldap_client.resolve_emails(filter_expression), None
        except DirectoryQueryError as e:
            e.org_id = org_id
            e.team = team.name
            e.role = role
            e.filter_expression = e.filter_expression or filter_expression
            logger.error(f"Failed to get users for {role} filter {filter_expression} "
                         f"(team '{team.name}', orgId {org_id}): {e}")
            return [], e

    def converge_team(self, org_id: int, team_name: str,
                      members: List[str], admins: List[str]) -> TeamOutcome:
        """
        Make the Grafana team match the given member and admin lists.

        Looks the team up by name, creates it when missing, then replaces its
        membership in one call.

        Raises:
            RemoteLookupError: If the lookup fails for a reason other than not-found
            RemoteCreateError: If the team is missing and cannot be created
            RemoteUpdateError: If the membership replacement fails
        """
        team_id, created = self._ensure_team(org_id, team_name)

        try:
            response = self.grafana.replace_team_members(org_id, team_id, members, admins)
        except GrafanaAPIError as e:
            audit_logger.log_membership_replaced(org_id, team_name, team_id, len(members), len(admins), False)
            raise RemoteUpdateError(f"error bulk updating team members: {e}", org_id=org_id, team=team_name)

        audit_logger.log_membership_replaced(org_id, team_name, team_id, len(members), len(admins), True)
        logger.info(f"Successfully bulk updated team '{team_name}' (id {team_id}) in orgId {org_id}: "
                    f"{response.message}")

        return TeamOutcome(
            org_id=org_id,
            team=team_name,
            team_id=team_id,
            created=created,
            members=list(members),
            admins=list(admins),
        )

    def _ensure_team(self, org_id: int, team_name: str) -> Tuple[int, bool]:
        """Return (team_id, created), creating the team at most once per pass."""
        cached = self._team_ids.get((org_id, team_name))
        if cached is not None:
            return cached, False

        try:
            team = self.grafana.find_team_by_name(org_id, team_name)
        except TeamNotFoundError:
            logger.info(f"Team '{team_name}' doesn't exist in orgId {org_id}, creating it")
            try:
                team_id = self.grafana.create_team(org_id, team_name)
            except GrafanaAPIError as e:
                raise RemoteCreateError(f"error adding team: {e}", org_id=org_id, team=team_name)
            audit_logger.log_team_created(org_id, team_name, team_id)
            self._team_ids[(org_id, team_name)] = team_id
            return team_id, True
        except GrafanaAPIError as e:
            raise RemoteLookupError(f"error fetching team: {e}", org_id=org_id, team=team_name)

        logger.info(f"Team '{team_name}' found in orgId {org_id} with id {team.id}")
        self._team_ids[(org_id, team_name)] = team.id
        return team.id, False
