"""
Membership policy applied between LDAP resolution and Grafana convergence.

Admins take precedence: an email returned by both the admin and the member
filter is only ever sent as an admin. Emails are compared exactly as the
directory returns them.
"""

from typing import Iterable, List, Optional, Set, Tuple


def distinct(emails: Iterable[str]) -> List[str]:
    """Drop duplicates, keeping the order of first appearance."""
    seen = set()
    result = []
    for email in emails:
        if email not in seen:
            seen.add(email)
            result.append(email)
    return result


def apply_membership_policy(
    raw_members: Iterable[str],
    raw_admins: Iterable[str],
    known_emails: Optional[Set[str]] = None
) -> Tuple[List[str], List[str], List[str]]:
    """
    Compute the final member and admin lists for one team.

    Args:
        raw_members: Emails resolved from the member filter
        raw_admins: Emails resolved from the admin filter
        known_emails: Emails of existing org users; when given, anything else is dropped

    Returns:
        Tuple of (final_members, final_admins, dropped_emails)
    """
    admins = distinct(raw_admins)
    admin_set = set(admins)
    members = [email for email in distinct(raw_members) if email not in admin_set]

    dropped = []
    if known_emails is not None:
        dropped = [email for email in admins + members if email not in known_emails]
        if dropped:
            dropped_set = set(dropped)
            admins = [email for email in admins if email not in dropped_set]
            members = [email for email in members if email not in dropped_set]

    return members, admins, dropped
