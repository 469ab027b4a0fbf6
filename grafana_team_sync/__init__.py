"""
Grafana Team Sync - Reconcile Grafana team membership from LDAP filters.

This package resolves per-team LDAP filters into member and admin email sets
and converges Grafana teams to match, once, on a cron schedule, or on demand
through an HTTP trigger.
"""

__version__ = "1.0.0"
__author__ = "Grafana Team Sync Maintainers"
