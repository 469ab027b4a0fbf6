"""
Main orchestrator for Grafana Team Sync application.

This module wires configuration, logging and the reconciler together and
exposes the three ways of triggering a pass: once from the command line, on a
cron schedule, and through the HTTP server. Passes never overlap within one
process.
"""

import sys
import json
import logging
import argparse
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from grafana_team_sync.config import load_config, ConfigurationError
from grafana_team_sync.errors import DirectoryBindError, DirectoryConnectError, SyncInProgressError
from grafana_team_sync.grafana.client import GrafanaClient
from grafana_team_sync.ldap_client import LDAPClient
from grafana_team_sync.logging_setup import setup_logging
from grafana_team_sync.models import AppConfig, ReconciliationResult
from grafana_team_sync.reconciler import Reconciler
from grafana_team_sync.retry import retry_on_connect_failure

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SYNC_FAILURES = 1
EXIT_CONFIG_ERROR = 2
EXIT_LDAP_ERROR = 3
EXIT_UNEXPECTED = 4


class SyncOrchestrator:
    """
    Main orchestrator for LDAP to Grafana team synchronization.

    Owns the configuration value and serializes reconciliation passes.
    """

    def __init__(self, config_path: Optional[str] = None, mapping_path: Optional[str] = None,
                 log_level: Optional[str] = None, config: Optional[AppConfig] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            mapping_path: Path to a separate mapping file
            log_level: Log level overriding the configured one
            config: Already loaded configuration, skips file loading when given
        """
        self.config = config
        self.config_path = config_path
        self.mapping_path = mapping_path
        self.log_level = log_level

        self._pass_lock = threading.Lock()
        self.last_result = None

    def load_configuration(self) -> AppConfig:
        """Load and validate configuration once."""
        if self.config is None:
            self.config = load_config(self.config_path, self.mapping_path)
        return self.config

    def setup_logging(self):
        """Configure logging based on configuration."""
        setup_logging(self.config.logging, self.log_level)

    def run_pass(self, blocking: bool = True) -> ReconciliationResult:
        """
        Run one reconciliation pass.

        An LDAP connect failure is retried according to error_handling since
        nothing has been changed in Grafana at that point. Other failures are
        reported in the returned result.

        Args:
            blocking: Wait for a running pass to finish instead of failing

        Raises:
            SyncInProgressError: If blocking is False and a pass is running
            DirectoryConnectError: If LDAP stays unreachable after all retries
            DirectoryBindError: If the LDAP bind is rejected
        """
        if not self._pass_lock.acquire(blocking=blocking):
            raise SyncInProgressError("a sync pass is already running")

        try:
            result = retry_on_connect_failure(self._run_single_pass, self.config.error_handling)
        finally:
            self._pass_lock.release()

        self.last_result = result
        return result

    def _run_single_pass(self) -> ReconciliationResult:
        return Reconciler(self.config).run_pass()

    def run(self) -> int:
        """
        Run a single synchronization from the command line.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.load_configuration()
            self.setup_logging()

            logger.info("Starting Grafana team sync")
            start_time = datetime.now()

            result = self.run_pass()

            runtime_seconds = (datetime.now() - start_time).total_seconds()
            self._log_sync_summary(result, runtime_seconds)

            if not result.ok:
                logger.warning(f"Sync completed with {len(result.failures)} failure(s)")
                return EXIT_SYNC_FAILURES
            logger.info("Sync completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except (DirectoryConnectError, DirectoryBindError) as e:
            logger.error(f"LDAP error: {e}")
            return EXIT_LDAP_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED

    def serve(self, listen_address: Optional[str] = None) -> int:
        """
        Run the HTTP trigger, plus the cron job when sync.enabled is set.

        Returns:
            Exit code once the server stops
        """
        from grafana_team_sync.scheduler import start_scheduler
        from grafana_team_sync.server import serve

        try:
            self.load_configuration()
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        self.setup_logging()

        scheduler = None
        if self.config.sync.enabled:
            scheduler = start_scheduler(self, self.config.sync.schedule)
        try:
            serve(self, listen_address or self.config.listen_address)
        except ValueError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except OSError as e:
            logger.error(f"Cannot listen on {listen_address or self.config.listen_address}: {e}")
            return EXIT_UNEXPECTED
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
        return EXIT_OK

    def _log_sync_summary(self, result: ReconciliationResult, runtime_seconds: float):
        """Log final synchronization statistics."""
        runtime_str = f"{runtime_seconds:.2f} seconds"
        if runtime_seconds > 60:
            minutes = int(runtime_seconds // 60)
            seconds = runtime_seconds % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        summary = result.summary()
        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Orgs processed: {summary['orgs_processed']}")
        logger.info(f"Orgs with failures: {summary['orgs_failed']}")
        logger.info(f"Teams converged: {summary['teams_converged']}")
        logger.info(f"Teams created: {summary['teams_created']}")
        logger.info(f"Teams failed: {summary['teams_failed']}")

        for org in result.orgs:
            logger.info(f"--- orgId {org.org_id} ---")
            for outcome in org.outcomes:
                logger.info(f"  {outcome.team}: {len(outcome.admins)} admins, {len(outcome.members)} members"
                            f"{' (created)' if outcome.created else ''}")
            for failure in org.failures:
                logger.error(f"  {failure}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self.load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            with LDAPClient(self.config.ldap) as ldap_client:
                ldap_client.connect()
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP connection and bind successful'
            }
        except Exception as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            with GrafanaClient(self.config.grafana) as grafana_client:
                grafana_health = grafana_client.health()
            health_status['checks']['grafana'] = {
                'status': 'pass',
                'message': f'Grafana reachable (database {grafana_health.database or "unknown"}, '
                           f'version {grafana_health.version or "unknown"})'
            }
        except Exception as e:
            health_status['checks']['grafana'] = {
                'status': 'fail',
                'message': f'Grafana unreachable: {e}'
            }
            health_status['status'] = 'unhealthy'

        return health_status


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--config', '-c', help='Path to configuration file')
    common.add_argument('--mapping', '-m', help='Path to mapping configuration file')
    common.add_argument('--level', help='Log level (DEBUG, INFO, WARNING, ERROR)')

    parser = argparse.ArgumentParser(prog='grafana-team-sync',
                                     description='Sync Grafana teams with LDAP')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('sync', parents=[common], help='Run a sync job once')

    server_parser = subparsers.add_parser('server', parents=[common],
                                          help='Run as server (HTTP trigger and cron job)')
    server_parser.add_argument('--listen-address', help='Address for server to listen on, e.g. :8080')

    subparsers.add_parser('health-check', parents=[common], help='Check configuration, LDAP and Grafana')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    orchestrator = SyncOrchestrator(config_path=args.config, mapping_path=args.mapping,
                                    log_level=args.level)

    if args.command == 'health-check':
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.command == 'server':
        sys.exit(orchestrator.serve(args.listen_address))

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
