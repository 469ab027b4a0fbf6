"""
Configuration loading and management for Grafana Team Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. The team mapping may live in the main file or in a
separate mapping file whose ``mapping`` key is merged in.
"""

import os
import yaml
import logging
from urllib.parse import urlparse
from typing import Dict, Any, List, Optional, Tuple
from apscheduler.triggers.cron import CronTrigger

from grafana_team_sync.errors import SyncError
from grafana_team_sync.models import (
    AppConfig, GrafanaSettings, LDAPSettings, OrgMapping, SyncSettings, TeamSpec
)

logger = logging.getLogger(__name__)


class ConfigurationError(SyncError):
    """Raised when configuration is invalid or missing required fields."""

    kind = 'config_invalid'
    fatal = True


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'grafana.user': 'GRAFANA_USER',
        'grafana.password': 'GRAFANA_PASSWORD',
        'grafana.token': 'GRAFANA_TOKEN',
        'grafana.client_cert_password': 'GRAFANA_CLIENT_CERT_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None, mapping_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
            mapping_path: Optional path to a separate mapping file. If None, uses MAPPING_PATH env var
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.mapping_path = mapping_path or os.getenv('MAPPING_PATH')
        self.config = {}

    def load(self) -> AppConfig:
        """
        Load configuration from file(s) and apply environment overrides.

        Returns:
            Validated application configuration

        Raises:
            ConfigurationError: If a file is missing, unparsable, or validation fails
        """
        self.config = self._read_yaml(self.config_path, "Configuration")

        if self.mapping_path:
            mapping_doc = self._read_yaml(self.mapping_path, "Mapping")
            if 'mapping' in mapping_doc:
                self.config['mapping'] = mapping_doc['mapping']
            logger.info(f"Mapping loaded from {self.mapping_path}")

        # Apply environment variable overrides
        self._apply_env_overrides()

        # Validate configuration
        self._validate()

        # Apply defaults
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return build_app_config(self.config)

    def _read_yaml(self, path: str, label: str) -> Dict[str, Any]:
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"{label} file not found: {path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {label.lower()} file {path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{label} file {path} must contain a mapping at the top level")
        return data

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        # Validate LDAP configuration
        ldap_config = self.config.get('ldap') or {}
        for field in ['host', 'bind_dn', 'base_dn']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        port = ldap_config.get('port')
        if port is not None and (not _is_int(port) or not 0 < port < 65536):
            errors.append(f"Invalid LDAP port: {port}")

        # Validate Grafana configuration
        grafana_config = self.config.get('grafana') or {}
        url = grafana_config.get('url')
        if not url:
            errors.append("Missing required Grafana field: url")
        elif urlparse(url).scheme not in ('http', 'https') or not urlparse(url).netloc:
            errors.append(f"Grafana url must be an http(s) URL: {url}")

        cert_type = str(grafana_config.get('client_cert_type', 'PEM')).upper()
        if cert_type not in ('PEM', 'PKCS12'):
            errors.append(f"Invalid grafana.client_cert_type: {cert_type} (expected PEM or PKCS12)")

        # Every remote call must stay bounded; an empty YAML value loads as None
        for section, key in (('ldap', 'connect_timeout'), ('ldap', 'receive_timeout'), ('grafana', 'timeout')):
            section_config = ldap_config if section == 'ldap' else grafana_config
            if key in section_config and not _is_positive_number(section_config[key]):
                errors.append(f"{section}.{key} must be a positive number of seconds: {section_config[key]}")

        server_config = self.config.get('server') or {}
        if 'listen_address' in server_config:
            try:
                parse_listen_address(server_config['listen_address'])
            except ValueError as e:
                errors.append(str(e))

        # Validate schedule
        sync_config = self.config.get('sync') or {}
        if sync_config.get('enabled'):
            schedule = sync_config.get('schedule')
            if not schedule:
                errors.append("sync.schedule is required when sync.enabled is true")
            else:
                try:
                    CronTrigger.from_crontab(schedule)
                except ValueError as e:
                    errors.append(f"Invalid sync.schedule '{schedule}': {e}")

        errors.extend(self._validate_mapping(self.config.get('mapping')))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _validate_mapping(self, mapping: Any) -> List[str]:
        errors = []
        if not mapping:
            return ["At least one organization mapping must be configured"]
        if not isinstance(mapping, list):
            return ["mapping must be a list of organizations"]

        seen_orgs = set()
        for i, org in enumerate(mapping):
            org_prefix = f"mapping[{i}]"
            if not isinstance(org, dict):
                errors.append(f"{org_prefix} must be a mapping")
                continue

            org_id = org.get('org_id')
            if not _is_int(org_id) or org_id <= 0:
                errors.append(f"{org_prefix}.org_id must be a positive integer")
            elif org_id in seen_orgs:
                errors.append(f"Duplicate org_id {org_id} in {org_prefix}")
            else:
                seen_orgs.add(org_id)

            teams = org.get('teams')
            if not teams or not isinstance(teams, list):
                errors.append(f"No teams configured for {org_prefix}")
                continue

            seen_teams = set()
            for j, team in enumerate(teams):
                team_prefix = f"{org_prefix}.teams[{j}]"
                if not isinstance(team, dict):
                    errors.append(f"{team_prefix} must be a mapping")
                    continue

                name = team.get('name')
                if not name or not isinstance(name, str):
                    errors.append(f"Missing name for {team_prefix}")
                elif name in seen_teams:
                    errors.append(f"Duplicate team name '{name}' in {org_prefix}")
                else:
                    seen_teams.add(name)

                # team config must contain at least an admin or member filter
                if not team.get('admin_user_filter') and not team.get('member_user_filter'):
                    errors.append(
                        f"One of admin_user_filter or member_user_filter must be specified "
                        f"for team {name or team_prefix} in orgId {org_id}"
                    )
        return errors

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # LDAP defaults
        ldap_config = self.config.setdefault('ldap', {})
        use_ssl = bool(ldap_config.get('use_ssl', False))
        ldap_defaults = {
            'port': 636 if use_ssl else 389,
            'use_ssl': False,
            'start_tls': False,
            'verify_ssl': True,
            'bind_password': '',
            'connect_timeout': 10,
            'receive_timeout': 10,
            'page_size': 500,
        }
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)
        attributes = ldap_config.get('attributes') or {}
        attributes.setdefault('email', 'mail')
        ldap_config['attributes'] = attributes

        # Grafana defaults
        grafana_defaults = {
            'user': '',
            'password': '',
            'token': '',
            'timeout': 10,
            'verify_ssl': True,
            'client_cert_type': 'PEM',
        }
        grafana_config = self.config.setdefault('grafana', {})
        for key, value in grafana_defaults.items():
            grafana_config.setdefault(key, value)

        # Sync defaults
        sync_defaults = {
            'enabled': False,
            'schedule': '*/30 * * * *',
            'filter_unknown_users': False,
        }
        sync_config = self.config.get('sync') or {}
        for key, value in sync_defaults.items():
            sync_config.setdefault(key, value)
        self.config['sync'] = sync_config

        server_config = self.config.get('server') or {}
        server_config.setdefault('listen_address', ':8080')
        self.config['server'] = server_config

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'INFO',
            'format': 'text',
        }
        logging_config = self.config.get('logging') or {}
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)
        self.config['logging'] = logging_config

        # Error handling defaults
        error_defaults = {
            'max_retries': 2,
            'retry_wait_seconds': 5,
        }
        error_config = self.config.get('error_handling') or {}
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)
        self.config['error_handling'] = error_config


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def parse_listen_address(listen_address: Any) -> Tuple[str, int]:
    """
    Split ':8080' or 'host:8080' into (host, port); an empty host binds all interfaces.

    Raises:
        ValueError: If the address has no valid port
    """
    host, _, port = str(listen_address).rpartition(':')
    if not port.isdigit() or not 0 < int(port) < 65536:
        raise ValueError(f"Invalid listen address: {listen_address}")
    return host or '0.0.0.0', int(port)


def build_app_config(config: Dict[str, Any]) -> AppConfig:
    """
    Convert a validated, defaulted configuration dictionary into an AppConfig.

    Args:
        config: Dictionary as produced by ConfigLoader after validation and defaults

    Returns:
        Typed application configuration
    """
    ldap_config = config['ldap']
    grafana_config = config['grafana']
    sync_config = config['sync']

    mapping = [
        OrgMapping(
            org_id=org['org_id'],
            teams=[
                TeamSpec(
                    name=team['name'],
                    admin_filter=team.get('admin_user_filter') or '',
                    member_filter=team.get('member_user_filter') or '',
                )
                for team in org['teams']
            ],
        )
        for org in config['mapping']
    ]

    return AppConfig(
        ldap=LDAPSettings(
            host=ldap_config['host'],
            port=ldap_config['port'],
            bind_dn=ldap_config['bind_dn'],
            bind_password=ldap_config['bind_password'],
            base_dn=ldap_config['base_dn'],
            use_ssl=bool(ldap_config['use_ssl']),
            start_tls=bool(ldap_config['start_tls']),
            verify_ssl=bool(ldap_config['verify_ssl']),
            ca_cert_file=ldap_config.get('ca_cert_file'),
            email_attribute=ldap_config['attributes']['email'],
            connect_timeout=ldap_config['connect_timeout'],
            receive_timeout=ldap_config['receive_timeout'],
            page_size=ldap_config['page_size'],
        ),
        grafana=GrafanaSettings(
            url=grafana_config['url'],
            user=grafana_config['user'],
            password=grafana_config['password'],
            token=grafana_config['token'],
            timeout=grafana_config['timeout'],
            verify_ssl=bool(grafana_config['verify_ssl']),
            ca_cert_file=grafana_config.get('ca_cert_file'),
            client_cert_file=grafana_config.get('client_cert_file'),
            client_key_file=grafana_config.get('client_key_file'),
            client_cert_type=str(grafana_config['client_cert_type']).upper(),
            client_cert_password=grafana_config.get('client_cert_password'),
        ),
        sync=SyncSettings(
            enabled=bool(sync_config['enabled']),
            schedule=sync_config['schedule'],
            filter_unknown_users=bool(sync_config['filter_unknown_users']),
        ),
        mapping=mapping,
        listen_address=config['server']['listen_address'],
        logging=config['logging'],
        error_handling=config['error_handling'],
    )


def load_config(config_path: Optional[str] = None, mapping_path: Optional[str] = None) -> AppConfig:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file
        mapping_path: Path to an optional separate mapping file

    Returns:
        Loaded application configuration
    """
    loader = ConfigLoader(config_path, mapping_path)
    return loader.load()
