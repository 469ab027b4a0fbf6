"""
LDAP client for connecting to and querying LDAP directories.

This module opens and binds a single connection and resolves team filter
expressions into the email addresses of every matching entry.
"""

import logging
import ssl
from typing import List, Optional
from ldap3 import Server, Connection, SUBTREE, DEREF_NEVER, Tls
from ldap3.core.exceptions import LDAPException

from grafana_team_sync.errors import DirectoryBindError, DirectoryConnectError, DirectoryQueryError
from grafana_team_sync.models import LDAPSettings

logger = logging.getLogger(__name__)

# RFC 2696 simple paged results control
PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'


class LDAPClient:
    """
    LDAP client for resolving team filters to email addresses.

    One instance holds one connection for the duration of a reconciliation
    pass. Use it as a context manager so the connection is always released.
    """

    def __init__(self, settings: LDAPSettings):
        """
        Initialize LDAP client with configuration.

        Args:
            settings: LDAP connection and search settings
        """
        self.settings = settings
        self.host = settings.host
        self.port = settings.port
        self.base_dn = settings.base_dn
        self.email_attribute = settings.email_attribute
        self.page_size = settings.page_size

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self) -> None:
        """
        Open the connection, negotiate TLS if configured, and bind.

        Raises:
            DirectoryConnectError: If the server cannot be reached or TLS fails
            DirectoryBindError: If the bind credentials are rejected
        """
        try:
            self.server = Server(
                self.host,
                port=self.port,
                use_ssl=self.settings.use_ssl,
                tls=self._create_tls_config(),
                connect_timeout=self.settings.connect_timeout
            )
            self.connection = Connection(
                self.server,
                user=self.settings.bind_dn,
                password=self.settings.bind_password,
                auto_bind=False,  # Manual bind so connect and bind failures stay distinct
                receive_timeout=self.settings.receive_timeout
            )
        except LDAPException as e:
            raise DirectoryConnectError(f"Failed to create LDAP connection to {self.host}:{self.port}: {e}")

        try:
            if not self.connection.open():
                raise DirectoryConnectError(f"Failed to open connection: {self.connection.result}")

            if self.settings.start_tls and not self.settings.use_ssl:
                if not self.connection.start_tls():
                    raise DirectoryConnectError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")
        except DirectoryConnectError:
            self.disconnect()
            raise
        except LDAPException as e:
            self.disconnect()
            raise DirectoryConnectError(f"LDAP connect error for {self.host}:{self.port}: {e}")

        try:
            if not self.connection.bind():
                raise DirectoryBindError(f"LDAP bind error for {self.settings.bind_dn}: {self.connection.result}")
        except DirectoryBindError:
            self.disconnect()
            raise
        except LDAPException as e:
            self.disconnect()
            raise DirectoryBindError(f"LDAP bind error for {self.settings.bind_dn}: {e}")

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.host}:{self.port}")

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.settings.use_ssl or self.settings.start_tls):
            return None

        tls_config = {
            'validate': ssl.CERT_REQUIRED if self.settings.verify_ssl else ssl.CERT_NONE
        }
        if not self.settings.verify_ssl:
            logger.warning("SSL certificate verification disabled for LDAP")

        if self.settings.ca_cert_file:
            tls_config['ca_certs_file'] = self.settings.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.settings.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryConnectError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection is not None:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    @property
    def connected(self) -> bool:
        return self._connected

    def resolve_emails(self, filter_expression: str) -> List[str]:
        """
        Resolve a filter expression to the email addresses of all matching entries.

        Args:
            filter_expression: LDAP filter, e.g. (memberOf=cn=admins,ou=groups,dc=example,dc=com)

        Returns:
            Distinct email values in order of first appearance

        Raises:
            DirectoryQueryError: If the search fails
        """
        return self.search_attribute_values(filter_expression, self.email_attribute)

    def search_attribute_values(self, filter_expression: str, attribute: str) -> List[str]:
        """
        Collect every value of one attribute across all entries matching a filter.

        The search covers the whole subtree below the base DN, never
        dereferences aliases and sets no size or time limit. Results are
        fetched in pages when page_size is set.
        """
        if not self._connected:
            raise DirectoryQueryError("Not connected to LDAP server", filter_expression=filter_expression)

        logger.debug(f"Searching with filter: {filter_expression} in base: {self.base_dn}")

        values = []
        seen = set()
        cookie = None
        page_count = 0

        try:
            while True:
                success = self.connection.search(
                    search_base=self.base_dn,
                    search_filter=filter_expression,
                    search_scope=SUBTREE,
                    dereference_aliases=DEREF_NEVER,
                    attributes=[attribute],
                    size_limit=0,
                    time_limit=0,
                    paged_size=self.page_size or None,
                    paged_cookie=cookie
                )

                # ldap3 reports an empty but successful search as False
                if not success and self.connection.result.get('result') != 0:
                    raise DirectoryQueryError(
                        f"LDAP search failed: {self.connection.result.get('description')} "
                        f"{self.connection.result.get('message', '')}".strip(),
                        filter_expression=filter_expression
                    )

                page_count += 1
                for entry in self.connection.entries:
                    for value in self._attribute_values(entry, attribute):
                        if value not in seen:
                            seen.add(value)
                            values.append(value)

                cookie = self._next_page_cookie()
                if not self.page_size or not cookie:
                    break

        except LDAPException as e:
            raise DirectoryQueryError(f"LDAP search failed: {e}", filter_expression=filter_expression)

        logger.debug(f"Filter {filter_expression} matched {len(values)} {attribute} values "
                     f"across {page_count} page(s)")
        return values

    def _attribute_values(self, entry, attribute: str) -> List[str]:
        """Return an entry's values for an attribute, matching the name case-insensitively."""
        attributes = entry.entry_attributes_as_dict
        wanted = attribute.lower()
        for name, attr_values in attributes.items():
            if name.lower() == wanted:
                return [str(v) for v in attr_values if v not in (None, '')]
        return []

    def _next_page_cookie(self) -> Optional[bytes]:
        controls = self.connection.result.get('controls') or {}
        paged = controls.get(PAGED_RESULTS_OID) or {}
        return (paged.get('value') or {}).get('cookie') or None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
