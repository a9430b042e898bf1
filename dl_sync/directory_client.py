"""
Directory client for reading and updating the target distribution group.

This module wraps an ldap3 connection to an Active Directory domain controller and
exposes the narrow set of operations the sync needs: resolving roster emails to
user DNs, looking up or creating the group, reading and replacing its mail-routing
attributes, and listing, adding and removing members.
"""

import logging
import re
import ssl
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from ldap3 import Server, Connection, Tls, SUBTREE, BASE, NONE, MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE
from ldap3.core.exceptions import LDAPException, LDAPBindError, LDAPCommunicationError
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn

from dl_sync.retry import retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

# Active Directory groupType flags
GROUP_SCOPE_FLAGS = {
    'global': 0x2,
    'domain_local': 0x4,
    'universal': 0x8,
}
SECURITY_ENABLED_FLAG = -0x80000000

RESULT_SUCCESS = 0
RESULT_NO_SUCH_OBJECT = 32

MEMBER_RANGE_PATTERN = re.compile(r"^member;range=(\d+)-(\d+|\*)$", re.IGNORECASE)


class DirectoryUnavailable(Exception):
    """Raised when a directory call fails or times out."""
    pass


class LookupFailed(Exception):
    """Raised when an email cannot be resolved to exactly one directory user."""
    pass


def group_type_value(scope: str, category: str) -> int:
    """Compute the signed groupType integer for a scope/category pair."""
    value = GROUP_SCOPE_FLAGS[scope]
    if category == 'security':
        value |= SECURITY_ENABLED_FLAG
    return value


class DirectoryClient:
    """
    Directory client for the group being reconciled.

    All calls block; connection and receive timeouts are bounded by configuration
    and any transport failure is surfaced as DirectoryUnavailable.
    """

    def __init__(self, config: Dict[str, Any], error_config: Optional[Dict[str, Any]] = None):
        """
        Initialize directory client with configuration.

        Args:
            config: Directory configuration dictionary
            error_config: Optional error_handling section controlling connection retries
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config['base_dn']
        self.user_filter = config.get('user_filter', '(objectClass=user)')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')

        # Timeouts
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)

        error_config = error_config or {}
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self) -> bool:
        """
        Establish and bind the directory connection, retrying transport failures.

        Returns:
            True if connection successful

        Raises:
            DirectoryUnavailable: If connection fails after all retries
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=NONE,
                connect_timeout=self.connection_timeout
            )
        except LDAPException as e:
            raise DirectoryUnavailable(f"Failed to create directory server: {e}")

        attempts = max(1, self.max_retries)
        try:
            retry_call(
                self._open_connection,
                max_attempts=attempts,
                delay=self.retry_wait,
                exceptions=(LDAPCommunicationError, LDAPBindError),
                on_retry=create_retry_callback("Directory connection")
            )
        except MaxRetriesExceeded as e:
            raise DirectoryUnavailable(
                f"Failed to connect to directory after {e.attempts} attempts: {e.last_exception}"
            )
        except LDAPException as e:
            raise DirectoryUnavailable(f"Unexpected error during directory connection: {e}")

        self._connected = True
        logger.info(f"Successfully connected and bound to directory server {self.server_url}")
        return True

    def _open_connection(self):
        """Open and bind a single connection attempt."""
        connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            connection.open()
            if not connection.bind():
                raise LDAPBindError(f"Bind failed: {connection.result}")
        except LDAPException:
            try:
                connection.unbind()
            except LDAPException:
                pass
            raise
        self.connection = connection

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for the directory connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not self.use_ssl:
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise DirectoryUnavailable(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close directory connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("Directory connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing directory connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def _search(self, operation: str, **kwargs) -> List[Any]:
        """Run a search and return its entries; noSuchObject yields an empty list."""
        self._require_connection()
        try:
            self.connection.search(**kwargs)
        except LDAPException as e:
            raise DirectoryUnavailable(f"{operation} failed: {e}")

        result_code = (self.connection.result or {}).get('result', RESULT_SUCCESS)
        if result_code not in (RESULT_SUCCESS, RESULT_NO_SUCH_OBJECT):
            raise DirectoryUnavailable(f"{operation} failed: {self.connection.result}")
        return list(self.connection.entries or [])

    def _modify(self, operation: str, dn: str, changes: Dict[str, Any]):
        self._require_connection()
        try:
            success = self.connection.modify(dn, changes)
        except LDAPException as e:
            raise DirectoryUnavailable(f"{operation} failed: {e}")
        if not success:
            raise DirectoryUnavailable(f"{operation} failed: {self.connection.result}")

    def _require_connection(self):
        if not self._connected or self.connection is None:
            raise DirectoryUnavailable("Not connected to directory server")

    def resolve_email(self, email: str) -> str:
        """
        Resolve a roster email to the DN of exactly one directory user.

        Raises:
            LookupFailed: If no user or more than one user matches
            DirectoryUnavailable: If the search itself fails
        """
        escaped = escape_filter_chars(email)
        search_filter = f"(&{self.user_filter}(|(mail={escaped})(proxyAddresses=smtp:{escaped})))"
        entries = self._search(
            f"Lookup of {email}",
            search_base=self.base_dn,
            search_filter=search_filter,
            search_scope=SUBTREE,
            attributes=['mail']
        )

        if not entries:
            raise LookupFailed(f"No directory user found for {email}")
        if len(entries) > 1:
            raise LookupFailed(f"{len(entries)} directory users match {email}")

        return str(entries[0].entry_dn)

    def find_group(self, name: str) -> Optional[str]:
        """Return the DN of the group with the given name, or None if it does not exist."""
        search_filter = f"(&(objectClass=group)(cn={escape_filter_chars(name)}))"
        entries = self._search(
            f"Group lookup of {name}",
            search_base=self.base_dn,
            search_filter=search_filter,
            search_scope=SUBTREE,
            attributes=['cn']
        )
        if not entries:
            return None
        return str(entries[0].entry_dn)

    def create_group(self, name: str, path: str, mail: str, scope: str, category: str) -> str:
        """
        Create the group under the given organizational path.

        Returns:
            DN of the new group
        """
        self._require_connection()
        dn = f"CN={escape_rdn(name)},{path}"
        attributes = {
            'sAMAccountName': name,
            'displayName': name,
            'mail': mail,
            'groupType': group_type_value(scope, category)
        }

        try:
            success = self.connection.add(dn, ['top', 'group'], attributes)
        except LDAPException as e:
            raise DirectoryUnavailable(f"Creating group {dn} failed: {e}")
        if not success:
            raise DirectoryUnavailable(f"Creating group {dn} failed: {self.connection.result}")

        logger.info(f"Created group {dn} (scope={scope}, category={category}, mail={mail})")
        return dn

    def get_group_attributes(self, group_dn: str, names: List[str]) -> Dict[str, Any]:
        """Read the named attributes of the group. Unset attributes are omitted."""
        if not names:
            return {}
        entries = self._search(
            f"Reading attributes of {group_dn}",
            search_base=group_dn,
            search_filter='(objectClass=group)',
            search_scope=BASE,
            attributes=names
        )
        if not entries:
            raise DirectoryUnavailable(f"Group not found: {group_dn}")
        return dict(entries[0].entry_attributes_as_dict)

    def replace_group_attributes(self, group_dn: str, changes: Dict[str, Any]):
        """Replace the given attributes in one modify call. None or empty clears a value."""
        modifications = {
            name: [(MODIFY_REPLACE, self._to_ldap_values(value))]
            for name, value in changes.items()
        }
        self._modify(f"Updating attributes of {group_dn}", group_dn, modifications)
        logger.info(f"Updated attributes of {group_dn}: {', '.join(sorted(changes))}")

    def _to_ldap_values(self, value: Any) -> List[Any]:
        if value is None:
            return []
        if isinstance(value, bool):
            return ['TRUE' if value else 'FALSE']
        if isinstance(value, (list, tuple, set, frozenset)):
            return [v for v in value if v not in (None, '')]
        if value == '':
            return []
        return [value]

    def get_group_members(self, group_dn: str) -> FrozenSet[str]:
        """
        Return the DNs of the group's current members.

        Active Directory returns at most MaxValRange values of ``member`` per
        request and reports larger groups as ``member;range=0-1499``. Ranges are
        requested until the server marks the last one with ``*``.
        """
        members = set()
        attribute = 'member'
        page_count = 0

        while True:
            entries = self._search(
                f"Listing members of {group_dn}",
                search_base=group_dn,
                search_filter='(objectClass=group)',
                search_scope=BASE,
                attributes=[attribute]
            )
            if not entries:
                raise DirectoryUnavailable(f"Group not found: {group_dn}")

            page_count += 1
            values, next_start = _member_values(entries[0].entry_attributes_as_dict)
            members.update(str(member) for member in values)
            if next_start is None:
                break
            attribute = f"member;range={next_start}-*"

        logger.debug(f"Group {group_dn} has {len(members)} members ({page_count} ranges)")
        return frozenset(members)

    def add_group_member(self, group_dn: str, member_dn: str):
        self._modify(f"Adding {member_dn} to {group_dn}", group_dn, {'member': [(MODIFY_ADD, [member_dn])]})

    def remove_group_member(self, group_dn: str, member_dn: str):
        self._modify(f"Removing {member_dn} from {group_dn}", group_dn, {'member': [(MODIFY_DELETE, [member_dn])]})


def _member_values(attributes: Dict[str, Any]) -> Tuple[List[Any], Optional[int]]:
    """
    Split a group entry's member values from the start of the next range.

    Returns:
        The values in this response and the next range start, or None when complete
    """
    for name, values in attributes.items():
        match = MEMBER_RANGE_PATTERN.match(str(name))
        if not match:
            continue
        values = list(values or [])
        if match.group(2) == '*' or not values:
            return values, None
        return values, int(match.group(2)) + 1

    return list(attributes.get('member') or []), None
