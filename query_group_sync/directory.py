"""
Directory client for reading and changing group membership over LDAP.

This module wraps an ldap3 connection behind the narrow interface the
reconciliation engine needs: search groups and users, read group members and
add or remove a single member.
"""

import logging
import ssl
import threading
import time
from typing import Dict, List, Any, Iterable, Optional, Tuple
from ldap3 import Server, Connection, SUBTREE, BASE, ALL, Tls, MODIFY_ADD, MODIFY_DELETE
from ldap3.core.exceptions import (
    LDAPException,
    LDAPBindError,
    LDAPCommunicationError,
    LDAPInvalidFilterError,
)
from ldap3.protocol.formatters.formatters import format_sid, format_uuid_le
from ldap3.utils.conv import escape_filter_chars

from query_group_sync.models import Group, User
from query_group_sync.retry import (
    RetryableError,
    MaxRetriesExceeded,
    create_retry_callback,
    is_retryable_error,
    retry_call,
)

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'


class DirectoryError(Exception):
    """Base exception for directory errors."""
    pass


class DirectoryConnectionError(DirectoryError):
    """Raised when the directory cannot be reached or bound."""
    pass


class DirectoryQueryError(DirectoryError):
    """Raised when a directory search fails."""
    pass


class DirectoryTimeoutError(DirectoryQueryError, RetryableError):
    """Raised when a directory call times out or the session drops."""
    pass


class DirectoryMutationError(DirectoryError):
    """Raised when the directory rejects a membership change."""
    pass


def _rdn_value(dn: str) -> str:
    """Value of the first RDN, e.g. 'Sales' for 'CN=Sales,OU=Groups,DC=example,DC=com'."""
    first = dn.split(',', 1)[0]
    return first.split('=', 1)[1] if '=' in first else first


def _merge_attribute_lists(*lists: Iterable[str]) -> List[str]:
    """Concatenate attribute names, dropping case-insensitive duplicates."""
    merged = []
    seen = set()
    for names in lists:
        for name in names or []:
            if name and name.lower() not in seen:
                seen.add(name.lower())
                merged.append(name)
    return merged


class DirectoryClient:
    """
    LDAP directory client used by the reconciliation engine.

    One connection is bound for the whole run. Calls are serialized with a lock so
    the client can be shared by group workers running in parallel.
    """

    def __init__(self, config: Dict[str, Any], schema: Optional[Dict[str, Any]] = None,
                 error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize directory client with configuration.

        Args:
            config: LDAP configuration dictionary
            schema: Attribute naming configuration dictionary
            error_handling: Retry configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_search_base = config.get('user_search_base', '')
        self.user_filter = config.get('user_filter', '(&(objectCategory=person)(objectClass=user))')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 30)
        self.page_size = config.get('page_size', 1000)

        schema = schema or {}
        self.id_attribute = schema.get('id_attribute', 'objectGUID')
        self.sid_attribute = schema.get('sid_attribute', 'objectSid')
        self.account_attribute = schema.get('account_attribute', 'sAMAccountName')
        self.group_name_attribute = schema.get('group_name_attribute', 'cn')
        self.member_attribute = schema.get('member_attribute', 'member')
        self.member_of_attribute = schema.get('member_of_attribute', 'memberOf')
        self.member_lookup = schema.get('member_lookup', 'memberof')

        error_handling = error_handling or {}
        self.max_retries = error_handling.get('max_retries', 3)
        self.retry_wait = error_handling.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False
        self._lock = threading.RLock()

    @property
    def identity_attributes(self) -> List[str]:
        return _merge_attribute_lists([self.id_attribute, self.sid_attribute, self.account_attribute])

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[float] = None) -> bool:
        """
        Establish connection to the directory server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            DirectoryConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = self.retry_wait if retry_wait is None else retry_wait

        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except DirectoryConnectionError:
            raise
        except LDAPException as e:
            raise DirectoryConnectionError(f"Failed to create directory server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            connection = None
            try:
                connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    receive_timeout=self.receive_timeout
                )

                connection.open()

                if self.start_tls and not self.use_ssl:
                    if not connection.start_tls():
                        raise LDAPBindError(f"Failed to start TLS: {connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not connection.bind():
                    raise LDAPBindError(f"Bind failed: {connection.result}")

                # only a bound connection is ever visible to searches
                with self._lock:
                    self.connection = connection
                    self._connected = True
                logger.info(f"Successfully connected and bound to directory server {self.server_url}")
                return True

            except LDAPException as e:
                last_exception = e
                logger.warning(f"Directory connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._unbind_quietly(connection)
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)

        error_msg = f"Failed to connect to directory after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise DirectoryConnectionError(error_msg)

    @staticmethod
    def _unbind_quietly(connection):
        if connection is None:
            return
        try:
            connection.unbind()
        except LDAPException as e:
            logger.debug(f"Ignoring error while discarding connection: {e}")

    def _discard_connection(self):
        with self._lock:
            self._unbind_quietly(self.connection)
            self.connection = None
            self._connected = False

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for the connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
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

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except (LDAPException, OSError) as e:
            raise DirectoryConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close the directory connection."""
        with self._lock:
            if self.connection and self._connected:
                try:
                    self.connection.unbind()
                    logger.debug("Directory connection closed")
                except LDAPException as e:
                    logger.warning(f"Error closing directory connection: {e}")
                finally:
                    self._connected = False
                    self.connection = None

    def _reconnect(self, attempt: int, exception: Exception):
        """
        Retry hook: a timed-out session is unusable, so bind a fresh one.

        Holds the client lock throughout, so workers sharing the client never
        see the connection missing or unbound.
        """
        create_retry_callback("Directory search")(attempt, exception)
        with self._lock:
            self._discard_connection()
            try:
                self.connect(max_retries=1)
            except DirectoryConnectionError as e:
                logger.warning(f"Reconnect before retry failed: {e}")

    def _with_retry(self, func, *args):
        try:
            return retry_call(
                func, args,
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                should_retry=is_retryable_error,
                on_retry=self._reconnect
            )
        except MaxRetriesExceeded as e:
            raise DirectoryTimeoutError(str(e)) from e

    def _ensure_connected(self):
        if not self._connected or self.connection is None:
            raise DirectoryQueryError("Not connected to directory server")

    def _search(self, search_base: str, search_filter: str, attributes: List[str],
                search_scope=SUBTREE, paged: bool = True) -> List[Dict[str, Any]]:
        """Run a search, following paged-results cookies, and return raw entries."""
        with self._lock:
            self._ensure_connected()
            logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

            entries = []
            cookie = None
            page_count = 0
            try:
                while True:
                    kwargs = {}
                    if paged:
                        kwargs['paged_size'] = self.page_size
                        if cookie:
                            kwargs['paged_cookie'] = cookie

                    success = self.connection.search(
                        search_base=search_base,
                        search_filter=search_filter,
                        search_scope=search_scope,
                        attributes=attributes,
                        **kwargs
                    )
                    result = self.connection.result or {}
                    if not success and result.get('result', 0) != 0:
                        raise DirectoryQueryError(
                            f"Search failed in {search_base}: {result.get('description')} {result.get('message', '')}".strip()
                        )

                    page_count += 1
                    entries.extend(item for item in (self.connection.response or [])
                                   if item.get('type') == 'searchResEntry')

                    if not paged:
                        break
                    controls = result.get('controls') or {}
                    cookie = controls.get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')
                    if not cookie:
                        break

            except LDAPInvalidFilterError as e:
                raise DirectoryQueryError(f"Invalid search filter {search_filter!r}: {e}")
            except LDAPCommunicationError as e:
                raise DirectoryTimeoutError(f"Directory call failed: {e}")
            except LDAPException as e:
                raise DirectoryQueryError(f"Search failed: {e}")

            logger.debug(f"Retrieved {len(entries)} entries across {page_count} pages")
            return entries

    def _normalize_value(self, name: str, value: Any) -> str:
        if isinstance(value, (bytes, bytearray)):
            value = bytes(value)
            if name.lower() == self.id_attribute.lower() and len(value) == 16:
                return format_uuid_le(value).strip('{}').lower()
            if self.sid_attribute and name.lower() == self.sid_attribute.lower():
                return format_sid(value)
            try:
                return value.decode('utf-8')
            except UnicodeDecodeError:
                return value.hex()
        text = str(value)
        if name.lower() == self.id_attribute.lower():
            return text.strip('{}').lower()
        return text

    def _extract_attributes(self, entry: Dict[str, Any]) -> Dict[str, Tuple[str, ...]]:
        """Flatten an ldap3 response entry into name -> tuple of strings."""
        attributes = {}
        for name, value in (entry.get('attributes') or {}).items():
            if value is None or value == [] or value == '':
                continue
            values = value if isinstance(value, (list, tuple)) else [value]
            attributes[name] = tuple(self._normalize_value(name, item) for item in values)
        return attributes

    def _build_user(self, entry: Dict[str, Any]) -> Optional[User]:
        dn = entry.get('dn', '')
        attributes = self._extract_attributes(entry)
        view = User(dn=dn, id='', account_name='', attributes=attributes)

        identifiers = view.get_values(self.id_attribute)
        if not identifiers:
            logger.warning(f"User entry has no {self.id_attribute}, skipping: {dn}")
            return None

        accounts = view.get_values(self.account_attribute)
        sids = view.get_values(self.sid_attribute) if self.sid_attribute else ()
        return User(
            dn=dn,
            id=identifiers[0],
            account_name=accounts[0] if accounts else _rdn_value(dn),
            sid=sids[0] if sids else None,
            attributes=attributes,
        )

    def _build_group(self, entry: Dict[str, Any]) -> Group:
        dn = entry.get('dn', '')
        attributes = self._extract_attributes(entry)
        group = Group(dn=dn, name='', attributes=attributes)
        name = group.get_value(self.group_name_attribute) or _rdn_value(dn)
        return Group(dn=dn, name=name, attributes=attributes)

    def search_groups(self, search_base: str, search_filter: str, attributes: Iterable[str]) -> List[Group]:
        """
        Search for groups.

        Args:
            search_base: Subtree to search
            search_filter: LDAP filter selecting the groups
            attributes: Attributes to load for each group

        Returns:
            Groups in directory order

        Raises:
            DirectoryQueryError: If the search fails
        """
        requested = _merge_attribute_lists([self.group_name_attribute], attributes)
        entries = self._with_retry(self._search, search_base, search_filter, requested)
        return [self._build_group(entry) for entry in entries]

    def get_group(self, name: str, search_base: str, attributes: Iterable[str],
                  group_filter: str = '(objectClass=group)') -> Optional[Group]:
        """Look up a single group by name; None when it does not exist."""
        search_filter = f"(&{group_filter}({self.group_name_attribute}={escape_filter_chars(name)}))"
        groups = self.search_groups(search_base, search_filter, attributes)
        if len(groups) > 1:
            logger.warning(f"Group name {name!r} matched {len(groups)} groups, using {groups[0].dn}")
        return groups[0] if groups else None

    def search_users(self, search_base: str, search_filter: str,
                     attributes: Optional[Iterable[str]] = None) -> List[User]:
        """
        Search for users, loading identity attributes plus any extra attributes.

        Raises:
            DirectoryQueryError: If the search fails or the filter is malformed
        """
        requested = _merge_attribute_lists(self.identity_attributes, attributes)
        entries = self._with_retry(self._search, search_base, search_filter, requested)
        users = []
        for entry in entries:
            user = self._build_user(entry)
            if user:
                users.append(user)
        return users

    def get_group_members(self, group: Group, attributes: Optional[Iterable[str]] = None) -> List[User]:
        """
        Retrieve the user members of a group.

        Only objects matching the user filter are returned; nested groups and
        other member types are not managed.

        Raises:
            DirectoryQueryError: If the lookup fails
        """
        logger.debug(f"Retrieving members of group: {group.dn}")
        if self.member_lookup == 'attribute':
            return self._get_members_by_group_attribute(group, attributes)
        return self._get_members_by_memberof(group, attributes)

    def _get_members_by_memberof(self, group: Group, attributes: Optional[Iterable[str]]) -> List[User]:
        """Get group members using memberOf reverse lookup (Active Directory style)."""
        search_filter = f"(&{self.user_filter}({self.member_of_attribute}={escape_filter_chars(group.dn)}))"
        return self.search_users(self.get_domain_base(), search_filter, attributes)

    def _get_members_by_group_attribute(self, group: Group, attributes: Optional[Iterable[str]]) -> List[User]:
        """Get group members by reading the group's member attribute."""
        entries = self._with_retry(self._search, group.dn, '(objectClass=*)', [self.member_attribute], BASE, False)
        if not entries:
            raise DirectoryQueryError(f"Group not found: {group.dn}")

        group_entry = Group(dn=group.dn, name=group.name, attributes=self._extract_attributes(entries[0]))
        member_dns = group_entry.get_values(self.member_attribute)
        if not member_dns:
            logger.info(f"No members found in group {group.dn}")
            return []

        requested = _merge_attribute_lists(self.identity_attributes, attributes)
        members = []
        for member_dn in member_dns:
            member_entries = self._with_retry(self._search, member_dn, self.user_filter, requested, BASE, False)
            for entry in member_entries:
                user = self._build_user(entry)
                if user:
                    members.append(user)
        return members

    def _modify_member(self, group: Group, user: User, operation, verb: str):
        with self._lock:
            if not self._connected or self.connection is None:
                raise DirectoryMutationError("Not connected to directory server")
            try:
                success = self.connection.modify(group.dn, {self.member_attribute: [(operation, [user.dn])]})
            except LDAPException as e:
                raise DirectoryMutationError(f"Failed to {verb} {user.account_name}: {e}")
            if not success:
                result = self.connection.result or {}
                raise DirectoryMutationError(
                    f"Failed to {verb} {user.account_name}: {result.get('description')} {result.get('message', '')}".strip()
                )

    def add_group_member(self, group: Group, user: User):
        """
        Add a user to a group.

        Raises:
            DirectoryMutationError: If the directory rejects the change
        """
        self._modify_member(group, user, MODIFY_ADD, 'add')

    def remove_group_member(self, group: Group, user: User):
        """
        Remove a user from a group.

        Raises:
            DirectoryMutationError: If the directory rejects the change
        """
        self._modify_member(group, user, MODIFY_DELETE, 'remove')

    def get_user_attribute_names(self) -> List[str]:
        """
        Attribute names a filter may reference.

        Uses the attribute types published in the server schema; when the server
        does not publish a schema, the attributes of one sampled user are used.
        """
        schema = getattr(self.server, 'schema', None) if self.server else None
        attribute_types = getattr(schema, 'attribute_types', None) if schema else None
        if attribute_types:
            return sorted(attribute_types.keys(), key=str.lower)

        search_base = self.user_search_base or self.get_domain_base()
        with self._lock:
            self._ensure_connected()
            try:
                self.connection.search(
                    search_base=search_base,
                    search_filter=self.user_filter,
                    search_scope=SUBTREE,
                    attributes=['*'],
                    size_limit=1
                )
            except LDAPException as e:
                raise DirectoryQueryError(f"Failed to sample user attributes: {e}")
            for entry in self.connection.response or []:
                if entry.get('type') == 'searchResEntry':
                    return sorted((entry.get('attributes') or {}).keys(), key=str.lower)
        logger.warning("Could not sample user attributes; filters will request every referenced name")
        return []

    def get_domain_base(self) -> str:
        """Derive the domain naming context from the bind DN or the server info."""
        if 'DC=' in self.bind_dn.upper():
            parts = self.bind_dn.split(',')
            dc_parts = [part.strip() for part in parts if part.strip().upper().startswith('DC=')]
            if dc_parts:
                return ','.join(dc_parts)

        info = self.server.info if self.server else None
        if info:
            default_context = (getattr(info, 'other', None) or {}).get('defaultNamingContext')
            if default_context:
                return default_context[0]
            if info.naming_contexts:
                return info.naming_contexts[0]

        raise DirectoryQueryError("Cannot determine domain base DN")
