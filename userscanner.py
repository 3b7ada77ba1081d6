#!/usr/bin/env python3
"""
UserScanner - Active Directory Logged-On User Inventory

This tool enumerates computer objects in an Active Directory domain over LDAP and
inventories the identities currently loaded on each machine by reading the
HKEY_USERS hive through the Remote Registry protocol (RRP). Every loaded profile
SID is resolved to DOMAIN\\user by the LSA service of the host itself. Results are
streamed into a UTF-8 CSV report while the scan is still running.

Author: Security Tools Development
License: MIT
Version: 1.0.0

Dependencies:
    - impacket >= 0.11.0 (Remote Registry and LSA lookups over SMB named pipes)
    - ldap3 (computer discovery)
    - dnspython (custom DNS resolution with --dns)
    - gssapi (Kerberos SASL bind for ldap3, install the "kerberos" extra)

Authentication:
    No credentials are taken on the command line. LDAP binds and RPC connections
    both use Kerberos with the ticket cache referenced by KRB5CCNAME, so obtain a
    TGT first (kinit, getTGT.py).

Usage Examples:
    # Scan every computer in the domain with the default 100 workers
    python3 userscanner.py -d contoso.local -dc dc01.contoso.local -o report.csv

    # Fewer workers and a longer per-host timeout
    python3 userscanner.py -d contoso.local -dc dc01.contoso.local -o report.csv -t 20 --timeout 10

    # Resolve host names through a specific DNS server
    python3 userscanner.py -d contoso.local -dc dc01.contoso.local -o report.csv --dns 10.0.0.1

    # Only scan hosts listed in a file
    python3 userscanner.py -d contoso.local -dc dc01.contoso.local -o report.csv --target-file hosts.txt

    # Scan two named computers without listing the whole domain
    python3 userscanner.py -d contoso.local -dc dc01.contoso.local -o report.csv --computer WS01 --computer WS02

Output Format:
    CSV with a UTF-8 byte-order mark (opens directly in Excel):

        Computer,OS,SID,Logon User
        WS01.contoso.local,Windows 11 Enterprise,S-1-5-21-...-1104,"CONTOSO\\alice"
        WS02.contoso.local,Windows 10 Pro,,

    Hosts without loaded profiles (or unreachable hosts) get a single row with
    empty SID and user columns.
"""

import argparse
import logging
import re
import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

# Impacket imports
try:
    from impacket.dcerpc.v5 import transport, rrp, lsat, lsad
    from impacket.dcerpc.v5.dtypes import MAXIMUM_ALLOWED
    from impacket.dcerpc.v5.rpcrt import DCERPCException
    from impacket.dcerpc.v5.samr import SID_NAME_USE
except ImportError:
    print("[!] Error: impacket library not found. Install with: pip install impacket")
    sys.exit(1)

from ldap3 import Server, Connection, ALL, SASL, KERBEROS, SUBTREE
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

import dns.exception
import dns.resolver


# ============================================================================
# CONSTANTS AND CONFIGURATION
# ============================================================================

VERSION = '1.0.0'

DEFAULT_WORKERS = 100
MIN_WORKERS = 1
MAX_WORKERS = 500
DEFAULT_TIMEOUT = 5

UNKNOWN_OS = 'Unknown'

# LDAP
LDAP_PAGE_SIZE = 1000
PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'
LDAP_SUCCESS = 0
LDAP_SERVER_DOWN = 0x51
LDAP_LOCAL_ERROR = 0x52
COMPUTER_FILTER = '(objectClass=computer)'
HOST_ATTRIBUTES = ['dNSHostName', 'operatingSystem']

# RPC
WINREG_PIPE = r'\pipe\winreg'
LSARPC_PIPE = r'\pipe\lsarpc'
ERROR_NO_MORE_ITEMS = 0x103

# HKEY_USERS also holds .DEFAULT and <SID>_Classes keys, only plain SIDs are sessions
SID_PATTERN = re.compile(r'^S-1-\d+(-\d+)+$')

# Report
CSV_HEADER = 'Computer,OS,SID,Logon User'


# ============================================================================
# DATA MODEL
# ============================================================================

@dataclass(frozen=True)
class HostRecord:
    """A computer object discovered in the directory."""
    fqdn: str
    short_name: str
    operating_system: str = UNKNOWN_OS


@dataclass(frozen=True)
class SessionIdentity:
    """A profile loaded in HKEY_USERS, resolved to its account."""
    sid: str
    account_name: str
    account_domain: str
    account_type: str = ''

    @property
    def full_identity(self) -> str:
        return f"{self.account_domain}\\{self.account_name}"


@dataclass(frozen=True)
class RunStatistics:
    total_hosts: int = 0
    hosts_with_sessions: int = 0
    total_sessions: int = 0


# ============================================================================
# DOMAIN NAME HELPERS
# ============================================================================

def domain_to_base_path(domain: str) -> str:
    """
    Convert a dotted domain name into an LDAP base DN.

    Args:
        domain: Domain name (e.g., contoso.local)

    Returns:
        Base DN (e.g., DC=contoso,DC=local), empty for an empty domain
    """
    return ','.join(f'DC={part}' for part in domain.split('.') if part)


def extract_short_name(fqdn: str, domain: str) -> str:
    """
    Extract the computer name from a fully qualified host name.

    Args:
        fqdn: Fully qualified name (e.g., WS01.contoso.local)
        domain: Domain the host is expected to belong to

    Returns:
        Host name without the domain suffix, the part before the first dot
        for hosts in another domain, or the name unchanged if it has no dot
    """
    suffix = f'.{domain}'
    if domain and fqdn.lower().endswith(suffix.lower()):
        return fqdn[:-len(suffix)]
    if '.' in fqdn:
        return fqdn.split('.', 1)[0]
    return fqdn


def _is_ip_address(value: str) -> bool:
    parts = value.split('.')
    if len(parts) != 4:
        return False
    try:
        return all(0 <= int(part) <= 255 for part in parts)
    except (ValueError, AttributeError):
        return False


# ============================================================================
# DNS RESOLUTION MODULE
# ============================================================================

class DNSResolver:
    """
    Resolves host names against a specific DNS server (typically the DC).
    """

    def __init__(self, dns_server: str, timeout: int = DEFAULT_TIMEOUT):
        """
        Initialize DNS resolver.

        Args:
            dns_server: DNS server IP to use for queries
            timeout: DNS query timeout in seconds
        """
        self.dns_server = dns_server
        self.timeout = timeout
        self.logger = logging.getLogger('DNSResolver')

        self.resolver = dns.resolver.Resolver(configure=False)
        self.resolver.nameservers = [dns_server]
        self.resolver.timeout = timeout
        self.resolver.lifetime = timeout
        self.logger.debug(f"Configured DNS resolver to use {dns_server}")

    def resolve_hostname(self, hostname: str) -> Optional[str]:
        """
        Resolve a hostname to an IPv4 address.

        Args:
            hostname: Hostname or FQDN to resolve

        Returns:
            IP address as string, or None if resolution fails
        """
        if _is_ip_address(hostname):
            return hostname

        try:
            answers = self.resolver.resolve(hostname, 'A')
            if answers:
                ip = str(answers[0])
                self.logger.debug(f"Resolved {hostname} -> {ip}")
                return ip
        except dns.exception.Timeout:
            self.logger.debug(f"DNS timeout resolving {hostname}")
        except dns.resolver.NXDOMAIN:
            self.logger.debug(f"DNS NXDOMAIN for {hostname}")
        except dns.resolver.NoAnswer:
            self.logger.debug(f"DNS no answer for {hostname}")
        except dns.exception.DNSException as e:
            self.logger.debug(f"DNS resolution error for {hostname}: {e}")

        return None


# ============================================================================
# LDAP CLIENT MODULE
# ============================================================================

class DirectoryError(Exception):
    """Base class for LDAP failures raised by DirectoryClient."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class DirectoryConnectError(DirectoryError):
    pass


class DirectoryAuthError(DirectoryError):
    pass


class DirectorySearchError(DirectoryError):

    def __init__(self, code: int, base_path: str, search_filter: str, description: str = ''):
        super().__init__(f"LDAP search failed with error code {code} ({description})", code)
        self.base_path = base_path
        self.search_filter = search_filter


class SearchResult:
    """
    Entries returned by a single DirectoryClient.search() call.

    Each entry maps a lower-cased attribute name to its list of string values.
    Attributes the entry does not carry are absent from the mapping.
    """

    def __init__(self, entries: Optional[List[Dict[str, List[str]]]] = None):
        self.entries = entries or []

    def __len__(self) -> int:
        return len(self.entries)

    def values(self, attribute_name: str) -> List[str]:
        key = attribute_name.lower()
        flattened = []
        for entry in self.entries:
            flattened.extend(entry.get(key, []))
        return flattened

    def first_values(self, *attribute_names: str) -> Iterator[Tuple[Optional[str], ...]]:
        """Yield one tuple per entry with the first value of each attribute (None if missing)."""
        keys = [name.lower() for name in attribute_names]
        for entry in self.entries:
            yield tuple((entry.get(key) or [None])[0] for key in keys)


def _to_text(value) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)


class DirectoryClient:
    """
    A single LDAP connection to a domain controller.

    The bind is an integrated SASL/Kerberos bind that uses the ticket cache of
    the calling user. One instance is used for one logical query and closed
    afterwards, ideally through the context manager protocol.
    """

    def __init__(self, address: str, timeout: int = DEFAULT_TIMEOUT,
                 page_size: int = LDAP_PAGE_SIZE):
        """
        Initialize the client without touching the network.

        Args:
            address: Domain controller host name or IP
            timeout: Connection timeout in seconds
            page_size: Page size for the paged results control
        """
        self.address = address
        self.timeout = timeout
        self.page_size = page_size
        self.connection = None
        self.result: Optional[SearchResult] = None
        self.last_error_code = LDAP_SUCCESS
        self.last_error_description = ''
        self.logger = logging.getLogger('DirectoryClient')

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self.close()
        return False

    def _set_error(self, code: int, description: str = ''):
        self.last_error_code = code
        self.last_error_description = description

    def connect(self):
        """
        Open the LDAP socket.

        Raises:
            DirectoryConnectError: The domain controller is unreachable
        """
        self.close()

        server = Server(self.address, get_info=ALL, connect_timeout=self.timeout)
        connection = Connection(server, authentication=SASL, sasl_mechanism=KERBEROS)
        try:
            connection.open()
        except LDAPException as e:
            self._set_error(LDAP_SERVER_DOWN, str(e))
            raise DirectoryConnectError(f"Could not connect to {self.address}: {e}",
                                        LDAP_SERVER_DOWN) from e

        self.connection = connection
        self._set_error(LDAP_SUCCESS)
        self.logger.debug(f"LDAP connection opened: {self.address}")

    def authenticate(self):
        """
        Bind with the caller's Kerberos credentials.

        Raises:
            DirectoryAuthError: The bind was rejected or could not be attempted
        """
        if self.connection is None:
            self._set_error(LDAP_LOCAL_ERROR, 'LDAP not initialized')
            raise DirectoryAuthError('LDAP not initialized', LDAP_LOCAL_ERROR)

        try:
            bound = self.connection.bind()
        except LDAPException as e:
            self._set_error(LDAP_LOCAL_ERROR, str(e))
            raise DirectoryAuthError(f"LDAP bind failed: {e}", LDAP_LOCAL_ERROR) from e

        if not bound:
            result = self.connection.result or {}
            code = result.get('result', LDAP_LOCAL_ERROR)
            self._set_error(code, result.get('description', ''))
            raise DirectoryAuthError(f"LDAP bind failed. Error code: {code}", code)

        self._set_error(LDAP_SUCCESS)
        self.logger.info(f"LDAP bind successful: {self.address}")

    def search(self, base_path: str, search_filter: str,
               attribute_names: Sequence[str]) -> SearchResult:
        """
        Run one subtree search, following the paged results control.

        Args:
            base_path: Base DN of the search
            search_filter: LDAP filter, passed through unchanged
            attribute_names: Attributes to return (duplicates are dropped)

        Returns:
            SearchResult, empty if nothing matched

        Raises:
            DirectorySearchError: The server rejected the search
        """
        self.result = None
        if self.connection is None or not self.connection.bound:
            self._set_error(LDAP_LOCAL_ERROR, 'LDAP connection not available')
            raise DirectorySearchError(LDAP_LOCAL_ERROR, base_path, search_filter,
                                       'LDAP connection not available')

        attributes = list(dict.fromkeys(attribute_names))
        entries = []
        cookie = None
        page_count = 0

        while True:
            try:
                self.connection.search(
                    search_base=base_path,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    paged_size=self.page_size,
                    paged_cookie=cookie
                )
            except LDAPException as e:
                self._set_error(LDAP_LOCAL_ERROR, str(e))
                raise DirectorySearchError(LDAP_LOCAL_ERROR, base_path, search_filter, str(e)) from e

            result = self.connection.result or {}
            code = result.get('result', LDAP_SUCCESS)
            if code != LDAP_SUCCESS:
                description = result.get('description', '')
                self._set_error(code, description)
                self.logger.debug(f"LDAP search failed. BaseDN: {base_path} Filter: {search_filter}")
                raise DirectorySearchError(code, base_path, search_filter, description)

            for item in self.connection.response or []:
                if item.get('type') != 'searchResEntry':
                    continue
                entries.append(self._normalize_entry(item.get('attributes', {}), attributes))

            page_count += 1
            cookie = self._paged_cookie(result)
            if not cookie:
                break
            self.logger.debug(f"LDAP page {page_count}: {len(entries)} entries so far")

        self._set_error(LDAP_SUCCESS)
        self.result = SearchResult(entries)
        self.logger.info(f"{len(entries)} results found")
        return self.result

    def attribute_values(self, result_set: Optional[SearchResult], attribute_name: str) -> List[str]:
        """
        Flatten every value of one attribute across the entries of a search.

        Args:
            result_set: Result of search(), or None for the last one
            attribute_name: Attribute to extract

        Returns:
            Values in entry-then-value order
        """
        result_set = result_set if result_set is not None else self.result
        if result_set is None:
            self.logger.warning("No search results available")
            return []
        return result_set.values(attribute_name)

    def last_error(self) -> str:
        if self.last_error_code == LDAP_SUCCESS:
            return 'No error'
        return f"LDAP error {self.last_error_code}: {self.last_error_description}"

    def close(self):
        self.result = None
        if self.connection is None:
            return
        try:
            self.connection.unbind()
        except LDAPException as e:
            self.logger.debug(f"LDAP unbind error on {self.address}: {e}")
        finally:
            self.connection = None

    @staticmethod
    def _normalize_entry(attrs, attribute_names: List[str]) -> Dict[str, List[str]]:
        # ldap3 returns scalars for single-valued attributes and [] for missing ones
        entry = {}
        for name in attribute_names:
            value = attrs.get(name)
            if value is None:
                continue
            if not isinstance(value, (list, tuple)):
                value = [value]
            if value:
                entry[name.lower()] = [_to_text(v) for v in value]
        return entry

    @staticmethod
    def _paged_cookie(result) -> Optional[bytes]:
        controls = result.get('controls') or {}
        return controls.get(PAGED_RESULTS_OID, {}).get('value', {}).get('cookie')


# ============================================================================
# HOST INVENTORY MODULE
# ============================================================================

class HostInventory:
    """
    Discovers computer objects in the domain.

    Every call opens and tears down its own DirectoryClient so a failed query
    never leaves a connection behind.
    """

    def __init__(self, domain: str, domain_controller: str, timeout: int = DEFAULT_TIMEOUT,
                 client_factory=DirectoryClient):
        self.domain = domain
        self.domain_controller = domain_controller
        self.timeout = timeout
        self.base_path = domain_to_base_path(domain)
        self.client_factory = client_factory
        self.logger = logging.getLogger('HostInventory')

    def _new_client(self) -> DirectoryClient:
        return self.client_factory(self.domain_controller, timeout=self.timeout)

    def list_hosts(self) -> List[HostRecord]:
        """
        Query LDAP for every computer object.

        Returns:
            List of HostRecord, empty if the directory could not be queried
        """
        hosts = []
        client = self._new_client()

        try:
            with client:
                client.connect()
                client.authenticate()
                result = client.search(self.base_path, COMPUTER_FILTER, HOST_ATTRIBUTES)
                for fqdn, operating_system in result.first_values(*HOST_ATTRIBUTES):
                    if not fqdn:
                        continue
                    hosts.append(HostRecord(
                        fqdn=fqdn,
                        short_name=extract_short_name(fqdn, self.domain),
                        operating_system=operating_system or UNKNOWN_OS
                    ))
        except DirectoryError as e:
            self.logger.error(f"Computer search failed: {e} ({client.last_error()})")
            return []

        self.logger.info(f"Total {len(hosts)} computers found")
        return hosts

    def get_operating_system(self, short_name: str) -> str:
        """
        Look up the operating system of one computer.

        Args:
            short_name: Computer name (cn) without the domain suffix

        Returns:
            operatingSystem value, or an empty string if none was found
        """
        search_filter = f'(&(objectClass=computer)(cn={escape_filter_chars(short_name)}))'
        client = self._new_client()

        try:
            with client:
                client.connect()
                client.authenticate()
                result = client.search(self.base_path, search_filter, ['operatingSystem'])
                values = client.attribute_values(result, 'operatingSystem')
        except DirectoryError as e:
            self.logger.debug(f"Operating system lookup failed for {short_name}: {e} ({client.last_error()})")
            return ''

        return values[0] if values else ''


# ============================================================================
# SESSION ENUMERATION MODULE
# ============================================================================

def _sid_type_name(use) -> str:
    try:
        return SID_NAME_USE.enumItems(use).name
    except ValueError:
        return str(use)


class SessionEnumerator:
    """
    Lists the identities with a profile loaded on a remote host.

    Reads the subkeys of HKEY_USERS over the Remote Registry pipe and resolves
    each SID through the LSA of the same host. Unreachable hosts, denied access
    and a stopped RemoteRegistry service all yield an empty list.
    """

    def __init__(self, domain: str = '', kdc_host: Optional[str] = None,
                 timeout: int = DEFAULT_TIMEOUT, dns_resolver: Optional[DNSResolver] = None):
        """
        Initialize the enumerator.

        Args:
            domain: Kerberos realm of the ticket cache
            kdc_host: KDC to contact for service tickets (the DC)
            timeout: Connection timeout in seconds
            dns_resolver: Optional DNS resolver for hostname resolution
        """
        self.domain = domain
        self.kdc_host = kdc_host
        self.timeout = timeout
        self.dns_resolver = dns_resolver
        self.logger = logging.getLogger('SessionEnumerator')

    def enumerate_sessions(self, fqdn: str) -> List[SessionIdentity]:
        """
        Collect the resolved identities loaded on a host.

        Args:
            fqdn: Fully qualified host name

        Returns:
            List of SessionIdentity, empty if the host could not be queried
        """
        remote_host = fqdn
        if self.dns_resolver:
            remote_host = self.dns_resolver.resolve_hostname(fqdn)
            if not remote_host:
                self.logger.debug(f"Failed to resolve {fqdn}")
                return []

        sids = self._enumerate_profile_sids(fqdn, remote_host)
        if not sids:
            return []

        sessions = self._resolve_sids(fqdn, remote_host, sids)
        self.logger.debug(f"Registry on {fqdn}: {len(sids)} profiles, {len(sessions)} resolved")
        return sessions

    def _get_transport(self, target: str, remote_host: str, pipe: str):
        # Kerberos needs the FQDN as target name even when connecting to an IP
        rpctransport = transport.DCERPCTransportFactory(f'ncacn_np:{target}[{pipe}]')
        rpctransport.setRemoteHost(remote_host)
        rpctransport.set_credentials('', '', self.domain, '', '')
        rpctransport.set_kerberos(True, kdcHost=self.kdc_host)
        rpctransport.set_connect_timeout(self.timeout)
        return rpctransport

    def _enumerate_profile_sids(self, target: str, remote_host: str) -> List[str]:
        sids = []
        dce = None
        key_handle = None

        try:
            dce = self._get_transport(target, remote_host, WINREG_PIPE).get_dce_rpc()
            dce.connect()
            dce.bind(rrp.MSRPC_UUID_RRP)

            key_handle = rrp.hOpenUsers(dce)['phKey']

            index = 0
            while True:
                try:
                    ans = rrp.hBaseRegEnumKey(dce, key_handle, index)
                except DCERPCException as e:
                    if e.get_error_code() != ERROR_NO_MORE_ITEMS:
                        self.logger.debug(f"Registry enumeration stopped on {target}: {e}")
                    break

                key_name = ans['lpNameOut'].rstrip('\x00')
                if SID_PATTERN.match(key_name):
                    sids.append(key_name)
                index += 1

        except Exception as e:
            self.logger.debug(f"Registry connection error on {target}: {e}")

        finally:
            if dce is not None:
                if key_handle is not None:
                    try:
                        rrp.hBaseRegCloseKey(dce, key_handle)
                    except Exception as e:
                        self.logger.debug(f"Error closing HKEY_USERS on {target}: {e}")
                self._disconnect(dce, target)

        return sids

    def _resolve_sids(self, target: str, remote_host: str, sids: List[str]) -> List[SessionIdentity]:
        sessions = []
        dce = None
        policy_handle = None

        try:
            dce = self._get_transport(target, remote_host, LSARPC_PIPE).get_dce_rpc()
            dce.connect()
            dce.bind(lsat.MSRPC_UUID_LSAT)

            resp = lsad.hLsarOpenPolicy2(dce, MAXIMUM_ALLOWED | lsat.POLICY_LOOKUP_NAMES)
            policy_handle = resp['PolicyHandle']

            for sid in sids:
                identity = self._lookup_sid(dce, policy_handle, sid)
                if identity is None:
                    self.logger.debug(f"Skipping unresolved SID {sid} on {target}")
                    continue
                sessions.append(identity)

        except Exception as e:
            self.logger.debug(f"LSA connection error on {target}: {e}")

        finally:
            if dce is not None:
                if policy_handle is not None:
                    try:
                        lsad.hLsarClose(dce, policy_handle)
                    except Exception as e:
                        self.logger.debug(f"Error closing LSA policy on {target}: {e}")
                self._disconnect(dce, target)

        return sessions

    def _lookup_sid(self, dce, policy_handle, sid: str) -> Optional[SessionIdentity]:
        try:
            resp = lsat.hLsarLookupSids(dce, policy_handle, [sid],
                                        lsat.LSAP_LOOKUP_LEVEL.LsapLookupWksta)
        except Exception as e:
            self.logger.debug(f"SID resolution error for {sid}: {e}")
            return None

        name_info = resp['TranslatedNames']['Names'][0]
        if name_info['Use'] == SID_NAME_USE.enumItems.SidTypeUnknown.value:
            return None

        account_domain = ''
        domain_index = name_info['DomainIndex']
        if domain_index >= 0:
            account_domain = str(resp['ReferencedDomains']['Domains'][domain_index]['Name'])

        return SessionIdentity(
            sid=sid,
            account_name=str(name_info['Name']),
            account_domain=account_domain,
            account_type=_sid_type_name(name_info['Use'])
        )

    def _disconnect(self, dce, target: str):
        try:
            dce.disconnect()
        except Exception as e:
            self.logger.debug(f"Error disconnecting from {target}: {e}")


# ============================================================================
# REPORT MODULE
# ============================================================================

class ReportError(Exception):
    pass


def escape_csv(value: str) -> str:
    """Quote a field if it contains a comma, quote or newline (quotes doubled)."""
    if ',' in value or '"' in value or '\n' in value:
        return '"' + value.replace('"', '""') + '"'
    return value


def quote_csv(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


class ReportSink:
    """
    CSV report shared by all workers.

    append() holds the lock for exactly one host's rows, so rows of a host are
    always contiguous. The counters are updated under the same lock.
    """

    def __init__(self, output_path):
        self.output_path = Path(output_path)
        self.logger = logging.getLogger('ReportSink')
        self._handle = None
        self._lock = threading.Lock()
        self._total_hosts = 0
        self._hosts_with_sessions = 0
        self._total_sessions = 0

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self.close()
        return False

    def open(self):
        """
        Create the report file and write the header row.

        Raises:
            ReportError: The file could not be created
        """
        try:
            # utf-8-sig writes the BOM Excel needs to detect UTF-8
            handle = self.output_path.open('w', encoding='utf-8-sig', newline='')
        except OSError as e:
            raise ReportError(f"Could not open output file {self.output_path}: {e}") from e

        with self._lock:
            self._handle = handle
            self._handle.write(CSV_HEADER + '\n')
            self._handle.flush()

        self.logger.info(f"Report file created: {self.output_path}")

    @staticmethod
    def format_rows(host: HostRecord, sessions: Sequence[SessionIdentity]) -> List[str]:
        computer = escape_csv(host.fqdn)
        operating_system = escape_csv(host.operating_system)

        if not sessions:
            return [f"{computer},{operating_system},,\n"]

        return [
            f"{computer},{operating_system},{escape_csv(session.sid)},{quote_csv(session.full_identity)}\n"
            for session in sessions
        ]

    def append(self, host: HostRecord, sessions: Sequence[SessionIdentity]):
        """
        Write one host's rows and update the statistics.

        Args:
            host: Scanned host
            sessions: Resolved identities, may be empty
        """
        rows = ''.join(self.format_rows(host, sessions))

        with self._lock:
            if self._handle is None:
                raise ReportError(f"Report {self.output_path} is not open")

            self._handle.write(rows)
            self._handle.flush()

            self._total_hosts += 1
            if sessions:
                self._hosts_with_sessions += 1
                self._total_sessions += len(sessions)

    @property
    def statistics(self) -> RunStatistics:
        with self._lock:
            return RunStatistics(
                total_hosts=self._total_hosts,
                hosts_with_sessions=self._hosts_with_sessions,
                total_sessions=self._total_sessions
            )

    def close(self):
        with self._lock:
            if self._handle is None:
                return
            try:
                self._handle.flush()
            finally:
                self._handle.close()
                self._handle = None


# ============================================================================
# THREADING AND ORCHESTRATION MODULE
# ============================================================================

def clamp_worker_count(count: int) -> int:
    return max(MIN_WORKERS, min(MAX_WORKERS, count))


def partition_batches(total: int, workers: int) -> List[Tuple[int, int]]:
    """
    Split range(total) into contiguous half-open batches, one per worker.

    Args:
        total: Number of hosts
        workers: Maximum number of workers (>= 1)

    Returns:
        List of (start, end) pairs; workers that would get nothing are omitted
    """
    if workers < 1:
        raise ValueError(f"Worker count must be at least 1, got {workers}")
    if total <= 0:
        return []

    batch_size = (total + workers - 1) // workers
    batches = []
    for index in range(workers):
        start = index * batch_size
        if start >= total:
            break
        batches.append((start, min(start + batch_size, total)))
    return batches


class SchedulerState(Enum):
    IDLE = 'idle'
    DISPATCHING = 'dispatching'
    DRAINING = 'draining'
    DONE = 'done'


class WorkScheduler:
    """
    Fans the host list out over a bounded set of worker threads.

    Each worker owns one contiguous batch and processes it in order, writing
    every host to the sink as soon as it is done. A run always visits every
    host exactly once.
    """

    def __init__(self, enumerator: SessionEnumerator, sink: ReportSink,
                 workers: int = DEFAULT_WORKERS, progress_interval: int = 10):
        """
        Initialize the scheduler.

        Args:
            enumerator: SessionEnumerator (or compatible) used for every host
            sink: Report sink receiving each host's result
            workers: Number of concurrent workers, clamped to [1, 500]
            progress_interval: Log progress every N hosts per worker
        """
        self.enumerator = enumerator
        self.sink = sink
        self.workers = clamp_worker_count(workers)
        self.progress_interval = progress_interval
        self.state = SchedulerState.IDLE
        self.logger = logging.getLogger('WorkScheduler')

    def _process_batch(self, hosts: Sequence[HostRecord], start: int, end: int):
        worker_name = threading.current_thread().name

        for index in range(start, end):
            host = hosts[index]

            try:
                sessions = self.enumerator.enumerate_sessions(host.fqdn)
            except Exception as e:
                self.logger.debug(f"Worker error processing {host.fqdn}: {e}")
                sessions = []

            try:
                self.sink.append(host, sessions)
            except Exception as e:
                self.logger.error(f"Failed to write report rows for {host.fqdn}: {e}")

            processed = index - start + 1
            if processed % self.progress_interval == 0 or index == end - 1:
                self.logger.info(f"[{worker_name}] {processed}/{end - start} computers processed")

    def run(self, hosts: Sequence[HostRecord]) -> int:
        """
        Process every host and wait for all workers to finish.

        Args:
            hosts: Hosts to scan (not modified)

        Returns:
            Number of workers launched
        """
        if self.state != SchedulerState.IDLE:
            raise RuntimeError(f"Scheduler already used (state: {self.state.value})")

        self.state = SchedulerState.DISPATCHING
        batches = partition_batches(len(hosts), self.workers)

        threads = []
        for index, (start, end) in enumerate(batches):
            t = threading.Thread(
                target=self._process_batch,
                args=(hosts, start, end),
                name=f'worker-{index}',
                daemon=True
            )
            t.start()
            threads.append(t)

        self.logger.debug(f"Dispatched {len(hosts)} hosts to {len(threads)} workers")

        self.state = SchedulerState.DRAINING
        for t in threads:
            t.join()

        self.state = SchedulerState.DONE
        return len(threads)


# ============================================================================
# MAIN APPLICATION MODULE
# ============================================================================

class _ArgumentParser(argparse.ArgumentParser):

    def error(self, message):
        # Bad arguments are a setup failure: exit code 1
        self.print_usage(sys.stderr)
        self.exit(1, f"[!] Error: {message}\n")


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = _ArgumentParser(
        description='UserScanner - Active Directory Logged-On User Inventory',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Scan every computer in the domain:
    %(prog)s -d contoso.local -dc dc01.contoso.local -o report.csv

  Fewer workers, custom DNS server:
    %(prog)s -d contoso.local -dc dc01.contoso.local -o report.csv -t 50 --dns 10.0.0.1

  Scan selected computers only:
    %(prog)s -d contoso.local -dc dc01.contoso.local -o report.csv --computer WS01 --computer WS02

Note: every computer in the domain is scanned and the logged-on users are saved
in CSV format. Authentication uses the Kerberos ticket cache (KRB5CCNAME).
        """
    )

    target_group = parser.add_argument_group('Target Specification')
    target_group.add_argument('-d', '--domain', required=True,
                              help='Domain name (e.g., contoso.local)')
    target_group.add_argument('-dc', '--dc', dest='domain_controller', required=True,
                              help='Domain controller address (e.g., dc01.contoso.local)')
    target_group.add_argument('--dns', '-ns', dest='dns_server',
                              help='DNS server IP address used to resolve computer names')
    target_group.add_argument('--target-file',
                              help='Optional: file to filter LDAP results (one computer name per line)')
    target_group.add_argument('--computer', action='append', dest='computers', default=[],
                              help='Scan only this computer (short name or FQDN, repeatable)')

    ops_group = parser.add_argument_group('Operational Parameters')
    ops_group.add_argument('-o', '--output', required=True,
                           help='Output CSV file (e.g., report.csv)')
    ops_group.add_argument('-t', '--threads', type=int, default=DEFAULT_WORKERS,
                           help=f'Number of threads (default: {DEFAULT_WORKERS}, max: {MAX_WORKERS})')
    ops_group.add_argument('--timeout', type=int, default=DEFAULT_TIMEOUT,
                           help=f'Connection timeout per host in seconds (default: {DEFAULT_TIMEOUT})')

    adv_group = parser.add_argument_group('Advanced Options')
    adv_group.add_argument('-v', '--verbose', action='store_true',
                           help='Enable verbose logging')

    args = parser.parse_args(argv)

    if args.timeout < 1:
        parser.error("Timeout must be at least 1 second")

    if args.dns_server and not _is_ip_address(args.dns_server):
        parser.error(f"Invalid IP address format for --dns: {args.dns_server}")

    return args


def setup_logging(verbose: bool):
    """
    Configure logging based on verbosity level.

    Args:
        verbose: Enable verbose logging
    """
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format='[%(levelname)s] %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)]
    )

    # Reduce impacket verbosity
    logging.getLogger('impacket').setLevel(logging.WARNING)


def load_targets_from_file(file_path: str) -> List[str]:
    """
    Load target host names from a file.

    Args:
        file_path: Path to file containing targets (one per line, # for comments)

    Returns:
        List of target names

    Raises:
        OSError: The file could not be read
    """
    targets = []
    with open(file_path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#'):
                targets.append(line)
    return targets


def filter_hosts(hosts: Sequence[HostRecord], names: Sequence[str]) -> List[HostRecord]:
    wanted = {name.lower() for name in names}
    return [host for host in hosts
            if host.fqdn.lower() in wanted or host.short_name.lower() in wanted]


def build_named_hosts(inventory: HostInventory, names: Sequence[str]) -> List[HostRecord]:
    """
    Build host records for explicitly named computers.

    Args:
        inventory: HostInventory used to look up each computer's OS
        names: Short names or FQDNs

    Returns:
        One HostRecord per name, in the given order
    """
    hosts = []
    for name in names:
        fqdn = name if '.' in name else f'{name}.{inventory.domain}'
        short_name = extract_short_name(fqdn, inventory.domain)
        # The cn of a computer object is its first DNS label, also for child domains
        cn = fqdn.split('.', 1)[0]
        operating_system = inventory.get_operating_system(cn) or UNKNOWN_OS
        hosts.append(HostRecord(fqdn=fqdn, short_name=short_name, operating_system=operating_system))
    return hosts


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main application entry point.

    Returns:
        Process exit code
    """
    args = parse_arguments(argv)

    setup_logging(args.verbose)
    logger = logging.getLogger('UserScanner')

    print(f"""
  _   _               ____
 | | | |___  ___ _ __/ ___|  ___ __ _ _ __  _ __   ___ _ __
 | | | / __|/ _ \\ '__\\___ \\ / __/ _` | '_ \\| '_ \\ / _ \\ '__|
 | |_| \\__ \\  __/ |   ___) | (_| (_| | | | | | | |  __/ |
  \\___/|___/\\___|_|  |____/ \\___\\__,_|_| |_|_| |_|\\___|_|

    Active Directory Logged-On User Inventory v{VERSION}
    """)

    workers = clamp_worker_count(args.threads)
    if args.threads > MAX_WORKERS:
        logger.warning(f"Thread count limited to {MAX_WORKERS}")

    logger.info("Settings:")
    logger.info(f"  Domain: {args.domain}")
    logger.info(f"  DC: {args.domain_controller}")
    logger.info(f"  Base DN: {domain_to_base_path(args.domain)}")
    logger.info(f"  Output: {args.output}")
    logger.info(f"  Thread Count: {workers}")

    target_filter = None
    if args.target_file:
        try:
            target_filter = load_targets_from_file(args.target_file)
        except OSError as e:
            logger.error(f"Error loading targets from file: {e}")
            return 1
        logger.info(f"Loaded {len(target_filter)} targets from file")

    dns_resolver = None
    if args.dns_server:
        logger.info(f"Configuring DNS resolution to use DNS server: {args.dns_server}")
        dns_resolver = DNSResolver(dns_server=args.dns_server, timeout=args.timeout)

    sink = ReportSink(args.output)
    try:
        sink.open()
    except ReportError as e:
        logger.error(str(e))
        return 1

    try:
        inventory = HostInventory(args.domain, args.domain_controller, timeout=args.timeout)

        if args.computers:
            logger.info(f"Looking up {len(args.computers)} named computers...")
            hosts = build_named_hosts(inventory, args.computers)
        else:
            logger.info("Scanning computers...")
            hosts = inventory.list_hosts()

        if target_filter is not None:
            original_count = len(hosts)
            hosts = filter_hosts(hosts, target_filter)
            logger.info(f"Filtered to {len(hosts)} targets (from {original_count} LDAP computers)")

        if not hosts:
            logger.warning("No computers found.")
            return 0

        logger.info("Collecting user information...")
        enumerator = SessionEnumerator(
            domain=args.domain,
            kdc_host=args.domain_controller,
            timeout=args.timeout,
            dns_resolver=dns_resolver
        )
        scheduler = WorkScheduler(enumerator, sink, workers=workers)

        start_time = time.time()
        scheduler.run(hosts)
        elapsed = time.time() - start_time

        logger.info(f"Collection completed in {elapsed:.2f} seconds")
    finally:
        sink.close()

    stats = sink.statistics
    logger.info("=== REPORT SUMMARY ===")
    logger.info(f"Total computers: {stats.total_hosts}")
    logger.info(f"Computers with users: {stats.hosts_with_sessions}")
    logger.info(f"Total logons: {stats.total_sessions}")
    logger.info(f"Report file: {sink.output_path.absolute()}")

    print(f"\n[+] Success! Scanned {stats.total_hosts} computers, found {stats.total_sessions} logons")
    print(f"[+] Output file: {sink.output_path.absolute()}")

    return 0


def cli():
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n[!] Interrupted by user")
        sys.exit(1)
    except Exception as e:
        print(f"\n[!] Fatal error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    cli()
