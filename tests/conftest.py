import re

import pytest
from ldap3.core.exceptions import LDAPSocketOpenError, LDAPPackageUnavailableError

import userscanner
from userscanner import rrp, lsat, lsad, ERROR_NO_MORE_ITEMS, PAGED_RESULTS_OID

STATUS_NONE_MAPPED = 0xC0000073


# ----------------------------------------------------------------------------
# LDAP fakes
# ----------------------------------------------------------------------------

class FakeLdapServer:

    def __init__(self, host, **kwargs):
        self.host = host
        self.kwargs = kwargs


class FakeLdapConnection:

    def __init__(self, directory, server, **kwargs):
        self.directory = directory
        self.server = server
        self.kwargs = kwargs
        self.bound = False
        self.result = None
        self.response = None

    def open(self):
        if self.directory.unreachable:
            raise LDAPSocketOpenError('socket connection error while opening: [Errno 111] Connection refused')
        self.directory.opened += 1

    def bind(self):
        if self.directory.bind_error == 'package':
            raise LDAPPackageUnavailableError('package gssapi (or winkerberos) missing')
        if self.directory.bind_error:
            self.result = {'result': self.directory.bind_error, 'description': 'invalidCredentials'}
            return False
        self.bound = True
        self.result = {'result': 0, 'description': 'success'}
        return True

    def search(self, search_base, search_filter, search_scope=None, attributes=None,
               paged_size=None, paged_cookie=None):
        self.directory.searches.append({
            'base': search_base,
            'filter': search_filter,
            'attributes': list(attributes or []),
            'cookie': paged_cookie,
        })

        if self.directory.search_error:
            self.result = {'result': self.directory.search_error, 'description': 'noSuchObject'}
            self.response = []
            return False

        entries = [entry for entry in self.directory.entries
                   if self.directory.matches(entry, search_filter)]
        start = int(paged_cookie) if paged_cookie else 0
        end = start + (paged_size or len(entries))
        page = entries[start:end]
        next_cookie = str(end).encode() if end < len(entries) else b''

        self.response = [
            {'type': 'searchResEntry', 'dn': f'CN=entry{start + i}',
             'attributes': {name: entry[name] for name in attributes if name in entry}}
            for i, entry in enumerate(page)
        ]
        self.response.append({'type': 'searchResRef', 'uri': ['ldap://ForestDnsZones.contoso.local']})
        self.result = {
            'result': 0,
            'description': 'success',
            'controls': {PAGED_RESULTS_OID: {'value': {'size': len(entries), 'cookie': next_cookie}}},
        }
        return bool(page)

    def unbind(self):
        self.directory.unbinds += 1
        self.bound = False


class FakeDirectory:
    """In-memory domain controller behind the ldap3 Server/Connection names."""

    def __init__(self):
        self.entries = []
        self.unreachable = False
        self.bind_error = 0
        self.search_error = 0
        self.opened = 0
        self.unbinds = 0
        self.searches = []
        self.connections = []

    def add_computer(self, **attributes):
        self.entries.append(attributes)

    def matches(self, entry, search_filter):
        # Only the (cn=...) equality used by get_operating_system is interpreted
        match = re.search(r'\(cn=([^)]*)\)', search_filter)
        if not match:
            return True
        return entry.get('cn', '').lower() == match.group(1).lower()

    def connection(self, server, **kwargs):
        conn = FakeLdapConnection(self, server, **kwargs)
        self.connections.append(conn)
        return conn


@pytest.fixture
def fake_directory(monkeypatch):
    directory = FakeDirectory()
    monkeypatch.setattr(userscanner, 'Server', FakeLdapServer)
    monkeypatch.setattr(userscanner, 'Connection', directory.connection)
    return directory


# ----------------------------------------------------------------------------
# RPC fakes
# ----------------------------------------------------------------------------

class FakeHost:

    def __init__(self, profiles=(), accounts=None, down_pipes=(), enum_error=None):
        self.profiles = list(profiles)
        self.accounts = dict(accounts or {})
        self.down_pipes = set(down_pipes)
        self.enum_error = enum_error


class FakeDce:

    def __init__(self, rpc_transport):
        self.transport = rpc_transport
        self.network = rpc_transport.network
        self.host = None

    def connect(self):
        host = self.network.hosts.get(self.transport.target)
        if host is None or self.transport.pipe in host.down_pipes:
            raise OSError(f'[Errno 113] No route to host: {self.transport.target}')
        self.host = host
        self.network.connects.append((self.transport.target, self.transport.pipe))

    def bind(self, uuid):
        self.network.binds.append(uuid)

    def disconnect(self):
        self.network.disconnects.append((self.transport.target, self.transport.pipe))


class FakeTransport:

    def __init__(self, network, binding):
        match = re.match(r'ncacn_np:(?P<target>[^\[]+)\[(?P<pipe>[^\]]+)\]', binding)
        self.network = network
        self.target = match.group('target')
        self.pipe = match.group('pipe')
        self.remote_host = None
        self.credentials = None
        self.kerberos = None
        self.timeout = None
        network.transports.append(self)

    def setRemoteHost(self, remote_host):
        self.remote_host = remote_host

    def set_credentials(self, *args, **kwargs):
        self.credentials = args

    def set_kerberos(self, flag, kdcHost=None):
        self.kerberos = (flag, kdcHost)

    def set_connect_timeout(self, timeout):
        self.timeout = timeout

    def get_dce_rpc(self):
        return FakeDce(self)


class FakeRpcNetwork:
    """Hosts reachable over the fake SMB named pipes, keyed by FQDN."""

    def __init__(self):
        self.hosts = {}
        self.transports = []
        self.connects = []
        self.binds = []
        self.disconnects = []
        self.closed_keys = []
        self.closed_policies = []
        self.opened_policies = []
        self.lookups = []

    def add_host(self, fqdn, **kwargs):
        self.hosts[fqdn] = FakeHost(**kwargs)
        return self.hosts[fqdn]

    # rrp
    def open_users(self, dce):
        return {'phKey': f'HKU@{dce.transport.target}'}

    def enum_key(self, dce, key_handle, index):
        host = dce.host
        if host.enum_error is not None and index == host.enum_error:
            raise rrp.DCERPCSessionError(error_code=5)
        if index >= len(host.profiles):
            raise rrp.DCERPCSessionError(error_code=ERROR_NO_MORE_ITEMS)
        return {'lpNameOut': host.profiles[index] + '\x00'}

    def close_key(self, dce, key_handle):
        self.closed_keys.append(key_handle)

    # lsat / lsad
    def open_policy(self, dce, access):
        self.opened_policies.append((dce.transport.target, access))
        return {'PolicyHandle': f'POLICY@{dce.transport.target}'}

    def lookup_sids(self, dce, policy_handle, sids, level):
        sid = sids[0]
        self.lookups.append(sid)
        account = dce.host.accounts.get(sid)
        if account is None:
            raise lsat.DCERPCSessionError(error_code=STATUS_NONE_MAPPED)
        if isinstance(account, Exception):
            raise account
        name, domain, use = account
        return {
            'TranslatedNames': {'Names': [{'Name': name, 'Use': use, 'DomainIndex': 0}]},
            'ReferencedDomains': {'Domains': [{'Name': domain}]},
        }

    def close_policy(self, dce, policy_handle):
        self.closed_policies.append(policy_handle)


@pytest.fixture
def fake_network(monkeypatch):
    network = FakeRpcNetwork()
    monkeypatch.setattr(userscanner.transport, 'DCERPCTransportFactory',
                        lambda binding: FakeTransport(network, binding))
    monkeypatch.setattr(rrp, 'hOpenUsers', network.open_users)
    monkeypatch.setattr(rrp, 'hBaseRegEnumKey', network.enum_key)
    monkeypatch.setattr(rrp, 'hBaseRegCloseKey', network.close_key)
    monkeypatch.setattr(lsad, 'hLsarOpenPolicy2', network.open_policy)
    monkeypatch.setattr(lsat, 'hLsarLookupSids', network.lookup_sids)
    monkeypatch.setattr(lsad, 'hLsarClose', network.close_policy)
    return network
