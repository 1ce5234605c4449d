"""In-memory directory used by the realm tests."""

from typing import Any, Dict, List, Optional

from directory_realm.client import (
    PROVIDER_URL,
    SECURITY_AUTHENTICATION,
    SECURITY_CREDENTIALS,
    SECURITY_PRINCIPAL,
)
from directory_realm.errors import (
    ConnectOpenError,
    DirectoryAuthenticationError,
    InvalidNameSyntaxError,
    NameNotFoundError,
    PartialResultError,
)
from directory_realm.models import SearchResult


class FakeDirectory:
    """
    Entries keyed by DN, bind passwords, and canned answers per search filter.

    Searches are answered from on_search() registrations rather than by
    evaluating filters, so tests can assert the exact filter text sent.
    """

    def __init__(self):
        self.entries: Dict[str, Dict[str, List[str]]] = {}
        self.passwords: Dict[str, str] = {}
        self.answers: Dict[str, List[str]] = {}
        self.partial_filters = set()
        self.absolute_dns = set()
        self.protected_dns = set()
        self.invalid_dns = set()
        self.down_urls = set()
        self.failures: List[Exception] = []
        self.searches: List[Dict[str, Any]] = []
        self.binds: List[Optional[str]] = []
        self.bind_mechanisms: List[Optional[str]] = []
        self.opened: List[Dict[str, Any]] = []
        self.connections: List['FakeConnection'] = []

    def add_entry(self, dn: str, password: Optional[str] = None, **attributes) -> None:
        self.entries[dn] = {name: list(values) if isinstance(values, (list, tuple)) else [values]
                            for name, values in attributes.items()}
        if password is not None:
            self.passwords[dn] = password

    def on_search(self, search_filter: str, *dns: str) -> None:
        self.answers[search_filter] = list(dns)

    def fail_next(self, error: Exception) -> None:
        self.failures.append(error)

    @property
    def closed_count(self) -> int:
        return sum(1 for c in self.connections if c.closed)

    def connect(self, environment: Dict[str, Any], bind: bool = True, tls=None) -> 'FakeConnection':
        url = environment.get(PROVIDER_URL)
        self.opened.append(dict(environment))
        if url is None or url in self.down_urls:
            raise ConnectOpenError(f"Connection refused: {url}", url=url)
        connection = FakeConnection(self, environment, tls)
        self.connections.append(connection)
        if bind:
            connection.bind()
        return connection


class FakeConnection:
    """Implements the DirectoryConnection surface over a FakeDirectory."""

    def __init__(self, directory: FakeDirectory, environment: Dict[str, Any], tls=None):
        self.directory = directory
        self._environment = dict(environment)
        self.name_in_namespace = ""
        self.tls = tls
        self.tls_started = False
        self.closed = False
        self._bound = None

    @property
    def environment(self) -> Dict[str, Any]:
        return dict(self._environment)

    def add_to_environment(self, name, value):
        self._environment[name] = value

    def remove_from_environment(self, name):
        self._environment.pop(name, None)

    @property
    def principal(self) -> Optional[str]:
        return self._environment.get(SECURITY_PRINCIPAL)

    def bind(self):
        identity = (
            self._environment.get(SECURITY_PRINCIPAL),
            self._environment.get(SECURITY_CREDENTIALS),
            self._environment.get(SECURITY_AUTHENTICATION),
        )
        if identity == self._bound:
            return
        self._bound = None
        principal, credentials, mechanism = identity
        self.directory.binds.append(principal)
        self.directory.bind_mechanisms.append(mechanism)
        if principal is not None and self.directory.passwords.get(principal) != credentials:
            raise DirectoryAuthenticationError(f"Invalid credentials for {principal}")
        self._bound = identity

    def _maybe_fail(self):
        if self.directory.failures:
            raise self.directory.failures.pop(0)

    def search(self, base, search_filter, controls):
        self._maybe_fail()
        self.bind()
        self.directory.searches.append({
            "base": base,
            "filter": search_filter,
            "controls": controls,
            "principal": self.principal,
        })

        results = []
        for dn in self.directory.answers.get(search_filter, []):
            attributes = self._select(self.directory.entries.get(dn, {}), controls.attributes)
            suffix = "," + base if base else ""
            if dn in self.directory.absolute_dns:
                results.append(SearchResult("ldap://fake/" + dn, False, attributes))
            elif suffix and dn.endswith(suffix):
                results.append(SearchResult(dn[:-len(suffix)], True, attributes))
            else:
                results.append(SearchResult(dn, True, attributes))
        partial = search_filter in self.directory.partial_filters
        return self._results(results, partial)

    @staticmethod
    def _results(results, partial):
        for result in results:
            yield result
        if partial:
            raise PartialResultError("Continuation reference returned")

    @staticmethod
    def _select(attributes, attribute_ids):
        if attribute_ids is None:
            return dict(attributes)
        wanted = {a.lower() for a in attribute_ids}
        return {name: values for name, values in attributes.items() if name.lower() in wanted}

    def get_attributes(self, dn, attribute_ids=None):
        self._maybe_fail()
        self.bind()
        if dn == "":
            return {"namingContexts": ["dc=example,dc=com"]}
        if dn in self.directory.invalid_dns:
            raise InvalidNameSyntaxError(f"Invalid DN syntax: {dn}")
        if dn in self.directory.protected_dns and self.principal != dn:
            raise DirectoryAuthenticationError(f"Insufficient access to {dn}")
        if dn not in self.directory.entries:
            raise NameNotFoundError(f"No such object: {dn}")
        return self._select(self.directory.entries[dn], attribute_ids)

    def start_tls(self):
        self.tls_started = True
        return "TLSv1.3"

    def close(self):
        self.closed = True


SERVICE_DN = "cn=svc,dc=example,dc=com"
SERVICE_PASSWORD = "service-secret"
JDOE_DN = "uid=jdoe,ou=people,dc=example,dc=com"


def example_directory() -> FakeDirectory:
    """A service account and one user, findable with (uid=jdoe)."""
    directory = FakeDirectory()
    directory.passwords[SERVICE_DN] = SERVICE_PASSWORD
    directory.add_entry(JDOE_DN, password="secret", uid="jdoe", memberOf=["staff"],
                        employeeType="E42", userPassword="stored-secret")
    directory.on_search("(uid=jdoe)", JDOE_DN)
    return directory


def example_settings(**overrides):
    from directory_realm.config import load_settings

    values = dict(
        connection_url="ldap://dc01",
        connection_name=SERVICE_DN,
        connection_password=SERVICE_PASSWORD,
        user_base="ou=people,dc=example,dc=com",
        user_search="(uid={0})",
    )
    values.update(overrides)
    return load_settings(**values)
