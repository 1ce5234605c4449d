"""
Connection Management
=====================
Hands out directory connections to the realm.

Two modes, chosen by connection_pool_size:
- singleton (size 1): one handle guarded by a mutex, held for the whole of
  an authentication
- pool (size > 1): a bounded stack of idle handles; a handle is created when
  the pool is empty and closed when it is full on release

Every handle carries the settings snapshot and compiled templates it was
created with, so a reconfiguration never changes a handle that is in use.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from directory_realm.client import (
    CONNECT_TIMEOUT,
    DEREF_ALIASES,
    PROVIDER_URL,
    READ_TIMEOUT,
    REFERRAL,
    SECURITY_AUTHENTICATION,
    SECURITY_CREDENTIALS,
    SECURITY_PRINCIPAL,
    SECURITY_PROTOCOL,
    Connector,
    DirectoryConnection,
    resolve_connector,
)
from directory_realm.config import RealmSettings
from directory_realm.errors import ConnectOpenError
from directory_realm.patterns import MessageTemplate, compile_template
from directory_realm.tls import TlsNegotiator

logger = logging.getLogger(__name__)


def directory_environment(settings: RealmSettings, attempt: int = 0) -> Dict[str, Any]:
    """
    Build the connection environment for an open attempt. Attempt 0 uses
    connection_url, any later attempt uses alternate_url.
    """
    env: Dict[str, Any] = {}
    if settings.connection_name is not None:
        env[SECURITY_PRINCIPAL] = settings.connection_name
    if settings.connection_password is not None:
        env[SECURITY_CREDENTIALS] = settings.connection_password
    if settings.authentication is not None:
        env[SECURITY_AUTHENTICATION] = settings.authentication
    if settings.protocol is not None:
        env[SECURITY_PROTOCOL] = settings.protocol
    if settings.referrals is not None:
        env[REFERRAL] = settings.referrals
    if settings.deref_aliases is not None:
        env[DEREF_ALIASES] = settings.deref_aliases
    env[CONNECT_TIMEOUT] = settings.connection_timeout
    env[READ_TIMEOUT] = settings.read_timeout

    if settings.connection_url is not None and attempt == 0:
        env[PROVIDER_URL] = settings.connection_url
    elif settings.alternate_url is not None and attempt > 0:
        env[PROVIDER_URL] = settings.alternate_url

    return env


class ConnectionHandle:
    """A (possibly not yet opened) connection plus its compiled templates."""

    def __init__(self, settings: RealmSettings, pooled: bool = False):
        self.settings = settings
        self.pooled = pooled
        self.connection: Optional[DirectoryConnection] = None

        self.user_search_template = compile_template(settings.user_search)
        patterns = settings.user_pattern_list
        self.user_pattern_templates: Optional[List[MessageTemplate]] = (
            [MessageTemplate(p) for p in patterns] if patterns is not None else None
        )
        self.role_base_template = compile_template(settings.role_base) if settings.role_base else None
        self.role_search_template = compile_template(settings.role_search)

    def user_credentials_add(self, dn: str, credentials: Optional[str]) -> None:
        """Switch the environment identity to a user."""
        self.connection.add_to_environment(SECURITY_PRINCIPAL, dn)
        self.connection.add_to_environment(SECURITY_CREDENTIALS, credentials)

    def user_credentials_remove(self) -> None:
        """Switch the environment identity back to the service account (or anonymous)."""
        if self.settings.connection_name is not None:
            self.connection.add_to_environment(SECURITY_PRINCIPAL, self.settings.connection_name)
        else:
            self.connection.remove_from_environment(SECURITY_PRINCIPAL)

        if self.settings.connection_password is not None:
            self.connection.add_to_environment(SECURITY_CREDENTIALS, self.settings.connection_password)
        else:
            self.connection.remove_from_environment(SECURITY_CREDENTIALS)

    @contextmanager
    def bound_as(self, dn: str, credentials: Optional[str]) -> Iterator[DirectoryConnection]:
        """Run a block with the connection identity set to a user, then restore it."""
        self.user_credentials_add(dn, credentials)
        try:
            yield self.connection
        finally:
            self.user_credentials_remove()

    def __repr__(self) -> str:
        state = "open" if self.connection is not None else "closed"
        return f"ConnectionHandle({state}, pooled={self.pooled})"


class ConnectionPool:
    """Bounded LIFO stack of idle handles."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._handles: deque = deque()
        self._lock = threading.Lock()

    def push(self, handle: ConnectionHandle) -> bool:
        """Return a handle to the pool. False if the pool is full."""
        with self._lock:
            if len(self._handles) >= self.capacity:
                return False
            self._handles.append(handle)
            return True

    def pop(self) -> Optional[ConnectionHandle]:
        with self._lock:
            return self._handles.pop() if self._handles else None

    def drain(self) -> List[ConnectionHandle]:
        with self._lock:
            handles = list(self._handles)
            self._handles.clear()
            return handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


class ConnectionManager:
    """
    Owns the active settings, the pool or singleton handle, and the logic to
    open connections with failover to the alternate URL.
    """

    def __init__(self, settings: RealmSettings, connector: Optional[Connector] = None):
        self._explicit_connector = connector
        self._state_lock = threading.Lock()
        self._single_lock = threading.Lock()
        self._singleton: Optional[ConnectionHandle] = None
        self._prepared: Optional[ConnectionHandle] = None

        self._connector, self._tls = self._collaborators(settings)
        # Validate templates up front
        ConnectionHandle(settings)
        self._settings = settings
        self._pool = ConnectionPool(settings.connection_pool_size) if settings.pooling_enabled else None

    @property
    def settings(self) -> RealmSettings:
        return self._settings

    @property
    def pool(self) -> Optional[ConnectionPool]:
        return self._pool

    def _collaborators(self, settings: RealmSettings) -> Tuple[Connector, Optional[TlsNegotiator]]:
        connector = self._explicit_connector or resolve_connector(settings.context_factory)
        tls = TlsNegotiator.from_settings(settings) if settings.use_start_tls else None
        return connector, tls

    def acquire(self) -> ConnectionHandle:
        """
        Get a handle with an open connection.

        In singleton mode the mutex stays held until release() or close().

        Raises:
            ConnectOpenError: if no connection could be opened
        """
        with self._state_lock:
            settings = self._settings
            pool = self._pool

        if pool is not None:
            handle = pool.pop()
            if handle is None:
                handle = ConnectionHandle(settings, pooled=True)
        else:
            self._single_lock.acquire()
            try:
                handle = self._current_singleton(settings)
            except Exception:
                self._single_lock.release()
                raise

        if handle.connection is None:
            try:
                self.open(handle)
            except Exception:
                if not handle.pooled:
                    self._single_lock.release()
                raise

        return handle

    def _current_singleton(self, settings: RealmSettings) -> ConnectionHandle:
        # Caller holds the singleton mutex
        if self._singleton is not None and self._singleton.settings is settings:
            return self._singleton
        if self._singleton is not None:
            self._close_connection(self._singleton)

        prepared, self._prepared = self._prepared, None
        if prepared is not None and prepared.settings is settings:
            self._singleton = prepared
        else:
            self._singleton = ConnectionHandle(settings)
        return self._singleton

    def open(self, handle: ConnectionHandle) -> None:
        """
        Open the handle's connection, trying alternate_url once if the
        primary URL fails.
        """
        settings = handle.settings
        try:
            handle.connection = self._create_connection(directory_environment(settings, attempt=0))
        except Exception as e:
            if settings.alternate_url is None:
                raise ConnectOpenError(
                    f"Unable to connect to {settings.connection_url}: {e}", url=settings.connection_url
                ) from e
            logger.info(
                f"Connection to {settings.connection_url} failed ({e}), "
                f"trying alternate URL {settings.alternate_url}"
            )
            try:
                handle.connection = self._create_connection(directory_environment(settings, attempt=1))
            except Exception as alternate_error:
                raise ConnectOpenError(
                    f"Unable to connect to {settings.alternate_url}: {alternate_error}",
                    url=settings.alternate_url,
                ) from alternate_error
        logger.debug(f"Opened directory connection {handle}")

    def _create_connection(self, environment: Dict[str, Any]) -> DirectoryConnection:
        if self._tls is not None:
            return self._tls.negotiate(environment, self._connector)
        return self._connector(environment)

    def release(self, handle: Optional[ConnectionHandle]) -> None:
        """Give a handle back after a successful operation."""
        if handle is None:
            return
        if handle.pooled:
            pool = self._pool
            if pool is None or handle.settings is not self._settings or not pool.push(handle):
                self._close_connection(handle)
        else:
            if handle.settings is not self._settings:
                self._close_connection(handle)
            self._single_lock.release()

    def close(self, handle: ConnectionHandle) -> None:
        """Close a handle after a failure. Never raises; releases the singleton mutex."""
        self._close_connection(handle)
        if not handle.pooled:
            self._single_lock.release()

    def _close_connection(self, handle: ConnectionHandle) -> None:
        connection = handle.connection
        if connection is None:
            return
        try:
            connection.close()
            logger.debug("Closed directory connection")
        except Exception as e:
            logger.error(f"Error closing directory connection: {e}")
        handle.connection = None

    def drain_pool(self) -> None:
        """Close every idle pooled connection."""
        pool = self._pool
        if pool is None:
            return
        for handle in pool.drain():
            self._close_connection(handle)

    @contextmanager
    def connection(self) -> Iterator[ConnectionHandle]:
        """
        Acquire a handle for a block. On success it is released; on any error
        it is closed and the pool is drained before the error propagates.
        """
        handle = self.acquire()
        try:
            yield handle
        except BaseException:
            self.close(handle)
            self.drain_pool()
            raise
        self.release(handle)

    def reconfigure(self, settings: RealmSettings) -> ConnectionHandle:
        """
        Swap in a new settings snapshot. In-flight handles keep their old
        snapshot and are closed when released.

        Returns:
            A fresh, unopened handle for the new settings

        Raises:
            ConfigurationError: if the new settings are unusable; the active
            settings are left untouched
        """
        connector, tls = self._collaborators(settings)
        handle = ConnectionHandle(settings, pooled=settings.pooling_enabled)

        with self._state_lock:
            old_pool = self._pool
            self._connector = connector
            self._tls = tls
            self._settings = settings
            self._pool = ConnectionPool(settings.connection_pool_size) if settings.pooling_enabled else None
            if self._pool is not None:
                self._pool.push(handle)
            else:
                self._prepared = handle

        if old_pool is not None:
            for idle in old_pool.drain():
                self._close_connection(idle)
        if settings.pooling_enabled:
            # Pooled mode never goes through _current_singleton again
            self._close_singleton()
        logger.info("Directory realm reconfigured")
        return handle

    def start(self) -> None:
        """Open a connection eagerly. A failure is logged, not raised."""
        try:
            handle = self.acquire()
        except Exception as e:
            logger.error(f"Unable to open directory connection at startup: {e}")
            return
        self.release(handle)

    def shutdown(self) -> None:
        """Close the singleton connection and every pooled one."""
        self._close_singleton()
        self.drain_pool()

    def _close_singleton(self) -> None:
        with self._single_lock:
            singleton, self._singleton = self._singleton, None
            prepared, self._prepared = self._prepared, None
        for handle in (singleton, prepared):
            if handle is not None:
                self._close_connection(handle)

    def is_available(self) -> bool:
        if self._pool is not None:
            return True
        singleton = self._singleton
        return singleton is not None and singleton.connection is not None
