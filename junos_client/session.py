"""Session Manager: one NETCONF connection to one Junos device.

All requests issued through a :class:`Session` (operational commands,
configuration reads and the configuration transaction attached to it)
are serialized on the session's connection.

Usage::

    with Session.open("rt1.example.jp", "admin", password="secret") as s:
        print(s.command("show chassis hardware"))
        print(s.get_config("system", format="text"))
"""

from collections import namedtuple
from contextlib import contextmanager
from enum import Enum
from jnpr.junos import Device
from jnpr.junos.exception import (
    ConnectAuthError,
    ConnectClosedError,
    ConnectError as EzConnectError,
    ConnectRefusedError,
    ConnectTimeoutError,
    ConnectUnknownHostError,
    RpcError,
    RpcTimeoutError,
)
from lxml import etree
from ncclient.operations.errors import TimeoutExpiredError
import threading
from logging import getLogger

from junos_client.exceptions import (
    AuthError,
    CommandError,
    ConnectError,
    NotFoundError,
    SessionClosedError,
)
from junos_client.transaction import ConfigTransaction

logger = getLogger(__name__)

OUTPUT_FORMATS = ("text", "xml")

Platform = namedtuple("Platform", ["model", "version"])


class SessionState(Enum):
    OPEN = "open"
    CLOSED = "closed"


def _check_format(format):
    if format not in OUTPUT_FORMATS:
        raise ValueError(f"{format!r}: output format must be one of {OUTPUT_FORMATS}")


def _scope_filter(scope: str) -> str:
    """Build a get-configuration filter from "system" or "system/services"."""
    parts = [p for p in scope.strip().strip("/").split("/") if p]
    if not parts:
        raise NotFoundError(f"{scope!r}: empty configuration scope")
    try:
        root = elem = etree.Element(parts[0])
        for part in parts[1:]:
            elem = etree.SubElement(elem, part)
    except ValueError as e:
        raise NotFoundError(f"{scope!r}: invalid configuration scope: {e}") from e
    return etree.tostring(root, encoding="unicode")


def _render(reply, format) -> str:
    # 空の rpc-reply は True が返る
    if reply is None or isinstance(reply, bool):
        return ""
    if isinstance(reply, str):
        return reply.strip()
    if format == "text":
        return etree.tostring(reply, encoding="unicode", method="text").strip()
    return etree.tostring(reply, encoding="unicode", pretty_print=True)


class Session:
    """An authenticated NETCONF session to a single Junos device."""

    def __init__(self, dev, clock=None):
        self.dev = dev
        self.host = dev.hostname
        self.user = dev.user
        self.state = SessionState.OPEN
        self._lock = threading.RLock()
        self.transaction = ConfigTransaction(self, clock=clock)

    @classmethod
    def open(
        cls,
        host,
        user,
        password=None,
        port=830,
        ssh_private_key_file=None,
        clock=None,
        **device_options,
    ):
        """Open a NETCONF session.

        :raises AuthError: credentials rejected
        :raises ConnectError: refused, timeout, unknown host, or other failure
        """
        logger.debug(f"open: {host=} {user=} {port=}")
        dev = Device(
            host=host,
            user=user,
            passwd=password,
            port=port,
            ssh_private_key_file=ssh_private_key_file,
            **device_options,
        )
        try:
            dev.open()
        except ConnectAuthError as e:
            raise AuthError(f"Authentication credentials fail to login: {e}") from e
        except ConnectRefusedError as e:
            raise ConnectError(f"NETCONF Connection refused: {e}") from e
        except ConnectTimeoutError as e:
            raise ConnectError(f"Connection timeout: {e}") from e
        except ConnectUnknownHostError as e:
            raise ConnectError(f"Unknown Host: {e}") from e
        except EzConnectError as e:
            raise ConnectError(f"Cannot connect to device: {e}") from e
        logger.info(f"{host}: session opened")
        return cls(dev, clock=clock)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def __repr__(self):
        return f"Session(host={self.host!r}, user={self.user!r}, state={self.state.value})"

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    @contextmanager
    def serialized(self):
        """Hold the session for one request; yields the PyEZ Device.

        A dropped connection closes the session and surfaces as ConnectError.
        """
        with self._lock:
            if self.closed:
                raise SessionClosedError(f"{self.host}: session is closed")
            try:
                yield self.dev
            except ConnectClosedError as e:
                self.state = SessionState.CLOSED
                # NETCONF セッション終了でデバイス側のロックも解放される
                self.transaction._reset()
                logger.error(f"{self.host}: connection lost: {e}")
                raise ConnectError(f"{self.host}: connection lost: {e}") from e

    def close(self):
        """Close the session.

        If the configuration lock is still held, the uncommitted candidate is
        discarded and the lock released before the connection is closed.
        """
        with self._lock:
            if self.closed:
                return
            try:
                if self.transaction.locked:
                    self.transaction.release()
            finally:
                try:
                    self.dev.close()
                except ConnectClosedError:
                    pass
                self.state = SessionState.CLOSED
                logger.info(f"{self.host}: session closed")

    def keepalive(self):
        """Issue a lightweight RPC to keep the connection alive."""
        with self.serialized() as dev:
            try:
                dev.rpc.get_system_uptime_information()
            except RpcError as e:
                raise CommandError(f"{self.host}: keepalive failed: {e}") from e

    def command(self, command: str, format: str = "text") -> str:
        """Run an operational mode command such as "show chassis hardware".

        :raises CommandError: syntax error, permission denied or timeout
        """
        _check_format(format)
        logger.debug(f"{self.host}: command {command!r} {format=}")
        with self.serialized() as dev:
            try:
                reply = dev.rpc.cli(command, format=format)
            except RpcTimeoutError as e:
                raise CommandError(f"{command}: RpcTimeoutError: {e}") from e
            except TimeoutExpiredError as e:
                raise CommandError(f"{command}: TimeoutExpiredError: {e}") from e
            except RpcError as e:
                raise CommandError(f"{command}: {e}") from e
        return _render(reply, format)

    def get_config(self, scope: str = "full", format: str = "text") -> str:
        """Return the active configuration.

        "full" returns everything, anything else only that stanza, e.g.
        "security" or "system/services".

        :raises NotFoundError: the scope does not exist or is empty
        """
        _check_format(format)
        filter_xml = None if scope == "full" else _scope_filter(scope)
        with self.serialized() as dev:
            try:
                reply = dev.rpc.get_config(
                    filter_xml=filter_xml, options={"format": format}
                )
            except RpcTimeoutError as e:
                raise CommandError(f"get-configuration {scope}: RpcTimeoutError: {e}") from e
            except RpcError as e:
                raise NotFoundError(f"{scope}: {e}") from e
        if scope != "full":
            if format == "xml" and len(reply) == 0:
                raise NotFoundError(f"{scope}: configuration not found")
            if format == "text" and not _render(reply, format):
                raise NotFoundError(f"{scope}: configuration not found")
        return _render(reply, format)

    @property
    def facts(self):
        with self.serialized() as dev:
            return dev.facts

    @property
    def hostname(self):
        return self.facts.get("hostname")

    @property
    def platform(self) -> list:
        """Model and version of each routing engine / virtual chassis member."""
        facts = self.facts
        version = facts.get("version")
        model_info = facts.get("model_info") or {}
        if len(model_info) > 1:
            return [Platform(model, version) for model in model_info.values()]
        return [Platform(facts.get("model"), version)]

    def print_facts(self):
        print(f"Hostname: {self.hostname}")
        for data in self.platform:
            print(f"Model: {data.model}, Version: {data.version}")
