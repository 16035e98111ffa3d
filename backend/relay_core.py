"""
Relay Core - Command Correlation Layer

This module relays named commands to Figma plugin peers over WebSocket
connections and matches the asynchronous responses back to their callers.
"""

import asyncio
import inspect
import itertools
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import WebSocketException

from relay_messages import (
    CommandResponse,
    ConnectionEstablished,
    ExecuteCommand,
    MESSAGE_TYPE_COMMAND_RESPONSE,
    MESSAGE_TYPE_CONNECTION_ESTABLISHED,
    ProtocolError,
    parse_message,
)

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 10.0
DEFAULT_OPERATION_TIMEOUT = 30.0
DEFAULT_OPEN_TIMEOUT = 10.0
DEFAULT_RECONNECT_INTERVAL = 5.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5

# Subscribable events besides inbound message types
EVENT_ANY = "*"
EVENT_CONNECTION_OPENED = "connection_opened"
EVENT_CONNECTION_CLOSED = "connection_closed"

EventHandler = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]


class RelayError(Exception):
    """Base class for failures surfaced to relay callers."""


class RelayConnectionError(RelayError, ConnectionError):
    """The channel to a peer could not be established."""


class TransportError(RelayError):
    """A message could not be handed to an open connection."""

    def __init__(self, message: str, connection_id: Optional[int] = None):
        self.connection_id = connection_id
        super().__init__(message)


class CommandTimeoutError(RelayError, TimeoutError):
    """No response arrived within the command's timeout."""

    def __init__(self, command: str, command_id: str, timeout: float):
        self.command = command
        self.command_id = command_id
        self.timeout = timeout
        super().__init__(f"Command '{command}' timed out after {timeout:.3f}s")


class CommandError(RelayError):
    """
    The dispatcher reported that a command failed.

    A plain string error is kept verbatim as the exception text. A structured
    payload ({ code, message, details? }) is unpacked so callers can inspect it.
    """

    def __init__(self, payload: Any, command: str | None = None, params: Dict[str, Any] | None = None):
        self.command = command
        self.params = params

        if isinstance(payload, dict):
            self.code: str = str(payload.get("code", "plugin_error"))
            self.message: str = str(payload.get("message", ""))
            self.details: Dict[str, Any] = payload.get("details", {}) or {}
            self.payload = payload
            text = self.message if self.message else self.code
        else:
            self.code = "plugin_error"
            self.message = str(payload)
            self.details = {}
            self.payload = {"code": self.code, "message": self.message, "details": self.details}
            text = self.message

        super().__init__(text)


class InvalidTransition(RelayError):
    """A connection or link was asked to make a transition its state machine forbids."""


class ConnectionState(str, Enum):
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    RECONNECTING = "RECONNECTING"


_CONNECTION_TRANSITIONS = {
    ConnectionState.CONNECTING: {ConnectionState.OPEN, ConnectionState.CLOSED},
    ConnectionState.OPEN: {ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}

_LINK_TRANSITIONS = {
    ConnectionState.CONNECTING: {ConnectionState.OPEN, ConnectionState.RECONNECTING, ConnectionState.CLOSED},
    ConnectionState.OPEN: {ConnectionState.RECONNECTING, ConnectionState.CLOSED},
    ConnectionState.RECONNECTING: {ConnectionState.CONNECTING, ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}


def _transition(owner: Any, new_state: ConnectionState, allowed: Dict[ConnectionState, set]) -> None:
    if new_state not in allowed.get(owner.state, set()):
        raise InvalidTransition(f"{type(owner).__name__} cannot go from {owner.state.value} to {new_state.value}")
    owner.state = new_state
    owner.history.append(new_state)


@dataclass(eq=False)
class Link:
    """An outbound channel to one address that is redialed after it drops."""

    address: str
    state: ConnectionState = ConnectionState.CONNECTING
    history: List[ConnectionState] = field(default_factory=lambda: [ConnectionState.CONNECTING])
    attempts: int = 0
    connection: Optional["Connection"] = None
    closed: bool = False  # closed explicitly; never redial

    def transition(self, new_state: ConnectionState) -> None:
        _transition(self, new_state, _LINK_TRANSITIONS)


@dataclass(eq=False)
class Connection:
    id: int
    websocket: Any = None
    link: Optional[Link] = None
    created_at: float = field(default_factory=time.time)
    remote_id: Any = None
    state: ConnectionState = ConnectionState.CONNECTING
    history: List[ConnectionState] = field(default_factory=lambda: [ConnectionState.CONNECTING])
    reader: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    def transition(self, new_state: ConnectionState) -> None:
        _transition(self, new_state, _CONNECTION_TRANSITIONS)


@dataclass(eq=False)
class PendingCommand:
    command_id: str
    command: str
    params: Dict[str, Any]
    connection_id: Optional[int]
    future: asyncio.Future
    issued_at: float
    deadline: float


async def _default_connector(address: str):
    # Remove size limits to allow large selection snapshots over WS
    return await websockets.connect(address, max_size=None)


class RelayCore:
    """
    Relays commands to Figma plugin peers and correlates their responses.

    This class manages:
    - The connection-id -> Connection map for every open peer
    - Sending EXECUTE_COMMAND messages with unique command ids
    - Resolving futures when COMMAND_RESPONSE messages arrive
    - Timeouts, redialing outbound links and event subscriptions

    All state is touched from the event loop thread only.
    """

    def __init__(
        self,
        *,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
        auto_reconnect: bool = True,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
    ):
        """
        Initialize the relay.

        Args:
            connector: Coroutine function dialing an address and returning a
                websocket (default: websockets.connect)
            command_timeout: Default timeout in seconds for execute_command
            open_timeout: Timeout in seconds for establishing a channel
            auto_reconnect: Redial outbound links after they drop
            reconnect_interval: Fixed delay in seconds between redial attempts
            max_reconnect_attempts: Redial attempts before a link gives up
        """
        self._connector = connector or _default_connector
        self.command_timeout = command_timeout
        self.open_timeout = open_timeout
        self.auto_reconnect = auto_reconnect
        self.reconnect_interval = reconnect_interval
        self.max_reconnect_attempts = max_reconnect_attempts

        self._connections: Dict[int, Connection] = {}
        self._pending: Dict[str, PendingCommand] = {}
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._links: List[Link] = []
        self._connection_ids = itertools.count(1)
        self._background_tasks: set[asyncio.Task] = set()
        self._server = None
        self._running = True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def has_active_connections(self) -> bool:
        return any(c.is_open for c in self._connections.values())

    def active_connection_ids(self) -> List[int]:
        return [cid for cid, c in self._connections.items() if c.is_open]

    def first_connection_id(self) -> Optional[int]:
        ids = self.active_connection_ids()
        return ids[0] if ids else None

    def get_connection(self, connection_id: int) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def pending_command_ids(self) -> List[str]:
        return list(self._pending.keys())

    @property
    def links(self) -> List[Link]:
        return list(self._links)

    @property
    def port(self) -> Optional[int]:
        """Port the listener is bound to, once serve() has run."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    # ------------------------------------------------------------------
    # Event subscription
    # ------------------------------------------------------------------

    def on(self, event: str, handler: EventHandler) -> None:
        """Subscribe to an inbound message type, a lifecycle event or "*"."""
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[event]

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                outcome = handler(payload)
                if inspect.isawaitable(outcome):
                    self._spawn(self._run_handler(event, outcome))
            except Exception as e:
                logger.error(f"❌ Error in {event} handler: {e}")

    async def _run_handler(self, event: str, outcome: Awaitable[None]) -> None:
        try:
            await outcome
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"❌ Error in {event} handler: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Channel lifecycle
    # ------------------------------------------------------------------

    async def serve(self, host: str, port: int) -> None:
        """Listen for plugin peers. Each accepted peer is told its connection id."""
        try:
            self._server = await websockets.serve(self._handle_peer, host, port, max_size=None)
        except OSError as e:
            raise RelayConnectionError(f"Could not listen on {host}:{port}: {e}") from e
        logger.info(f"🌉 Relay listening on ws://{host}:{self.port}")

    async def _handle_peer(self, websocket) -> None:
        connection = Connection(id=next(self._connection_ids), websocket=websocket)
        self._register(connection)
        await self.send(ConnectionEstablished(connection_id=connection.id).to_wire(), connection.id)
        await self._read_loop(connection)

    async def open(self, address: str) -> Connection:
        """
        Dial a peer and start reading from it.

        Raises:
            RelayConnectionError: If the transport cannot be created
        """
        link = Link(address=address)
        logger.info(f"Connecting to {address}")
        try:
            connection = await self._dial(link)
        except RelayConnectionError:
            link.transition(ConnectionState.CLOSED)
            raise
        self._links.append(link)
        return connection

    def attach(self, websocket, link: Optional[Link] = None) -> Connection:
        """Register an already-open websocket and start its reader."""
        connection = Connection(id=next(self._connection_ids), websocket=websocket, link=link)
        self._register(connection)
        connection.reader = self._spawn(self._read_loop(connection))
        return connection

    async def _dial(self, link: Link) -> Connection:
        connection = Connection(id=next(self._connection_ids), link=link)
        try:
            websocket = await asyncio.wait_for(self._connector(link.address), timeout=self.open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            connection.transition(ConnectionState.CLOSED)
            raise RelayConnectionError(f"Could not connect to {link.address}: {e}") from e

        connection.websocket = websocket
        link.connection = connection
        link.attempts = 0
        link.transition(ConnectionState.OPEN)
        self._register(connection)
        connection.reader = self._spawn(self._read_loop(connection))
        return connection

    def _register(self, connection: Connection) -> None:
        connection.transition(ConnectionState.OPEN)
        self._connections[connection.id] = connection
        logger.info(f"📡 Connection {connection.id} open ({len(self._connections)} active)")
        self._emit(EVENT_CONNECTION_OPENED, {"connectionId": connection.id})

    async def _read_loop(self, connection: Connection) -> None:
        try:
            async for raw in connection.websocket:
                await self.handle_raw_message(raw, connection.id)
        except asyncio.CancelledError:
            logger.debug(f"🛑 Reader for connection {connection.id} cancelled")
            raise
        except (WebSocketException, OSError) as e:
            logger.error(f"❌ Error receiving on connection {connection.id}: {e}")
        finally:
            self._on_closed(connection)

    def _on_closed(self, connection: Connection) -> None:
        if connection.state is ConnectionState.CLOSED:
            return
        connection.transition(ConnectionState.CLOSED)
        self._connections.pop(connection.id, None)
        logger.info(f"🔌 Connection {connection.id} closed ({len(self._connections)} active)")
        self._emit(EVENT_CONNECTION_CLOSED, {"connectionId": connection.id})

        link = connection.link
        if link is None or link.connection is not connection or link.state is ConnectionState.CLOSED:
            return
        if self._running and self.auto_reconnect and not link.closed:
            self._spawn(self._reconnect(link))
        else:
            link.transition(ConnectionState.CLOSED)

    async def _reconnect(self, link: Link) -> None:
        """Redial with a fixed delay, up to max_reconnect_attempts times."""
        while self._running and not link.closed and link.attempts < self.max_reconnect_attempts:
            link.attempts += 1
            link.transition(ConnectionState.RECONNECTING)
            logger.info(
                f"Reconnecting to {link.address} in {self.reconnect_interval}s "
                f"(attempt {link.attempts}/{self.max_reconnect_attempts})"
            )
            await asyncio.sleep(self.reconnect_interval)
            if link.closed:
                return
            link.transition(ConnectionState.CONNECTING)
            try:
                await self._dial(link)
                logger.info(f"🌉 Reconnected to {link.address}")
                return
            except RelayConnectionError as e:
                logger.warning(f"Reconnect attempt {link.attempts} failed: {e}")

        if link.state is not ConnectionState.CLOSED:
            link.transition(ConnectionState.CLOSED)
            logger.warning(f"Giving up on {link.address} after {link.attempts} attempt(s)")

    async def close(self, connection_id: int) -> None:
        """
        Close one connection.

        Commands still pending on it are not failed early; they time out.
        """
        connection = self._connections.get(connection_id)
        if connection is None:
            logger.warning(f"Connection {connection_id} is not open")
            return

        link = connection.link
        if link is not None and link.connection is connection:
            link.closed = True
            if link.state is not ConnectionState.CLOSED:
                link.transition(ConnectionState.CLOSED)

        try:
            await connection.websocket.close()
        except (WebSocketException, OSError) as e:
            logger.warning(f"Error closing connection {connection_id}: {e}")
        self._on_closed(connection)

    async def shutdown(self) -> None:
        """Stop listening, close every connection and abandon pending commands."""
        logger.info("Shutting down relay")
        self._running = False

        for link in self._links:
            link.closed = True
            if link.state is not ConnectionState.CLOSED:
                link.transition(ConnectionState.CLOSED)

        if self._server is not None:
            self._server.close()

        for connection_id in list(self._connections):
            await self.close(connection_id)

        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

        self.cleanup_pending_commands()

        tasks = [t for t in self._background_tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def cleanup_pending_commands(self) -> None:
        """Cancel all pending commands (called on shutdown)."""
        for command_id, pending in self._pending.items():
            if not pending.future.done():
                pending.future.cancel()
                logger.info(f"Cancelled pending command: {command_id}")
        self._pending.clear()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, message: Dict[str, Any], connection_id: Optional[int] = None) -> bool:
        """
        Send a message to one connection, or to all of them when no id is given.

        Returns:
            False if the target is absent or not open (broadcast: if nothing
            was sent). Failed sends are never queued.
        """
        payload = json.dumps(message)

        if connection_id is not None:
            connection = self._connections.get(connection_id)
            if connection is None or not connection.is_open:
                logger.warning(f"Connection {connection_id} does not exist or is not open")
                return False
            return await self._send_raw(connection, payload)

        sent = 0
        for connection in list(self._connections.values()):
            if connection.is_open and await self._send_raw(connection, payload):
                sent += 1
        return sent > 0

    async def _send_raw(self, connection: Connection, payload: str) -> bool:
        try:
            await connection.websocket.send(payload)
            return True
        except (WebSocketException, OSError) as e:
            logger.warning(f"Failed to send on connection {connection.id}: {e}")
            return False

    def _new_command_id(self) -> str:
        while True:
            command_id = f"cmd_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
            if command_id not in self._pending:
                return command_id

    async def execute_command(
        self,
        command: str,
        params: Dict[str, Any] | None = None,
        connection_id: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send a command to a plugin and wait for its response.

        Args:
            command: The command name (e.g., "createFrame")
            params: Optional parameters for the command
            connection_id: Target connection; None broadcasts to every peer
            timeout: Seconds to wait (default: the relay's command_timeout)

        Returns:
            The `result` field of the matching COMMAND_RESPONSE

        Raises:
            TransportError: If the command could not be sent
            CommandTimeoutError: If no response arrived in time
            CommandError: If the plugin returned an error
        """
        timeout = self.command_timeout if timeout is None else timeout
        params = params or {}
        loop = asyncio.get_running_loop()

        command_id = self._new_command_id()
        issued_at = loop.time()
        future = loop.create_future()
        self._pending[command_id] = PendingCommand(
            command_id=command_id,
            command=command,
            params=params,
            connection_id=connection_id,
            future=future,
            issued_at=issued_at,
            deadline=issued_at + timeout,
        )
        logger.debug(f"📝 Added to pending commands: {command_id} (total: {len(self._pending)})")

        message = ExecuteCommand(command_id=command_id, command=command, params=params).to_wire()
        try:
            logger.info(f"🚀 Sending {command} with ID: {command_id} to connection {connection_id}")
            sent = await self.send(message, connection_id)
            if not sent:
                self._pending.pop(command_id, None)
                target = f"connection {connection_id}" if connection_id is not None else "any connection"
                raise TransportError(f"Cannot send '{command}': {target} is absent or closed", connection_id)

            try:
                return await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                self._pending.pop(command_id, None)
                elapsed = loop.time() - issued_at
                logger.error(f"⏰ Command {command} (ID: {command_id}) timed out after {elapsed:.3f}s (limit: {timeout}s)")
                raise CommandTimeoutError(command, command_id, timeout) from None
        finally:
            self._pending.pop(command_id, None)

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    async def handle_raw_message(self, raw: Any, connection_id: int) -> None:
        """Parse and dispatch one inbound frame. Malformed frames are dropped."""
        try:
            message = parse_message(raw)
            await self.handle_message(message, connection_id)
        except ProtocolError as e:
            logger.warning(f"⚠️ Dropped frame on connection {connection_id}: {e.reason}")

    async def handle_message(self, message: Dict[str, Any], connection_id: int) -> None:
        msg_type = message.get("type")
        logger.debug(f"🔍 Message received on connection {connection_id} - Type: '{msg_type}'")

        handlers = {
            MESSAGE_TYPE_CONNECTION_ESTABLISHED: self._handle_connection_established,
            MESSAGE_TYPE_COMMAND_RESPONSE: self._handle_command_response,
        }
        handler = handlers.get(msg_type)
        if handler is not None:
            handler(message, connection_id)
        elif msg_type not in self._handlers and EVENT_ANY not in self._handlers:
            raise ProtocolError(f"Unrecognized message type '{msg_type}'", message)

        event = {**message, "connectionId": connection_id}
        self._emit(msg_type, event)
        self._emit(EVENT_ANY, event)

    def _handle_connection_established(self, message: Dict[str, Any], connection_id: int) -> None:
        established = ConnectionEstablished.from_wire(message)
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.remote_id = established.connection_id
        logger.info(f"🤝 Connection {connection_id} established with peer ID: {established.connection_id}")

    def _handle_command_response(self, message: Dict[str, Any], connection_id: int) -> None:
        response = CommandResponse.from_wire(message)
        command_id = response.command_id
        if command_id is None:
            logger.warning("❌ Received COMMAND_RESPONSE without commandId")
            return

        pending = self._pending.pop(command_id, None) if isinstance(command_id, str) else None
        if pending is None:
            logger.warning(f"❌ Received COMMAND_RESPONSE for unknown ID: {command_id}")
            return

        if pending.future.done():
            logger.debug(f"⚠️ Future already completed for {command_id}")
            return

        elapsed = asyncio.get_running_loop().time() - pending.issued_at
        if response.is_error:
            logger.error(f"❌ Command {pending.command} ({command_id}) failed after {elapsed:.3f}s: {response.error}")
            pending.future.set_exception(CommandError(response.error, command=pending.command, params=pending.params))
            return

        logger.info(f"✅ Command {pending.command} ({command_id}) completed after {elapsed:.3f}s")
        pending.future.set_result(response.result)


# Global relay instance (set by relay_server.RelayApp)
_relay: Optional[RelayCore] = None


def set_relay(relay: Optional[RelayCore]) -> None:
    """Set the global relay instance."""
    global _relay
    _relay = relay


def get_relay() -> RelayCore:
    """Get the global relay instance."""
    if _relay is None:
        raise RuntimeError("Relay not initialized. Call set_relay() first.")
    return _relay


async def send_command(
    command: str,
    params: Dict[str, Any] | None = None,
    connection_id: Optional[int] = None,
    timeout: float = DEFAULT_OPERATION_TIMEOUT,
) -> Any:
    """
    Convenience function to run a command on the first available plugin
    using the global relay.
    """
    relay = get_relay()
    if connection_id is None:
        connection_id = relay.first_connection_id()
        if connection_id is None:
            raise TransportError("No active Figma connections")
    return await relay.execute_command(command, params, connection_id, timeout)
