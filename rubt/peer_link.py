"""Connection to a single remote peer.

A :class:`PeerLink` performs the handshake, then runs a reader task that
decodes inbound frames and a keep-alive task. Choke and interest flags are
tracked on the link; availability, requests and blocks are forwarded to
async callbacks installed by the owner.
"""

from __future__ import annotations

import asyncio
import contextlib
import struct
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from rubt.config import get_config
from rubt.exceptions import HandshakeError, MessageError, PeerConnectionError, ProtocolError
from rubt.logging_config import get_logger, log_exception, set_correlation_id
from rubt.peer import (
    HANDSHAKE_LENGTH,
    BitfieldMessage,
    CancelMessage,
    ChokeMessage,
    Handshake,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    NotInterestedMessage,
    PeerMessage,
    PieceMessage,
    RequestMessage,
    UnchokeMessage,
    create_message,
)

if TYPE_CHECKING:
    from rubt.models import Config, PeerInfo

MessageCallback = Callable[["PeerLink", Any], Awaitable[None]]

# Signed: a length with the top bit set is rejected.
_FRAME_LENGTH = struct.Struct("!i")


class LinkState(Enum):
    """Lifecycle of a peer link."""

    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    ESTABLISHED = "established"
    DISCONNECTED = "disconnected"


class PeerLink:
    """Wire protocol state machine for one peer."""

    def __init__(
        self,
        peer_info: PeerInfo,
        info_hash: bytes,
        peer_id: bytes,
        config: Config | None = None,
        *,
        inbound: bool = False,
    ):
        """Initialize peer link.

        Args:
            peer_info: Remote address
            info_hash: Info hash of the torrent being shared
            peer_id: Our 20-byte peer ID
            config: Client configuration, the global one if omitted
            inbound: True if the remote side opened the connection
        """
        self.peer_info = peer_info
        self.info_hash = info_hash
        self.our_peer_id = peer_id
        self.config = config or get_config()
        self.inbound = inbound

        self.state = LinkState.CONNECTING
        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None
        self.remote_peer_id: bytes | None = None

        self.am_choking = True
        self.peer_choking = True
        self.am_interested = False
        self.peer_interested = False

        self.downloaded_since_reset = 0
        self.uploaded_since_reset = 0
        self.downloaded = 0
        self.uploaded = 0

        self.on_have: MessageCallback | None = None
        self.on_bitfield: MessageCallback | None = None
        self.on_request: MessageCallback | None = None
        self.on_piece: MessageCallback | None = None
        self.on_cancel: MessageCallback | None = None
        self.on_disconnected: Callable[[PeerLink], Awaitable[None]] | None = None

        self._send_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None
        self._closed = False
        self.correlation_id: str | None = None

        self.logger = get_logger(__name__)

    def __str__(self) -> str:
        """Return the remote address."""
        return str(self.peer_info)

    def __repr__(self) -> str:
        return f"PeerLink({self.peer_info}, state={self.state.value})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, PeerLink):
            return NotImplemented
        return self.peer_info == other.peer_info

    def __hash__(self) -> int:
        return hash(self.peer_info)

    @property
    def is_connected(self) -> bool:
        return self.state == LinkState.ESTABLISHED

    @property
    def is_disconnected(self) -> bool:
        return self.state == LinkState.DISCONNECTED

    # Connection setup

    async def connect(self) -> None:
        """Open an outbound connection and exchange handshakes.

        Raises:
            PeerConnectionError: If the TCP connection fails
            HandshakeError: If the remote handshake is invalid
        """
        self.state = LinkState.CONNECTING
        self.logger.debug("Connecting to %s", self)
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.peer_info.ip, self.peer_info.port),
                timeout=self.config.network.connection_timeout,
            )
            self.state = LinkState.HANDSHAKING
            self.writer.write(Handshake(self.info_hash, self.our_peer_id).encode())
            await self.writer.drain()
            await self._read_handshake()
        except HandshakeError:
            await self.close()
            raise
        except (OSError, asyncio.TimeoutError) as e:
            await self.close()
            msg = f"Failed to connect to {self.peer_info}: {e or type(e).__name__}"
            raise PeerConnectionError(msg) from e
        except asyncio.CancelledError:
            await self.close()
            raise
        self._start()

    async def accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Complete an inbound connection.

        The remote handshake is read and validated before ours is sent.

        Raises:
            PeerConnectionError: If the stream fails
            HandshakeError: If the remote handshake is invalid
        """
        self.reader, self.writer = reader, writer
        self.state = LinkState.HANDSHAKING
        try:
            await self._read_handshake()
            writer.write(Handshake(self.info_hash, self.our_peer_id).encode())
            await writer.drain()
        except HandshakeError:
            await self.close()
            raise
        except OSError as e:
            await self.close()
            msg = f"Inbound connection from {self.peer_info} failed: {e}"
            raise PeerConnectionError(msg) from e
        except asyncio.CancelledError:
            await self.close()
            raise
        self._start()

    async def _read_handshake(self) -> Handshake:
        if self.reader is None:
            msg = "Link has no stream"
            raise HandshakeError(msg)
        try:
            data = await asyncio.wait_for(
                self.reader.readexactly(HANDSHAKE_LENGTH),
                timeout=self.config.network.socket_timeout,
            )
        except asyncio.IncompleteReadError as e:
            msg = f"Connection closed during handshake after {len(e.partial)} bytes"
            raise HandshakeError(msg) from e
        except asyncio.TimeoutError as e:
            msg = "Timed out waiting for handshake"
            raise HandshakeError(msg) from e

        handshake = Handshake.decode(data)
        if handshake.info_hash != self.info_hash:
            msg = f"Info hash mismatch: expected {self.info_hash.hex()}, got {handshake.info_hash.hex()}"
            raise HandshakeError(msg)
        self.remote_peer_id = handshake.peer_id
        return handshake

    def _start(self) -> None:
        if self._closed:
            if self.writer is not None:
                self.writer.close()
            msg = f"Link to {self.peer_info} was closed during setup"
            raise PeerConnectionError(msg)
        self.state = LinkState.ESTABLISHED
        self._reader_task = asyncio.create_task(self._read_loop(), name=f"reader-{self}")
        self._keepalive_task = asyncio.create_task(
            self._keepalive_loop(),
            name=f"keepalive-{self}",
        )
        self.logger.info("Connected to %s (%s)", self, "inbound" if self.inbound else "outbound")

    # Reading

    async def _read_frame(self) -> bytes | None:
        """Read one frame; None for a keep-alive."""
        timeout = self.config.network.socket_timeout
        header = await asyncio.wait_for(self.reader.readexactly(4), timeout=timeout)
        (length,) = _FRAME_LENGTH.unpack(header)
        if length == 0:
            return None
        if length < 0 or length > self.config.network.max_message_length:
            msg = f"Invalid message length {length}"
            raise MessageError(msg)
        payload = await asyncio.wait_for(self.reader.readexactly(length), timeout=timeout)
        return header + payload

    async def _read_loop(self) -> None:
        # Bound inside the reader task only.
        self.correlation_id = set_correlation_id()
        try:
            while not self.is_disconnected:
                frame = await self._read_frame()
                if frame is None:
                    continue
                await self._dispatch(create_message(frame))
        except asyncio.TimeoutError:
            self.logger.info("Peer %s timed out", self)
        except asyncio.IncompleteReadError:
            self.logger.debug("Peer %s closed the connection", self)
        except OSError as e:
            self.logger.debug("Connection to %s failed: %s", self, e)
        except ProtocolError as e:
            self.logger.warning("Protocol violation from %s: %s", self, e)
        except Exception as e:
            log_exception(self.logger, e, f"Error handling messages from {self}")
        finally:
            await self.close()

    async def _dispatch(self, message: PeerMessage) -> None:
        if isinstance(message, ChokeMessage):
            self.peer_choking = True
        elif isinstance(message, UnchokeMessage):
            self.peer_choking = False
        elif isinstance(message, InterestedMessage):
            self.peer_interested = True
        elif isinstance(message, NotInterestedMessage):
            self.peer_interested = False
        else:
            callback = {
                HaveMessage: self.on_have,
                BitfieldMessage: self.on_bitfield,
                RequestMessage: self.on_request,
                PieceMessage: self.on_piece,
                CancelMessage: self.on_cancel,
            }.get(type(message))
            if callback is not None:
                await callback(self, message)
            return
        self.logger.debug("Received %s from %s", type(message).__name__, self)

    async def _keepalive_loop(self) -> None:
        interval = self.config.network.keep_alive_interval
        while not self.is_disconnected:
            await asyncio.sleep(interval)
            if not await self._send(KeepAliveMessage()):
                break

    # Writing

    async def _send(self, message: PeerMessage) -> bool:
        if not self.is_connected or self.writer is None:
            return False
        async with self._send_lock:
            if not self.is_connected:
                return False
            try:
                self.writer.write(message.encode())
                await asyncio.wait_for(
                    self.writer.drain(),
                    timeout=self.config.network.socket_timeout,
                )
            except (OSError, asyncio.TimeoutError) as e:
                self.logger.debug("Failed to send %s to %s: %s", type(message).__name__, self, e)
                failed = True
            else:
                failed = False
        if failed:
            await self.close()
            return False
        return True

    async def send_choke(self) -> bool:
        """Choke the peer. Returns True if the message was sent."""
        sent = await self._send(ChokeMessage())
        if sent:
            self.am_choking = True
        return sent

    async def send_unchoke(self) -> bool:
        sent = await self._send(UnchokeMessage())
        if sent:
            self.am_choking = False
        return sent

    async def send_interested(self) -> bool:
        """Declare interest; nothing is sent if we are already interested."""
        if self.am_interested:
            return False
        sent = await self._send(InterestedMessage())
        if sent:
            self.am_interested = True
        return sent

    async def send_not_interested(self) -> bool:
        sent = await self._send(NotInterestedMessage())
        if sent:
            self.am_interested = False
        return sent

    async def send_have(self, piece_index: int) -> bool:
        return await self._send(HaveMessage(piece_index))

    async def send_bitfield(self, bitfield: bytes) -> bool:
        return await self._send(BitfieldMessage(bitfield))

    async def send_request(self, piece_index: int, begin: int, length: int) -> bool:
        """Request a block; suppressed unless we are interested and unchoked."""
        if not self.am_interested or self.peer_choking:
            return False
        return await self._send(RequestMessage(piece_index, begin, length))

    async def send_piece(self, piece_index: int, begin: int, block: bytes) -> bool:
        """Send a block; suppressed unless the peer is unchoked and interested."""
        if self.am_choking or not self.peer_interested:
            return False
        return await self._send(PieceMessage(piece_index, begin, block))

    # Accounting

    def record_download(self, nbytes: int) -> None:
        self.downloaded_since_reset += nbytes
        self.downloaded += nbytes

    def record_upload(self, nbytes: int) -> None:
        self.uploaded_since_reset += nbytes
        self.uploaded += nbytes

    def reset_counters(self) -> None:
        """Start a new measurement period."""
        self.downloaded_since_reset = 0
        self.uploaded_since_reset = 0

    def metric(self, download_complete: bool) -> int:
        """Rate used to rank the peer: what we gave once seeding, else what we got."""
        if download_complete:
            return self.uploaded_since_reset
        return self.downloaded_since_reset

    # Teardown

    async def close(self) -> None:
        """Close the link; only the first call has any effect."""
        if self._closed:
            return
        self._closed = True
        self.state = LinkState.DISCONNECTED

        current = asyncio.current_task()
        tasks = [
            t for t in (self._reader_task, self._keepalive_task) if t is not None and t is not current
        ]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self.writer is not None:
            self.writer.close()
            with contextlib.suppress(OSError):
                await self.writer.wait_closed()

        self.logger.info("Disconnected from %s", self)
        if self.on_disconnected is not None:
            await self.on_disconnected(self)
