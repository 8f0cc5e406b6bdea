"""Pydantic models for rubt.

Provides validated data models for torrent metadata, peers, tracker
responses and the layered client configuration.
"""

from __future__ import annotations

import math
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class PreallocationStrategy(str, Enum):
    """Backing file preallocation strategies."""

    SPARSE = "sparse"
    FULL = "full"


class MessageType(int, Enum):
    """BitTorrent message types."""

    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8


class PeerInfo(BaseModel):
    """Peer address as handed out by the tracker or seen on accept."""

    ip: str = Field(..., description="Peer IP address")
    port: int = Field(..., ge=1, le=65535, description="Peer port number")
    peer_id: bytes | None = Field(None, description="Peer ID")

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v):
        """Validate IP address is present."""
        if not v:
            msg = "IP address cannot be empty"
            raise ValueError(msg)
        return v

    def __str__(self) -> str:
        """String representation of peer info."""
        return f"{self.ip}:{self.port}"

    def __hash__(self) -> int:
        """Hash peer info for use as dictionary key."""
        return hash((self.ip, self.port))

    def __eq__(self, other) -> bool:
        """Equality comparison for peer info."""
        if not isinstance(other, PeerInfo):
            return False
        return self.ip == other.ip and self.port == other.port

    model_config = {"arbitrary_types_allowed": True}


class TrackerResponse(BaseModel):
    """Tracker announce response."""

    interval: int = Field(..., ge=0, description="Announce interval in seconds")
    peers: list[PeerInfo] = Field(default_factory=list, description="List of peers")
    complete: int | None = Field(None, ge=0, description="Number of seeders")
    incomplete: int | None = Field(None, ge=0, description="Number of leechers")
    warning_message: str | None = Field(None, description="Warning message")


class TorrentInfo(BaseModel):
    """Immutable session parameters of a single-file torrent."""

    name: str = Field(..., description="Suggested file name")
    info_hash: bytes = Field(..., min_length=20, max_length=20, description="Info hash")
    announce: str = Field(..., description="Announce URL")
    total_length: int = Field(..., gt=0, description="File length in bytes")
    piece_length: int = Field(..., gt=0, description="Nominal piece length in bytes")
    pieces: list[bytes] = Field(default_factory=list, description="Piece hashes")
    num_pieces: int = Field(..., gt=0, description="Number of pieces")

    @model_validator(mode="after")
    def _check_piece_layout(self) -> TorrentInfo:
        expected = math.ceil(self.total_length / self.piece_length)
        if self.num_pieces != expected:
            msg = f"Expected {expected} pieces for {self.total_length} bytes, got {self.num_pieces}"
            raise ValueError(msg)
        if len(self.pieces) != self.num_pieces:
            msg = f"Expected {self.num_pieces} piece hashes, got {len(self.pieces)}"
            raise ValueError(msg)
        if any(len(h) != 20 for h in self.pieces):
            msg = "Piece hashes must be 20 bytes"
            raise ValueError(msg)
        return self

    @property
    def last_piece_length(self) -> int:
        """Length of the final piece, at most ``piece_length``."""
        remainder = self.total_length % self.piece_length
        return remainder or self.piece_length

    def piece_size(self, index: int) -> int:
        """Return the byte length of the piece at ``index``."""
        if index == self.num_pieces - 1:
            return self.last_piece_length
        return self.piece_length

    model_config = {"arbitrary_types_allowed": True, "frozen": True}


class NetworkConfig(BaseModel):
    """Network configuration."""

    listen_interface: str = Field(
        default="0.0.0.0",  # nosec B104 - peers must reach the listener
        description="Interface the inbound listener binds to",
    )
    listen_port_start: int = Field(
        default=6881,
        ge=1024,
        le=65535,
        description="First port tried for the inbound listener",
    )
    listen_port_end: int = Field(
        default=6889,
        ge=1024,
        le=65535,
        description="Last port tried for the inbound listener",
    )
    connection_timeout: float = Field(
        default=120.0,
        ge=1.0,
        le=600.0,
        description="Outbound connect timeout in seconds",
    )
    socket_timeout: float = Field(
        default=120.0,
        ge=1.0,
        le=3600.0,
        description="Read timeout after which a silent peer is dropped",
    )
    keep_alive_interval: float = Field(
        default=120.0,
        ge=1.0,
        le=3600.0,
        description="Interval between keep-alive messages in seconds",
    )
    max_message_length: int = Field(
        default=16 * 1024 * 1024,
        ge=1024,
        description="Largest frame accepted from a peer in bytes",
    )
    tracker_timeout: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Tracker request timeout in seconds",
    )
    tracker_retry_interval: float = Field(
        default=10.0,
        ge=0.01,
        le=3600.0,
        description="Delay before retrying an unreachable tracker",
    )

    @model_validator(mode="after")
    def _check_port_range(self) -> NetworkConfig:
        if self.listen_port_end < self.listen_port_start:
            msg = "listen_port_end must not be below listen_port_start"
            raise ValueError(msg)
        return self


class StrategyConfig(BaseModel):
    """Piece scheduling configuration."""

    max_in_flight_pieces: int = Field(
        default=25,
        ge=1,
        le=1000,
        description="Maximum pieces requested but not yet complete",
    )
    endgame_threshold: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Pending fraction of pieces below which end-game starts",
    )
    endgame_reissue_interval: float = Field(
        default=5.0,
        ge=0.0,
        le=600.0,
        description="Minimum delay between end-game request rounds",
    )
    request_timeout: float = Field(
        default=120.0,
        ge=1.0,
        le=3600.0,
        description="Seconds before an unanswered piece request is re-queued",
    )
    idle_sleep: float = Field(
        default=0.1,
        ge=0.001,
        le=10.0,
        description="Sleep used by control loops while idle or paused",
    )


class ChokeConfig(BaseModel):
    """Choking algorithm configuration."""

    max_active_downloaders: int = Field(
        default=4,
        ge=1,
        le=100,
        description="Maximum peers in the active downloader set",
    )
    max_optimistic_unchokes: int = Field(
        default=1,
        ge=0,
        le=10,
        description="Maximum optimistically unchoked peers",
    )
    interval: float = Field(
        default=30.0,
        ge=0.01,
        le=3600.0,
        description="Choke tick interval in seconds",
    )


class DiskConfig(BaseModel):
    """Disk configuration."""

    state_dir: str = Field(
        default="data",
        description="Directory holding the resume state files",
    )
    preallocate: PreallocationStrategy = Field(
        default=PreallocationStrategy.FULL,
        description="Backing file preallocation strategy",
    )
    preallocate_chunk_kib: int = Field(
        default=1024,
        ge=4,
        le=65536,
        description="Chunk size used when zero-filling the backing file",
    )
    disk_workers: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Threads used for hashing and file I/O",
    )


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Use structured JSON logging",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )


class Config(BaseModel):
    """Main configuration model."""

    network: NetworkConfig = Field(
        default_factory=NetworkConfig,
        description="Network configuration",
    )
    strategy: StrategyConfig = Field(
        default_factory=StrategyConfig,
        description="Scheduling configuration",
    )
    choke: ChokeConfig = Field(
        default_factory=ChokeConfig,
        description="Choking configuration",
    )
    disk: DiskConfig = Field(
        default_factory=DiskConfig,
        description="Disk configuration",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )
