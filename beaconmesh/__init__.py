"""BeaconMesh: serverless peer pairing over scanned codes."""

from .codec import (
    CodecError,
    DescriptionCodec,
    InvalidToken,
    MalformedDescription,
    UnsupportedToken,
    decode_token,
    encode_description,
    pack_record,
    unpack_token,
)
from .config import ConfigurationError, MeshConfig, load_mesh_config
from .handshake import HandshakeOrchestrator
from .model import (
    CandidateKind,
    CandidateRecord,
    DescriptionKind,
    EssentialRecord,
    SessionDescription,
)
from .optical import TokenInbox
from .session import (
    DiscoveryOutcome,
    HandshakeRole,
    HandshakeSession,
    HandshakeState,
    Notice,
)
from .transport import ConnectionState, TransportFailure

__all__ = [
    "CandidateKind",
    "CandidateRecord",
    "CodecError",
    "ConfigurationError",
    "ConnectionState",
    "DescriptionCodec",
    "DescriptionKind",
    "DiscoveryOutcome",
    "EssentialRecord",
    "HandshakeOrchestrator",
    "HandshakeRole",
    "HandshakeSession",
    "HandshakeState",
    "InvalidToken",
    "MalformedDescription",
    "MeshConfig",
    "Notice",
    "SessionDescription",
    "TokenInbox",
    "TransportFailure",
    "UnsupportedToken",
    "decode_token",
    "encode_description",
    "load_mesh_config",
    "pack_record",
    "unpack_token",
]
