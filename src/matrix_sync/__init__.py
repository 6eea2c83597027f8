"""Matrix sync-delta processing engine."""

__version__ = "0.1.0"

from .client import MatrixClient, RoomAliasLookup
from .emitter import EventEmitter
from .errors import (
    ConfigError,
    CryptoNotEnabledError,
    DecryptionError,
    InvalidRoomReferenceError,
    MatrixError,
    MatrixRequestError,
    MatrixRetryAfter,
    PermissionEvaluationError,
    RoomUpgradeError,
)
from .events import EncryptedRoomEvent, EventKind, RoomEvent
from .power_levels import PowerLevelAction, PowerLevelBounds
from .preprocessors import Preprocessor, PreprocessorChain
from .storage import (
    FilterDescriptor,
    JsonFileStorageProvider,
    MemoryStorageProvider,
    StorageProvider,
)
from .sync import SyncProcessor
from .sync_loop import ExponentialBackoff, SyncLoop, SyncState
from .upgrades import RoomReference, RoomUpgradeHistory

__all__ = [
    "ConfigError",
    "CryptoNotEnabledError",
    "DecryptionError",
    "EncryptedRoomEvent",
    "EventEmitter",
    "EventKind",
    "ExponentialBackoff",
    "FilterDescriptor",
    "InvalidRoomReferenceError",
    "JsonFileStorageProvider",
    "MatrixClient",
    "MatrixError",
    "MatrixRequestError",
    "MatrixRetryAfter",
    "MemoryStorageProvider",
    "PermissionEvaluationError",
    "PowerLevelAction",
    "PowerLevelBounds",
    "Preprocessor",
    "PreprocessorChain",
    "RoomAliasLookup",
    "RoomEvent",
    "RoomReference",
    "RoomUpgradeError",
    "RoomUpgradeHistory",
    "StorageProvider",
    "SyncLoop",
    "SyncProcessor",
    "SyncState",
]
