"""boardstore: user record store for a classroom board, kept in a spreadsheet."""

__version__ = "0.1.0"

from boardstore.access import Caller
from boardstore.backend import InMemoryBackend, JsonFileBackend, TabularBackend, open_backend
from boardstore.cache import MemoryCache, RecordCache
from boardstore.config import BoardStoreConfig, load_config
from boardstore.diagnostics import Diagnostics, fuzzy_match
from boardstore.document import upgrader
from boardstore.errors import (
    AccessDeniedError,
    BackendError,
    BoardStoreError,
    CircuitOpenError,
    ConflictError,
    DuplicateKeyError,
    LockTimeoutError,
    MigrationError,
    NotFoundError,
    PermanentBackendError,
    SchemaMismatchError,
    TransientBackendError,
    ValidationError,
    VerificationError,
)
from boardstore.locking import LocalLock, LockManager, S3LeaseLock
from boardstore.models import DeleteResult, UserListing, UserRecord
from boardstore.store import UserStore, open_store

__all__ = [
    "__version__",
    "UserStore",
    "open_store",
    "UserRecord",
    "UserListing",
    "DeleteResult",
    "Caller",
    "BoardStoreConfig",
    "load_config",
    "TabularBackend",
    "InMemoryBackend",
    "JsonFileBackend",
    "open_backend",
    "MemoryCache",
    "RecordCache",
    "LockManager",
    "LocalLock",
    "S3LeaseLock",
    "Diagnostics",
    "fuzzy_match",
    "upgrader",
    "BoardStoreError",
    "BackendError",
    "TransientBackendError",
    "PermanentBackendError",
    "SchemaMismatchError",
    "CircuitOpenError",
    "NotFoundError",
    "ValidationError",
    "DuplicateKeyError",
    "LockTimeoutError",
    "VerificationError",
    "ConflictError",
    "AccessDeniedError",
    "MigrationError",
]
