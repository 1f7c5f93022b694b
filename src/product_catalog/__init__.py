from .cache.catalog_cache import CatalogCache, CatalogCacheConfig
from .cache.local_store import FileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from .errors import (
    CatalogError,
    DecodeError,
    DuplicateNameError,
    EncodeError,
    NotFound,
    RemoteValidationError,
    SizeExceededError,
    StoreUnavailableError,
)
from .image_processing.codec import (
    FULL_PROFILE,
    THUMBNAIL_PROFILE,
    CompressionProfile,
    ImageCodec,
    ProbedFormatSupport,
    StaticFormatSupport,
)
from .media.blob_store import BlobStoreClient
from .migration.engine import MigrationConfig, MigrationEngine
from .models import (
    CatalogEntry,
    CompressedImage,
    KeySpec,
    MigrationOutcome,
    MigrationStatus,
    MigrationSummary,
    SaveResult,
    SpecPair,
)
from .remote.data_service import DataService, Filter, Order, RestDataService
from .remote.notifications import EmailNotifier

__all__ = [
    "CatalogCache",
    "CatalogCacheConfig",
    "FileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "CatalogError",
    "DecodeError",
    "DuplicateNameError",
    "EncodeError",
    "NotFound",
    "RemoteValidationError",
    "SizeExceededError",
    "StoreUnavailableError",
    "FULL_PROFILE",
    "THUMBNAIL_PROFILE",
    "CompressionProfile",
    "ImageCodec",
    "ProbedFormatSupport",
    "StaticFormatSupport",
    "BlobStoreClient",
    "MigrationConfig",
    "MigrationEngine",
    "CatalogEntry",
    "CompressedImage",
    "KeySpec",
    "MigrationOutcome",
    "MigrationStatus",
    "MigrationSummary",
    "SaveResult",
    "SpecPair",
    "DataService",
    "Filter",
    "Order",
    "RestDataService",
    "EmailNotifier",
]
