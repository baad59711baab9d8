"""Dependency injection singletons for Inkframe."""

from inkframe.common.config import get_settings
from inkframe.common.database import DatabaseManager
from inkframe.generation.saga import GenerationSaga
from inkframe.idempotency.service import LeaseStore
from inkframe.providers.executor import ImageClient, ProviderFallbackExecutor
from inkframe.providers.together import TogetherImageClient
from inkframe.quota.service import QuotaLedger
from inkframe.storage.service import ObjectStorage, create_object_storage
from inkframe.stories.service import StoryService

_db: DatabaseManager | None = None
_stories: StoryService | None = None
_ledger: QuotaLedger | None = None
_leases: LeaseStore | None = None
_image_client: ImageClient | None = None
_executor: ProviderFallbackExecutor | None = None
_storage: ObjectStorage | None = None
_saga: GenerationSaga | None = None


def get_db() -> DatabaseManager:
    global _db
    if _db is None:
        _db = DatabaseManager(get_settings())
    return _db


def get_story_service() -> StoryService:
    global _stories
    if _stories is None:
        _stories = StoryService()
    return _stories


def get_quota_ledger() -> QuotaLedger:
    global _ledger
    if _ledger is None:
        _ledger = QuotaLedger(get_settings(), get_db())
    return _ledger


def get_lease_store() -> LeaseStore:
    global _leases
    if _leases is None:
        _leases = LeaseStore(get_settings(), get_db())
    return _leases


def get_image_client() -> ImageClient:
    global _image_client
    if _image_client is None:
        _image_client = TogetherImageClient(get_settings())
    return _image_client


def set_image_client(client: ImageClient) -> None:
    """Swap the image backend client (tests and embedding)."""
    global _image_client, _executor, _saga
    _image_client = client
    _executor = None
    _saga = None


def get_provider_executor() -> ProviderFallbackExecutor:
    global _executor
    if _executor is None:
        _executor = ProviderFallbackExecutor(get_image_client())
    return _executor


def get_object_storage() -> ObjectStorage:
    global _storage
    if _storage is None:
        _storage = create_object_storage(get_settings())
    return _storage


def set_object_storage(storage: ObjectStorage) -> None:
    global _storage
    _storage = storage


def get_generation_saga() -> GenerationSaga:
    global _saga
    if _saga is None:
        _saga = GenerationSaga(
            get_settings(),
            leases=get_lease_store(),
            ledger=get_quota_ledger(),
            executor=get_provider_executor(),
        )
    return _saga


def reset_singletons() -> None:
    """Reset all singletons (for testing)."""
    global _db, _stories, _ledger, _leases, _image_client, _executor, _storage, _saga
    _db = None
    _stories = None
    _ledger = None
    _leases = None
    _image_client = None
    _executor = None
    _storage = None
    _saga = None
