import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from creditledger.core.config import Settings, get_settings
from creditledger.models.account import AccountDocument
from creditledger.models.failed_job import FailedJob
from creditledger.models.idempotency_record import IdempotencyRecordDocument
from creditledger.models.pending_refund import PendingRefundDocument
from creditledger.models.reading import ReadingDocument
from creditledger.models.transaction import TransactionDocument

DOCUMENT_MODELS = [
    AccountDocument,
    TransactionDocument,
    IdempotencyRecordDocument,
    PendingRefundDocument,
    ReadingDocument,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(settings: Settings | None = None) -> AsyncIOMotorClient:
    """Connect, register documents and build indexes; return the client for session use."""
    settings = settings or get_settings()
    kwargs = {}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    client = AsyncIOMotorClient(settings.mongodb_uri, tz_aware=False, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    return client
