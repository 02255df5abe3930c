import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from creditledger.core.config import get_settings
from creditledger.models import CreditTransactionDocument, Generation, Plan, Subscription, Workspace

DOCUMENT_MODELS = [
    Workspace,
    CreditTransactionDocument,
    Plan,
    Subscription,
    Generation,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(server_selection_timeout_ms: int | None = None) -> None:
    settings = get_settings()
    kwargs = {}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    if server_selection_timeout_ms is not None:
        kwargs["serverSelectionTimeoutMS"] = server_selection_timeout_ms
    client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
