import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Core tests run against the in-process stores
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "creditledger_test")
os.environ.setdefault("STRIPE_SECRET_KEY", "")

from creditledger.domain.workspace import WorkspaceCredits  # noqa: E402
from creditledger.services.calculator import CreditCalculator  # noqa: E402
from creditledger.services.credits import CreditDeductionService  # noqa: E402
from creditledger.stores.memory import (  # noqa: E402
    MemoryBillingStore,
    MemoryGenerationStore,
    MemoryLedgerStore,
)


@pytest.fixture
def ledger() -> MemoryLedgerStore:
    return MemoryLedgerStore()


@pytest.fixture
def billing() -> MemoryBillingStore:
    return MemoryBillingStore()


@pytest.fixture
def generations() -> MemoryGenerationStore:
    return MemoryGenerationStore()


@pytest.fixture
def credits(ledger) -> CreditDeductionService:
    return CreditDeductionService(ledger)


@pytest.fixture
def calculator() -> CreditCalculator:
    return CreditCalculator()


@pytest.fixture
def make_workspace(ledger):
    async def _make(workspace_id: str = "ws-1", credit_count: int = 1000, allocated: int = 0) -> WorkspaceCredits:
        return await ledger.create(
            WorkspaceCredits(workspace_id=workspace_id, credit_count=credit_count, allocated_credits=allocated)
        )
    return _make


@pytest_asyncio.fixture
async def client(ledger, billing, generations) -> AsyncGenerator[AsyncClient, None]:
    from creditledger import deps
    from creditledger.main import app

    app.dependency_overrides[deps.ledger_store] = lambda: ledger
    app.dependency_overrides[deps.billing_store] = lambda: billing
    app.dependency_overrides[deps.generation_store] = lambda: generations
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
