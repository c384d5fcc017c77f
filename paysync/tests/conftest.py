from __future__ import annotations

import pytest

from paysync.app.billing import BillingSyncService, BillingUser
from paysync.tests.fakes import CANCEL_URL, FakeProviderGateway, InMemoryBillingRepository, InMemoryUserDirectory


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def provider() -> FakeProviderGateway:
    return FakeProviderGateway()


@pytest.fixture
def users() -> InMemoryUserDirectory:
    directory = InMemoryUserDirectory()
    directory.add(BillingUser(user_id="user-1", email="reader@example.com", name="reader", provider_customer_ref="cus_1"))
    directory.add(BillingUser(user_id="user-2", email="new@example.com", name="newcomer"))
    return directory


@pytest.fixture
def service(repository, provider, users) -> BillingSyncService:
    return BillingSyncService(
        repository=repository,
        provider=provider,
        user_directory=users,
        cancel_url=CANCEL_URL,
    )
