"""
Shared fixtures for tenantdb tests.

Two engines for two tenants over one connected in-memory backend, the
same way two apps share one hosted project.
"""

import pytest
import pytest_asyncio

from tenantdb import InMemoryBackend, TenantDb, TenantPolicy


@pytest_asyncio.fixture
async def backend():
    """Connected in-memory backend, closed after the test."""
    store = InMemoryBackend()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def db(backend):
    """Engine for the bookbuddy tenant."""
    return TenantDb(backend, TenantPolicy("bookbuddy"))


@pytest.fixture
def other_db(backend):
    """Engine for the otherapp tenant on the same store."""
    return TenantDb(backend, TenantPolicy("otherapp"))
