"""Fixtures for API tests: the real app wired to the in-memory control plane."""

import httpx
import pytest

from wsplane.app.main import app


@pytest.fixture
async def client(control_plane, store, cluster):
    """HTTP client against the app; lifespan is skipped, state is set directly."""
    app.state.control_plane = control_plane
    app.state.store = store
    app.state.cluster = cluster
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def headers(user_id: str, email: str | None = None, admin: bool = False) -> dict[str, str]:
    result = {"X-User-Id": user_id}
    if email:
        result["X-User-Email"] = email
    if admin:
        result["X-User-Admin"] = "true"
    return result


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return headers("admin-1", "admin@example.com", admin=True)


@pytest.fixture
def alice_headers() -> dict[str, str]:
    return headers("alice", "alice@example.com")


@pytest.fixture
def bob_headers() -> dict[str, str]:
    return headers("bob", "bob@example.com")
