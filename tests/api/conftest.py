"""Fixtures for HTTP API tests (FastAPI)."""

from __future__ import annotations

from collections.abc import AsyncIterator, Generator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

import trellis.api as api_module
from tests._db_factory import Workflow, make_db, seed_workflow
from trellis.api import create_app
from trellis.core import TrellisDB


@pytest.fixture
def api_db(tmp_path: Path) -> Generator[tuple[TrellisDB, Workflow], None, None]:
    """Workflow-seeded DB opened with check_same_thread=False for the ASGI app."""
    db = make_db(tmp_path, check_same_thread=False)
    wf = seed_workflow(db)
    yield db, wf
    db.close()


@pytest.fixture
async def client(api_db: tuple[TrellisDB, Workflow]) -> AsyncIterator[AsyncClient]:
    """Test client bound to the single-project ``_db``."""
    api_module._db = api_db[0]
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    api_module._db = None


async def create_item(client: AsyncClient, **body: object) -> dict[str, object]:
    """POST /api/items and return the created item, asserting 201."""
    body.setdefault("organization_id", "acme")
    resp = await client.post("/api/items", json=body)
    assert resp.status_code == 201, resp.text
    item: dict[str, object] = resp.json()["item"]
    return item
