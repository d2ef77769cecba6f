"""Tests for the HTTP action endpoint."""

from __future__ import annotations

from unittest.mock import MagicMock

from fastapi.testclient import TestClient
import pytest

from fakes import CHAPTER_ID, FakeAggregator
from treasury.adapters.db.facade import DB
from treasury.core.config import TreasuryConfig
from treasury.ui.api.auth import StaticTokenAuthenticator
from treasury.ui.api.logger import ApiLogger
from treasury.ui.api.server import MAX_BODY_BYTES, build_router, create_app

TOKEN = "tok_treasurer"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
def api_logger() -> MagicMock:
    return MagicMock(spec=ApiLogger)


@pytest.fixture
def client(db: DB, aggregator: FakeAggregator, api_logger: MagicMock) -> TestClient:
    db.save_user_profile(user_id="user_treasurer", chapter_id=CHAPTER_ID)
    router = build_router(
        db=db, aggregator=aggregator, config=TreasuryConfig(), api_logger=api_logger
    )
    app = create_app(
        router=router,
        authenticator=StaticTokenAuthenticator({TOKEN: "user_treasurer"}, db),
        api_logger=api_logger,
    )
    return TestClient(app)


class TestActionEndpoint:
    def test_dispatches_action(self, client: TestClient) -> None:
        response = client.post(
            "/",
            json={"action": "get_connections", "chapter_id": CHAPTER_ID},
            headers=AUTH,
        )

        assert response.status_code == 200
        assert response.json() == {"connections": []}

    def test_missing_token_is_unauthorized(
        self, client: TestClient, api_logger: MagicMock
    ) -> None:
        response = client.post(
            "/", json={"action": "get_connections", "chapter_id": CHAPTER_ID}
        )

        assert response.status_code == 401
        assert "error" in response.json()
        api_logger.action_rejected.assert_called_once()

    def test_unknown_token_is_unauthorized(self, client: TestClient) -> None:
        response = client.post(
            "/",
            json={"action": "get_connections", "chapter_id": CHAPTER_ID},
            headers={"Authorization": "Bearer tok_wrong"},
        )

        assert response.status_code == 401

    def test_invalid_json_is_bad_request(self, client: TestClient) -> None:
        response = client.post(
            "/",
            content=b"{not json",
            headers={**AUTH, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Request body must be valid JSON"}

    def test_unknown_action_is_bad_request(self, client: TestClient) -> None:
        response = client.post("/", json={"action": "drop_tables"}, headers=AUTH)

        assert response.status_code == 400
        assert response.json() == {"error": "Unknown action: drop_tables"}

    def test_missing_action_is_bad_request(self, client: TestClient) -> None:
        response = client.post("/", json={"chapter_id": CHAPTER_ID}, headers=AUTH)

        assert response.status_code == 400
        assert "error" in response.json()

    def test_other_paths_are_not_found(self, client: TestClient) -> None:
        response = client.post("/admin", json={"action": "sync_all"}, headers=AUTH)

        assert response.status_code == 404

    def test_oversized_body_is_rejected(self, client: TestClient) -> None:
        response = client.post(
            "/", content=b" " * (MAX_BODY_BYTES + 1), headers=AUTH
        )

        assert response.status_code == 413
        assert response.json() == {"error": "Request body too large"}
