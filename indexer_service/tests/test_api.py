import sqlite3
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

import indexer.database as db_module
from indexer.checkpoint import CheckpointStore
from indexer.config import IngestSettings
from indexer.database import init_db
from indexer.errors import PersistenceFailure
from indexer.fetch_client import Transactions
from indexer.ingestion import IngestionLoop
from indexer.main import app
from indexer.records import TransactionRecord
from indexer.repository import TransactionRepository


@pytest.fixture(autouse=True)
def use_temp_db(tmp_path, monkeypatch):
    """Each test uses a fresh temporary SQLite database."""
    test_db = tmp_path / "test.db"
    monkeypatch.setattr(db_module, "DB_PATH", test_db)
    monkeypatch.setenv("DB_RESET_ON_START", "false")
    init_db()
    yield test_db


@pytest.fixture
def client():
    return TestClient(app)


def _ts(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


def _store(signature, slot, block_time, tx_index=0):
    record = TransactionRecord(
        signature=signature,
        slot=slot,
        block_hash=f"hash-{slot}",
        block_time=block_time,
        tx_index=tx_index,
        payload={"transaction": {"signatures": [signature]}, "meta": {"fee": 5000}},
    )
    TransactionRepository().upsert(record)
    return record


@pytest.fixture
def seeded():
    _store("late", 300, _ts(2025, 2, 17, 23, 59))
    _store("next-day", 400, _ts(2025, 2, 18, 0, 0))
    _store("morning", 200, _ts(2025, 2, 17, 10, 0))


# ── Health ────────────────────────────────────────────────────────

class TestHealth:
    def test_health_returns_200(self, client):
        response = client.get("/health")
        assert response.status_code == 200

    def test_health_status_healthy(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["db_connected"] is True

    def test_health_total_records_starts_at_zero(self, client):
        assert client.get("/health").json()["total_records"] == 0

    def test_health_counts_stored_transactions(self, client, seeded):
        assert client.get("/health").json()["total_records"] == 3

    def test_health_reports_unhealthy_without_db(self, client):
        with patch("indexer.routes.health.check_connection", return_value=False):
            data = client.get("/health").json()
        assert data["status"] == "unhealthy"
        assert data["total_records"] == 0
        assert data["latest_checkpoint"] is None

    def test_health_fresh_database_has_no_checkpoint(self, client):
        data = client.get("/health").json()
        assert data["latest_checkpoint"] is None
        assert data["truncated_slots"] == 0

    def test_health_reports_ingestion_progress(self, client):
        CheckpointStore("main").save(1234)
        CheckpointStore("backfill").save(900)
        TransactionRepository().record_truncation(1200, 1500, 1000)

        data = client.get("/health").json()

        assert data["latest_checkpoint"] == 1234
        assert data["truncated_slots"] == 1

    def test_health_degraded_when_schema_missing(self, client, use_temp_db):
        conn = sqlite3.connect(str(use_temp_db))
        conn.execute("DROP TABLE checkpoints")
        conn.commit()
        conn.close()
        data = client.get("/health").json()
        assert data["status"] == "degraded"
        assert data["db_connected"] is True


# ── Day query ─────────────────────────────────────────────────────

class TestDayQuery:
    def test_returns_matching_day_in_slot_order(self, client, seeded):
        response = client.get("/transactions", params={"day": "2025-02-17"})
        assert response.status_code == 200
        data = response.json()
        assert data["day"] == "2025-02-17"
        assert data["count"] == 2
        assert [t["signature"] for t in data["transactions"]] == ["morning", "late"]
        assert [t["slot"] for t in data["transactions"]] == [200, 300]

    def test_next_day_bucket(self, client, seeded):
        data = client.get("/transactions?day=2025-02-18").json()
        assert [t["signature"] for t in data["transactions"]] == ["next-day"]

    def test_empty_day(self, client, seeded):
        data = client.get("/transactions?day=2024-01-01").json()
        assert data["count"] == 0
        assert data["transactions"] == []

    def test_record_fields(self, client, seeded):
        tx = client.get("/transactions?day=2025-02-17").json()["transactions"][0]
        assert tx["block_hash"] == "hash-200"
        assert tx["block_time"] == _ts(2025, 2, 17, 10, 0)
        assert tx["timestamp"].startswith("2025-02-17T10:00:00")
        assert tx["tx_index"] == 0
        assert tx["data"]["meta"]["fee"] == 5000

    def test_malformed_day_is_422(self, client):
        assert client.get("/transactions?day=17-02-2025").status_code == 422
        assert client.get("/transactions?day=2025-02-30").status_code == 422


# ── Id query ──────────────────────────────────────────────────────

class TestIdQuery:
    def test_known_id(self, client, seeded):
        response = client.get("/transactions", params={"id": "late"})
        assert response.status_code == 200
        data = response.json()
        assert data["signature"] == "late"
        assert data["slot"] == 300
        assert data["data"]["transaction"]["signatures"] == ["late"]

    def test_unknown_id_is_404(self, client, seeded):
        response = client.get("/transactions", params={"id": "missing"})
        assert response.status_code == 404
        assert response.json()["detail"] == "Transaction not found"


# ── Parameter validation ──────────────────────────────────────────

class TestQueryValidation:
    def test_neither_parameter_is_400(self, client):
        assert client.get("/transactions").status_code == 400

    def test_both_parameters_is_400(self, client, seeded):
        response = client.get("/transactions", params={"day": "2025-02-17", "id": "late"})
        assert response.status_code == 400

    def test_storage_failure_hides_internals(self, client):
        with patch.object(
            TransactionRepository,
            "find_by_id",
            side_effect=PersistenceFailure("Query failed: database disk image is malformed"),
        ):
            response = client.get("/transactions?id=abc")
        assert response.status_code == 503
        assert "malformed" not in response.text


# ── Ingestion status ──────────────────────────────────────────────

class TestIngestionStatus:
    def test_without_loop(self, client):
        CheckpointStore("main").save(1234)
        TransactionRepository().record_truncation(1200, 1500, 1000)

        data = client.get("/ingestion/status").json()

        assert data["running"] is False
        assert data["state"] is None
        assert data["checkpoints"][0]["stream_key"] == "main"
        assert data["checkpoints"][0]["slot"] == 1234
        assert data["truncated_slots"] == 1

    def test_with_in_process_loop(self, client, monkeypatch):
        settings = IngestSettings(stream_key="main", start_slot=10)
        loop = IngestionLoop(
            client=None,
            checkpoint=CheckpointStore("main", 10),
            repository=TransactionRepository(),
            settings=settings,
        )
        loop.next_slot = 11
        monkeypatch.setattr(app.state, "ingestion_loop", loop, raising=False)

        data = client.get("/ingestion/status").json()

        assert data["running"] is True
        assert data["stream_key"] == "main"
        assert data["state"] == "idle"
        assert data["next_slot"] == 11
        assert data["checkpoints"] == []


# ── Metrics ───────────────────────────────────────────────────────

class TestMetricsEndpoint:
    def test_metrics_endpoint_returns_prometheus_format(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]


# ── Lifespan ──────────────────────────────────────────────────────

class FakeClient:
    def __init__(self):
        self.closed = False

    def fetch(self, slot):
        return Transactions(slot=slot, records=[], available=0)

    def get_tip_slot(self):
        return 10**9

    def close(self):
        self.closed = True


class TestLifespan:
    def test_ingestion_disabled_by_default(self, monkeypatch):
        monkeypatch.delenv("INGESTION_ENABLED", raising=False)
        with TestClient(app) as c:
            assert app.state.ingestion_loop is None
            assert c.get("/health").status_code == 200

    def test_ingestion_thread_started_and_stopped(self, monkeypatch):
        monkeypatch.setenv("INGESTION_ENABLED", "true")
        fake = FakeClient()

        def build(settings):
            loop_settings = settings.with_overrides(
                stream_key="api", start_slot=5, end_slot=7, rate_limit_per_second=0
            )
            return IngestionLoop(
                client=fake,
                checkpoint=CheckpointStore("api", 5),
                repository=TransactionRepository(),
                settings=loop_settings,
            )

        with patch("indexer.ingestion.build_loop", side_effect=build):
            with TestClient(app) as c:
                loop = app.state.ingestion_loop
                assert loop is not None
                assert c.get("/ingestion/status").status_code == 200

        assert loop.state.value == "stopped"
        assert fake.closed is True
        assert app.state.ingestion_loop is None
        assert CheckpointStore("api", 5).stored_slot() in (None, 5, 6, 7)
