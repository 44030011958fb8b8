"""
Ingest a scripted chain through the real RPC client, then read it back
through the HTTP API.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

import indexer.database as db_module
from indexer.checkpoint import CheckpointStore
from indexer.config import IngestSettings
from indexer.database import init_db
from indexer.fetch_client import SolanaRpcClient
from indexer.ingestion import IngestionLoop
from indexer.main import app
from indexer.repository import TransactionRepository

DAY_START = int(datetime(2025, 2, 17, 0, 0, tzinfo=timezone.utc).timestamp())


class FakeRpcNode:
    """Answers getSlot / getBlock POSTs like a Solana node would."""

    def __init__(self, blocks, skipped=(), tip=None, hiccups=None):
        self.blocks = blocks
        self.skipped = set(skipped)
        self.tip = tip if tip is not None else max(blocks)
        # slot -> list of canned failures served before the real block
        self.hiccups = {slot: list(items) for slot, items in (hiccups or {}).items()}
        self.calls = []

    def post(self, url, json=None, timeout=None):
        method, params = json["method"], json["params"]
        self.calls.append((method, params[0] if method == "getBlock" else None))
        if method == "getSlot":
            return self._ok(json, self.tip)

        slot = params[0]
        if self.hiccups.get(slot):
            return self.hiccups[slot].pop(0)
        if slot in self.skipped:
            return self._error(json, -32007, f"Slot {slot} was skipped, or missing due to ledger jump")
        signatures = self.blocks.get(slot, [])
        return self._ok(json, {
            "blockhash": f"blockhash-{slot}",
            "blockTime": DAY_START + 3600 + slot,
            "parentSlot": slot - 1,
            "transactions": [
                {"transaction": {"signatures": [sig], "message": {}}, "meta": {"fee": 5000, "err": None}}
                for sig in signatures
            ],
        })

    def close(self):
        pass

    @staticmethod
    def _response(status, body=None, headers=None):
        response = MagicMock()
        response.status_code = status
        response.headers = headers or {}
        response.json.return_value = body
        return response

    def _ok(self, request, result):
        return self._response(200, {"jsonrpc": "2.0", "id": request["id"], "result": result})

    def _error(self, request, code, message):
        return self._response(200, {"jsonrpc": "2.0", "id": request["id"], "error": {"code": code, "message": message}})


CHAIN = {
    100: ["tx-100-a", "tx-100-b"],
    101: ["tx-101-a", "tx-101-b"],
    102: ["tx-102-a", "tx-102-b"],
    104: ["tx-104-a"],
}


@pytest.fixture(autouse=True)
def use_temp_db(tmp_path, monkeypatch):
    """Each test uses a fresh temporary SQLite database."""
    test_db = tmp_path / "e2e.db"
    monkeypatch.setattr(db_module, "DB_PATH", test_db)
    monkeypatch.setenv("DB_RESET_ON_START", "false")
    init_db()
    yield test_db


def _loop(node, end_slot=104, tx_limit=1000):
    settings = IngestSettings(
        stream_key="e2e",
        start_slot=100,
        end_slot=end_slot,
        tx_limit=tx_limit,
        root_lag=0,
        rate_limit_per_second=0,
        backoff_base_seconds=0,
        backoff_max_seconds=0,
        rate_limit_cooldown_seconds=0,
    )
    return IngestionLoop(
        client=SolanaRpcClient("http://rpc.local", tx_limit=tx_limit, session=node),
        checkpoint=CheckpointStore("e2e", 100),
        repository=TransactionRepository(),
        settings=settings,
    )


def test_ingest_then_query():
    node = FakeRpcNode(
        CHAIN,
        skipped=[103],
        hiccups={
            101: [FakeRpcNode._response(429, headers={"Retry-After": "0"})],
            102: [FakeRpcNode._response(502)],
        },
    )
    _loop(node).run()

    assert CheckpointStore("e2e", 100).load() == 104
    assert TransactionRepository().count() == 7
    assert [slot for method, slot in node.calls if method == "getBlock"] == [100, 101, 101, 102, 102, 103, 104]

    client = TestClient(app)
    day = client.get("/transactions", params={"day": "2025-02-17"}).json()
    assert day["count"] == 7
    assert [t["slot"] for t in day["transactions"]] == [100, 100, 101, 101, 102, 102, 104]
    assert [t["signature"] for t in day["transactions"]][:2] == ["tx-100-a", "tx-100-b"]

    tx = client.get("/transactions", params={"id": "tx-104-a"}).json()
    assert tx["slot"] == 104
    assert tx["block_hash"] == "blockhash-104"
    assert client.get("/transactions", params={"id": "tx-103-a"}).status_code == 404

    status = client.get("/ingestion/status").json()
    assert status["checkpoints"] == [
        {"stream_key": "e2e", "slot": 104, "updated_at": status["checkpoints"][0]["updated_at"]}
    ]


def test_restart_matches_single_run(tmp_path, monkeypatch):
    _loop(FakeRpcNode(CHAIN, skipped=[103]), end_slot=101).run()
    resumed_node = FakeRpcNode(CHAIN, skipped=[103])
    _loop(resumed_node).run()
    resumed = sorted(
        (r.signature, r.slot) for r in TransactionRepository().find_by_day(datetime(2025, 2, 17).date())
    )

    assert [slot for method, slot in resumed_node.calls if method == "getBlock"] == [102, 103, 104]

    monkeypatch.setattr(db_module, "DB_PATH", tmp_path / "single.db")
    init_db()
    _loop(FakeRpcNode(CHAIN, skipped=[103])).run()
    single = sorted(
        (r.signature, r.slot) for r in TransactionRepository().find_by_day(datetime(2025, 2, 17).date())
    )

    assert resumed == single


def test_truncated_slot_visible_in_status():
    node = FakeRpcNode({100: [f"tx-{i}" for i in range(5)]}, tip=100)
    _loop(node, end_slot=100, tx_limit=3).run()

    repo = TransactionRepository()
    assert repo.count_for_slot(100) == 3
    assert TestClient(app).get("/ingestion/status").json()["truncated_slots"] == 1
