"""
Solana JSON-RPC fetch client.

Translates a ``getBlock`` call for one slot into a ``FetchResult``:

  Transactions    the slot's transactions, at most ``tx_limit`` of them
  SlotSkipped     the chain skipped (or the node pruned) the slot
  RateLimited     HTTP 429 / rate-limit error, retry after a delay
  TransientError  network failure, 5xx, block not available yet
  FatalError      malformed or unauthorized response, do not retry

The client does no retrying of its own; the ingestion loop owns retry and
pacing policy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import requests
from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

from indexer.errors import IndexerError
from indexer.records import TransactionRecord

logger = logging.getLogger("fetch_client")

# Solana JSON-RPC server error codes
SLOT_SKIPPED_CODES = frozenset({
    -32001,  # block cleaned up (pruned by the node)
    -32007,  # slot skipped or missing due to ledger jump
    -32009,  # slot skipped or missing in long-term storage
})
RETRYABLE_CODES = frozenset({
    -32004,  # block not available for slot
    -32005,  # node unhealthy / behind
    -32014,  # block status not yet available
    -32016,  # minimum context slot not reached
})
RATE_LIMIT_CODES = frozenset({-32429})


# ── Fetch results ────────────────────────────────────────────────


@dataclass(frozen=True)
class Transactions:
    """Transactions of one slot, in block order, bounded by the limit."""

    slot: int
    records: list[TransactionRecord] = field(default_factory=list)
    available: int = 0

    @property
    def truncated(self) -> bool:
        return self.available > len(self.records)


@dataclass(frozen=True)
class SlotSkipped:
    slot: int
    reason: str = ""


@dataclass(frozen=True)
class RateLimited:
    retry_after: Optional[float] = None
    reason: str = ""


@dataclass(frozen=True)
class TransientError:
    reason: str


@dataclass(frozen=True)
class FatalError:
    reason: str


FetchResult = Union[Transactions, SlotSkipped, RateLimited, TransientError, FatalError]


# ── Wire-level errors ────────────────────────────────────────────


class RpcError(IndexerError):
    """Base class for failures talking to the RPC node."""


class RpcRateLimited(RpcError):
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RpcTransportError(RpcError):
    """Connection failure, timeout or server-side HTTP error."""


class RpcProtocolError(RpcError):
    """Malformed, unexpected or unauthorized response."""


class RpcResponseError(RpcError):
    """JSON-RPC error object returned by the node."""

    def __init__(self, code: Optional[int], message: str):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


def classify_error(error: RpcError, slot: Optional[int] = None) -> FetchResult:
    """Map a wire-level error onto the fetch result taxonomy."""
    if isinstance(error, RpcRateLimited):
        return RateLimited(retry_after=error.retry_after, reason=str(error))
    if isinstance(error, RpcTransportError):
        return TransientError(str(error))
    if isinstance(error, RpcResponseError):
        if error.code in SLOT_SKIPPED_CODES and slot is not None:
            return SlotSkipped(slot=slot, reason=error.message)
        if error.code in RETRYABLE_CODES:
            return TransientError(str(error))
        lowered = error.message.lower()
        if error.code in RATE_LIMIT_CODES or "rate limit" in lowered or "too many requests" in lowered:
            return RateLimited(reason=str(error))
        return FatalError(str(error))
    return FatalError(str(error))


# ── Client ───────────────────────────────────────────────────────


class SolanaRpcClient:
    """Minimal Solana JSON-RPC client for slot-by-slot block retrieval.

    Args:
        rpc_url: JSON-RPC HTTP endpoint.
        tx_limit: Maximum transactions returned per slot.
        root_lag: Slots subtracted from the finalized tip in ``get_tip_slot``.
        timeout: HTTP timeout in seconds.
        session: Optional ``requests.Session`` (tests pass a mock).
    """

    BLOCK_CONFIG = {
        "encoding": "jsonParsed",
        "transactionDetails": "full",
        "rewards": False,
        "commitment": "finalized",
        "maxSupportedTransactionVersion": 0,
    }

    def __init__(
        self,
        rpc_url: str,
        tx_limit: int,
        root_lag: int = 0,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.rpc_url = rpc_url
        self.tx_limit = tx_limit
        self.root_lag = root_lag
        self.timeout = timeout
        self._session = session or requests.Session()
        self._request_id = 0

    def fetch(self, slot: int) -> FetchResult:
        """Fetch the transactions of ``slot`` and classify the outcome."""
        try:
            block = self._call("getBlock", [slot, self.BLOCK_CONFIG])
            if block is None:
                return TransientError(f"block for slot {slot} not available yet")
            return self._transactions_from_block(slot, block)
        except RpcError as error:
            return classify_error(error, slot)

    def get_tip_slot(self) -> int:
        """Latest finalized slot minus ``root_lag`` (never below zero).

        Raises:
            RpcError: On any failure; callers classify it with ``classify_error``.
        """
        result = self._call("getSlot", [{"commitment": "finalized"}])
        if not isinstance(result, int) or isinstance(result, bool):
            raise RpcProtocolError(f"getSlot returned non-integer result: {result!r}")
        return max(result - self.root_lag, 0)

    def close(self) -> None:
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # ── internals ────────────────────────────────────────────────

    def _transactions_from_block(self, slot: int, block: Any) -> Transactions:
        if not isinstance(block, dict):
            raise RpcProtocolError(f"getBlock returned {type(block).__name__} for slot {slot}")
        block_hash = block.get("blockhash")
        if not isinstance(block_hash, str):
            raise RpcProtocolError(f"block for slot {slot} has no blockhash")
        entries = block.get("transactions") or []
        if not isinstance(entries, list):
            raise RpcProtocolError(f"block for slot {slot} has a malformed transactions list")
        block_time = block.get("blockTime")

        records = [
            TransactionRecord(
                signature=_signature_of(slot, index, entry),
                slot=slot,
                block_hash=block_hash,
                block_time=block_time,
                tx_index=index,
                payload=entry,
            )
            for index, entry in enumerate(entries[: self.tx_limit])
        ]
        return Transactions(slot=slot, records=records, available=len(entries))

    def _call(self, method: str, params: list) -> Any:
        """Execute one JSON-RPC call and return its ``result`` field."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }
        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span(
            f"rpc {method}",
            kind=SpanKind.CLIENT,
            attributes={
                "rpc.system": "jsonrpc",
                "rpc.method": method,
                "rpc.jsonrpc.request_id": self._request_id,
            },
        ) as span:
            try:
                result = self._post(payload)
            except RpcError as error:
                span.set_status(Status(StatusCode.ERROR, str(error)))
                span.set_attribute("rpc.error_type", type(error).__name__)
                raise
            return result

    def _post(self, payload: dict) -> Any:
        method = payload["method"]
        try:
            response = self._session.post(self.rpc_url, json=payload, timeout=self.timeout)
        except requests.RequestException as error:
            raise RpcTransportError(f"{method} request failed: {error}") from error

        status = response.status_code
        if status == 429:
            raise RpcRateLimited(f"{method} rate limited (HTTP 429)", _retry_after(response))
        if status in (401, 403):
            raise RpcProtocolError(f"{method} unauthorized (HTTP {status})")
        if status >= 500:
            raise RpcTransportError(f"{method} server error (HTTP {status})")
        if status >= 400:
            raise RpcProtocolError(f"{method} rejected (HTTP {status})")

        try:
            data = response.json()
        except ValueError as error:
            raise RpcProtocolError(f"{method} returned malformed JSON") from error
        if not isinstance(data, dict):
            raise RpcProtocolError(f"{method} returned a non-object response")

        error = data.get("error")
        if error:
            if not isinstance(error, dict):
                raise RpcProtocolError(f"{method} returned a malformed error: {error!r}")
            raise RpcResponseError(error.get("code"), str(error.get("message", "")))
        if "result" not in data:
            raise RpcProtocolError(f"{method} response has neither result nor error")
        return data["result"]


def _signature_of(slot: int, index: int, entry: Any) -> str:
    try:
        signature = entry["transaction"]["signatures"][0]
    except (KeyError, IndexError, TypeError) as error:
        raise RpcProtocolError(
            f"transaction {index} in slot {slot} has no signature"
        ) from error
    if not isinstance(signature, str) or not signature:
        raise RpcProtocolError(f"transaction {index} in slot {slot} has an invalid signature")
    return signature


def _retry_after(response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        logger.debug("Ignoring non-numeric Retry-After header: %r", raw)
        return None
