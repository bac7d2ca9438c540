"""JSON-RPC client and polling subscription tests (no network)."""
from __future__ import annotations

import io
import json
from typing import List
from urllib.error import HTTPError, URLError

import pytest

from captable_mirror.adapters import solana_rpc
from captable_mirror.adapters.solana_rpc import PollingLogSubscription, SolanaRpcClient
from captable_mirror.config import IndexerConfig
from captable_mirror.contracts import SignatureInfo, TransactionInfo
from captable_mirror.errors import LedgerConnectionError
from captable_mirror.subscription import SubscriptionManager, SubscriptionState

RPC_URL = "http://rpc.test:8899"
PROGRAM = "CapTab1eProgram1111111111111111111111111111"


class _Resp:
    def __init__(self, payload) -> None:
        self._buf = io.BytesIO(json.dumps(payload).encode("utf-8"))

    def read(self):
        return self._buf.read()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _install(monkeypatch, responses: List):
    """Each urlopen call pops the next item: a payload dict or an exception to raise."""
    requests: List[dict] = []
    sleeps: List[float] = []

    def fake_urlopen(req, timeout=None):
        requests.append(json.loads(req.data.decode("utf-8")))
        item = responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return _Resp(item)

    monkeypatch.setattr(solana_rpc.request, "urlopen", fake_urlopen)
    monkeypatch.setattr(solana_rpc.time, "sleep", sleeps.append)
    return requests, sleeps


def _http_error(code: int) -> HTTPError:
    return HTTPError(RPC_URL, code, "error", {}, None)


def test_get_slot_posts_json_rpc(monkeypatch):
    requests, _ = _install(monkeypatch, [{"jsonrpc": "2.0", "id": 1, "result": 4242}])
    client = SolanaRpcClient(RPC_URL)

    assert client.get_slot("finalized") == 4242
    assert requests[0]["method"] == "getSlot"
    assert requests[0]["params"] == [{"commitment": "finalized"}]


def test_retries_transient_failures_with_backoff(monkeypatch):
    _, sleeps = _install(
        monkeypatch,
        [_http_error(503), URLError("connection reset"), {"jsonrpc": "2.0", "id": 3, "result": 7}],
    )
    client = SolanaRpcClient(RPC_URL, max_retries=3, backoff_base_s=0.5)

    assert client.get_slot() == 7
    assert sleeps == [0.5, 1.0]


def test_exhausted_retries_raise_connection_error(monkeypatch):
    requests, sleeps = _install(monkeypatch, [_http_error(429), _http_error(502), _http_error(503)])
    client = SolanaRpcClient(RPC_URL, max_retries=2, backoff_base_s=1.0)

    with pytest.raises(LedgerConnectionError) as exc:
        client.get_slot()
    assert "unreachable after 3 attempts" in exc.value.message
    assert len(requests) == 3
    assert sleeps == [1.0, 2.0]


def test_client_errors_are_not_retried(monkeypatch):
    requests, sleeps = _install(monkeypatch, [_http_error(400)])
    client = SolanaRpcClient(RPC_URL, max_retries=3)

    with pytest.raises(LedgerConnectionError):
        client.get_slot()
    assert len(requests) == 1
    assert sleeps == []


def test_rpc_error_object_raises(monkeypatch):
    _install(monkeypatch, [{"jsonrpc": "2.0", "id": 1, "error": {"code": -32009, "message": "Slot skipped"}}])
    client = SolanaRpcClient(RPC_URL)

    with pytest.raises(LedgerConnectionError) as exc:
        client.get_slot()
    assert "Slot skipped" in exc.value.message
    assert exc.value.details["rpc_error"]["code"] == -32009


def test_get_transaction_maps_meta_and_handles_null(monkeypatch):
    _install(
        monkeypatch,
        [
            {"jsonrpc": "2.0", "id": 1, "result": None},
            {
                "jsonrpc": "2.0",
                "id": 2,
                "result": {
                    "slot": 900,
                    "blockTime": 1_700_000_000,
                    "meta": {"err": None, "logMessages": ["Program log: hi"]},
                },
            },
        ],
    )
    client = SolanaRpcClient(RPC_URL)

    assert client.get_transaction("missing") is None
    tx = client.get_transaction("found")
    assert tx.slot == 900
    assert tx.block_time == 1_700_000_000
    assert tx.log_messages == ["Program log: hi"]
    assert tx.err is None


def test_get_signatures_for_address_options(monkeypatch):
    requests, _ = _install(
        monkeypatch,
        [{"jsonrpc": "2.0", "id": 1, "result": [{"signature": "s2", "slot": 20, "err": None, "blockTime": 5}]}],
    )
    client = SolanaRpcClient(RPC_URL)

    page = client.get_signatures_for_address(PROGRAM, limit=5000, before="s9")

    assert page == [SignatureInfo(signature="s2", slot=20, err=None, block_time=5)]
    address, opts = requests[0]["params"]
    assert address == PROGRAM
    assert opts["limit"] == 1000
    assert opts["before"] == "s9"
    assert "until" not in opts


def test_from_config():
    cfg = IndexerConfig(rpc_url=RPC_URL, rpc_timeout_s=3, rpc_max_retries=1, poll_interval_s=0.5)
    client = SolanaRpcClient.from_config(cfg)
    assert (client.rpc_url, client.timeout_s, client.max_retries, client.poll_interval_s) == (RPC_URL, 3, 1, 0.5)


class ScriptedClient(SolanaRpcClient):
    """History held oldest first; transactions may be hidden to simulate commitment lag."""

    def __init__(self, signatures: List[str]) -> None:
        super().__init__(RPC_URL, poll_interval_s=60)
        self.signatures = signatures
        self.hidden: set = set()

    def get_slot(self, commitment="confirmed"):
        return len(self.signatures)

    def get_signatures_for_address(self, address, limit=1000, before=None, until=None, commitment="confirmed"):
        newest_first = list(reversed(self.signatures))
        if until is not None and until in newest_first:
            newest_first = newest_first[: newest_first.index(until)]
        return [SignatureInfo(signature=s, slot=i) for i, s in enumerate(newest_first[:limit])]

    def get_transaction(self, signature, commitment="confirmed"):
        if signature in self.hidden:
            return None
        return TransactionInfo(signature=signature, slot=int(signature[1:]), log_messages=[f"Program log: {signature}"])


def _polling(client: ScriptedClient, delivered: list, errors: list) -> PollingLogSubscription:
    return PollingLogSubscription(client, PROGRAM, "confirmed", delivered.append, errors.append)


def test_poll_once_delivers_oldest_first_and_advances_cursor():
    client = ScriptedClient(["s1", "s2", "s3", "s4"])
    client._cursors[PROGRAM] = "s1"
    delivered, errors = [], []
    sub = _polling(client, delivered, errors)

    assert sub.poll_once() == 3
    assert [b.signature for b in delivered] == ["s2", "s3", "s4"]
    assert [b.slot for b in delivered] == [2, 3, 4]
    assert client._cursors[PROGRAM] == "s4"
    assert sub.poll_once() == 0


def test_poll_once_stops_at_an_unavailable_transaction():
    client = ScriptedClient(["s1", "s2", "s3"])
    client._cursors[PROGRAM] = "s1"
    client.hidden.add("s3")
    delivered, errors = [], []
    sub = _polling(client, delivered, errors)

    assert sub.poll_once() == 1
    assert client._cursors[PROGRAM] == "s2"

    client.hidden.clear()
    assert sub.poll_once() == 1
    assert [b.signature for b in delivered] == ["s2", "s3"]


def test_subscribe_starts_at_tip_and_resubscribe_resumes_from_cursor():
    client = ScriptedClient(["s1", "s2"])
    delivered, errors = [], []

    handle = client.subscribe(PROGRAM, "confirmed", delivered.append, errors.append)
    assert handle.active
    assert client._cursors[PROGRAM] == "s2"
    client.unsubscribe(handle)
    assert not handle.active

    client.signatures.extend(["s3", "s4"])
    again = client.subscribe(PROGRAM, "confirmed", delivered.append, errors.append)
    assert client._cursors[PROGRAM] == "s2"
    assert again.poll_once() == 2
    client.unsubscribe(again)
    assert [b.signature for b in delivered] == ["s3", "s4"]


class ImmediateScheduler:
    def call_every(self, interval_s, fn):
        return lambda: None

    def sleep(self, seconds):
        pass


def test_batch_that_failed_the_handler_is_redelivered_after_reconnect():
    client = ScriptedClient(["s1"])
    handled, failures = [], []

    def handler(batch):
        if batch.signature == "s2" and not failures:
            failures.append(batch.signature)
            raise RuntimeError("database unavailable")
        handled.append(batch.signature)

    mgr = SubscriptionManager(
        client, PROGRAM, handler, reconnect_delay_s=0, scheduler=ImmediateScheduler(), max_reconnect_attempts=3
    )
    mgr.start()
    first = mgr._handle
    client.signatures.append("s2")

    assert first.poll_once() == 0
    assert not first.active
    assert client._cursors[PROGRAM] == "s1"
    assert mgr.state == SubscriptionState.running

    second = mgr._handle
    assert second is not first
    assert second.poll_once() == 1
    assert handled == ["s2"]
    assert client._cursors[PROGRAM] == "s2"
    mgr.stop()
