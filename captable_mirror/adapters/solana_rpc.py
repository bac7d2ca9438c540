from __future__ import annotations

import itertools
import json
import threading
import time
from typing import Any, Callable, Dict, List, Optional
from urllib import request
from urllib.error import HTTPError, URLError

import structlog

from captable_mirror.config import IndexerConfig
from captable_mirror.contracts import LogBatch, SignatureInfo, TransactionInfo
from captable_mirror.errors import LedgerConnectionError

log = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = "captable-mirror/0.1"
DEFAULT_TIMEOUT_S = 20
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_S = 0.5
DEFAULT_POLL_INTERVAL_S = 2.0
MAX_SIGNATURE_PAGE = 1000
_RETRYABLE_HTTP_STATUS = {429, 500, 502, 503, 504}


class SolanaRpcClient:
    """
    Minimal JSON-RPC client for the calls the indexer needs.

    Transport failures are retried with exponential backoff; once retries are
    exhausted a ``LedgerConnectionError`` is raised.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout_s: int = DEFAULT_TIMEOUT_S,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base_s: float = DEFAULT_BACKOFF_S,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.rpc_url = rpc_url
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_base_s = backoff_base_s
        self.poll_interval_s = poll_interval_s
        self.user_agent = user_agent
        self._ids = itertools.count(1)
        # newest signature seen per address, so a re-subscription resumes where the last one stopped
        self._cursors: Dict[str, str] = {}

    @classmethod
    def from_config(cls, config: IndexerConfig) -> "SolanaRpcClient":
        return cls(
            config.rpc_url,
            timeout_s=config.rpc_timeout_s,
            max_retries=config.rpc_max_retries,
            poll_interval_s=config.poll_interval_s,
        )

    # --- transport ----------------------------------------------------------

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        body = json.dumps(
            {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        ).encode("utf-8")
        req = request.Request(
            self.rpc_url,
            data=body,
            headers={
                "User-Agent": self.user_agent,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            method="POST",
        )
        last_error: Optional[str] = None
        for attempt in range(self.max_retries + 1):
            try:
                with request.urlopen(req, timeout=self.timeout_s) as resp:
                    payload = json.loads(resp.read().decode("utf-8"))
            except HTTPError as e:
                last_error = f"HTTP {e.code}"
                if e.code in _RETRYABLE_HTTP_STATUS and attempt < self.max_retries:
                    time.sleep(self.backoff_base_s * (2 ** attempt))
                    continue
                break
            except (URLError, TimeoutError, ConnectionError, json.JSONDecodeError) as e:
                last_error = str(e)
                if attempt < self.max_retries:
                    time.sleep(self.backoff_base_s * (2 ** attempt))
                    continue
                break

            if "error" in payload and payload["error"] is not None:
                err = payload["error"]
                raise LedgerConnectionError(
                    f"RPC {method} failed: {err.get('message') if isinstance(err, dict) else err}",
                    details={"method": method, "rpc_error": err},
                )
            return payload.get("result")

        raise LedgerConnectionError(
            f"RPC {method} unreachable after {self.max_retries + 1} attempts: {last_error}",
            details={"method": method, "rpc_url": self.rpc_url},
        )

    # --- ledger source ------------------------------------------------------

    def get_slot(self, commitment: str = "confirmed") -> int:
        return int(self.call("getSlot", [{"commitment": commitment}]))

    def get_transaction(self, signature: str, commitment: str = "confirmed") -> Optional[TransactionInfo]:
        result = self.call(
            "getTransaction",
            [signature, {"encoding": "json", "commitment": commitment, "maxSupportedTransactionVersion": 0}],
        )
        if not result:
            return None
        meta = result.get("meta") or {}
        return TransactionInfo(
            signature=signature,
            slot=int(result.get("slot") or 0),
            block_time=result.get("blockTime"),
            log_messages=list(meta.get("logMessages") or []),
            err=meta.get("err"),
        )

    def get_signatures_for_address(
        self,
        address: str,
        limit: int = MAX_SIGNATURE_PAGE,
        before: Optional[str] = None,
        until: Optional[str] = None,
        commitment: str = "confirmed",
    ) -> List[SignatureInfo]:
        """Newest first, as the RPC returns them."""
        opts: Dict[str, Any] = {"limit": max(1, min(int(limit), MAX_SIGNATURE_PAGE)), "commitment": commitment}
        if before:
            opts["before"] = before
        if until:
            opts["until"] = until
        rows = self.call("getSignaturesForAddress", [address, opts]) or []
        return [
            SignatureInfo(
                signature=row["signature"],
                slot=int(row.get("slot") or 0),
                err=row.get("err"),
                block_time=row.get("blockTime"),
            )
            for row in rows
        ]

    def subscribe(
        self,
        program_id: str,
        commitment: str,
        on_logs: Callable[[LogBatch], None],
        on_error: Callable[[BaseException], None],
    ) -> "PollingLogSubscription":
        sub = PollingLogSubscription(self, program_id, commitment, on_logs, on_error)
        sub.start()
        return sub

    def unsubscribe(self, handle: "PollingLogSubscription") -> None:
        handle.close()


class PollingLogSubscription:
    """
    Log subscription built on signature polling.

    Each poll fetches signatures newer than the cursor, then delivers each
    transaction's logs oldest first. A transport failure is reported through
    ``on_error`` and ends the subscription; the owner decides whether to
    re-subscribe.
    """

    def __init__(
        self,
        client: SolanaRpcClient,
        program_id: str,
        commitment: str,
        on_logs: Callable[[LogBatch], None],
        on_error: Callable[[BaseException], None],
    ) -> None:
        self.client = client
        self.program_id = program_id
        self.commitment = commitment
        self.on_logs = on_logs
        self.on_error = on_error
        self._closed = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def active(self) -> bool:
        return not self._closed.is_set()

    def start(self) -> None:
        if self.program_id not in self.client._cursors:
            # start at the tip; history is the backfill's job
            newest = self.client.get_signatures_for_address(self.program_id, limit=1, commitment=self.commitment)
            if newest:
                self.client._cursors[self.program_id] = newest[0].signature
        self._thread = threading.Thread(target=self._run, name="captable-log-poll", daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._closed.set()

    def _run(self) -> None:
        while not self._closed.wait(self.client.poll_interval_s):
            try:
                self.poll_once()
            except Exception as exc:
                if self._closed.is_set():
                    return
                self._closed.set()
                self.on_error(exc)
                return

    def _new_signatures(self) -> List[SignatureInfo]:
        until = self.client._cursors.get(self.program_id)
        collected: List[SignatureInfo] = []
        before: Optional[str] = None
        while True:
            page = self.client.get_signatures_for_address(
                self.program_id, limit=MAX_SIGNATURE_PAGE, before=before, until=until, commitment=self.commitment
            )
            collected.extend(page)
            if len(page) < MAX_SIGNATURE_PAGE:
                break
            before = page[-1].signature
        collected.reverse()
        return collected

    def poll_once(self) -> int:
        delivered = 0
        for info in self._new_signatures():
            if self._closed.is_set():
                break
            tx = self.client.get_transaction(info.signature, self.commitment)
            if tx is None:
                # not visible at this commitment yet; retry from here next poll
                break
            self.on_logs(
                LogBatch(
                    signature=info.signature,
                    logs=tx.log_messages,
                    slot=tx.slot or info.slot,
                    err=tx.err,
                    block_time=tx.block_time or info.block_time,
                )
            )
            if self._closed.is_set():
                # closed by the handler; the next subscription redelivers this one
                break
            delivered += 1
            self.client._cursors[self.program_id] = info.signature
        return delivered
