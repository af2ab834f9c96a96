# Keystone Settlement Collaborators — where funds actually move
#
# The engine never moves money itself. It hands SettlementIntents to a
# SettlementClient and reacts to the acknowledgment:
#
#   confirmed  funds moved; settlement_reference identifies the transfer
#   failed     permanently refused (insufficient funds, frozen account, ...)
#   pending    accepted for asynchronous processing; an ack arrives later
#
# Timeouts, connection errors, 429 and 5xx raise TransientSettlementError and
# are retried by the escrow coordinator. Settlement services must apply each
# intent at most once per intent_id; both clients here honour that.

import logging
import os
import threading
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Protocol, runtime_checkable

import requests

from models import SettlementIntent

log = logging.getLogger("keystone.escrow")

SETTLEMENT_URL = os.environ.get("KEYSTONE_SETTLEMENT_URL", "")
SETTLEMENT_TOKEN = os.environ.get("KEYSTONE_SETTLEMENT_TOKEN", "")
SETTLEMENT_TIMEOUT_SEC = float(os.environ.get("KEYSTONE_SETTLEMENT_TIMEOUT_SEC", "10"))

PLATFORM_PARTY = "platform"


class AckStatus(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class SettlementAck:
    intent_id: str
    status: str
    settlement_reference: str = ""
    reason: str = ""

    @classmethod
    def from_dict(cls, payload: dict) -> "SettlementAck":
        status = str(payload.get("status", "")).lower()
        if status not in {s.value for s in AckStatus}:
            raise ValueError(f"unknown settlement status {status!r}")
        return cls(
            intent_id=str(payload["intent_id"]),
            status=status,
            settlement_reference=str(payload.get("settlement_reference") or ""),
            reason=str(payload.get("reason") or ""),
        )


class TransientSettlementError(Exception):
    """Temporary failure talking to the settlement service. Safe to retry."""


@runtime_checkable
class SettlementClient(Protocol):
    def submit(self, intent: SettlementIntent) -> SettlementAck:
        ...


# ── HTTP client ───────────────────────────────────────────────────────

class HttpSettlementClient:
    """Talks to the external settlement service over HTTPS.

    POST {base}/intents with the intent payload and an Idempotency-Key header
    equal to the intent id.
    """

    def __init__(self, base_url: str = SETTLEMENT_URL, token: str = SETTLEMENT_TOKEN,
                 timeout: float = SETTLEMENT_TIMEOUT_SEC, session=None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self, intent_id: str) -> dict:
        headers = {"Content-Type": "application/json", "Idempotency-Key": intent_id}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def submit(self, intent: SettlementIntent) -> SettlementAck:
        try:
            resp = self.session.post(
                f"{self.base_url}/intents",
                json=intent.wire(),
                headers=self._headers(intent.intent_id),
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientSettlementError(str(e)) from e
        except requests.RequestException as e:
            raise TransientSettlementError(f"settlement request failed: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientSettlementError(f"HTTP {resp.status_code}")
        if resp.status_code == 202:
            return SettlementAck(intent.intent_id, AckStatus.PENDING.value)
        if 400 <= resp.status_code < 500:
            try:
                reason = resp.json().get("error", resp.text)
            except ValueError:
                reason = resp.text
            return SettlementAck(intent.intent_id, AckStatus.FAILED.value,
                                 reason=f"HTTP {resp.status_code}: {reason}"[:500])

        body = resp.json()
        body.setdefault("intent_id", intent.intent_id)
        return SettlementAck.from_dict(body)


# ── In-memory ledger ──────────────────────────────────────────────────

class LedgerSettlementClient:
    """Local double-entry ledger for development and tests.

    Applies each intent exactly once per intent_id and remembers the ack, so a
    resubmission returns the original result without moving funds again.

    Knobs for exercising failure paths:
      transient_failures  raise TransientSettlementError for the next N calls
      lose_response       apply the transfer, then raise as if the reply timed out
      refuse_kinds        permanently fail intents of these kinds
      deferred            answer pending; settle later with complete()
    """

    def __init__(self, transient_failures: int = 0, lose_response: int = 0,
                 refuse_kinds=(), deferred: bool = False):
        self.balances = defaultdict(lambda: Decimal("0.00"))
        self.applied: dict[str, SettlementAck] = {}
        self.calls = 0
        self.transient_failures = transient_failures
        self.lose_response = lose_response
        self.refuse_kinds = set(refuse_kinds)
        self.deferred = deferred
        self._waiting: dict[str, SettlementIntent] = {}
        self._lock = threading.Lock()

    def submit(self, intent: SettlementIntent) -> SettlementAck:
        with self._lock:
            self.calls += 1
            if self.transient_failures > 0:
                self.transient_failures -= 1
                raise TransientSettlementError("ledger temporarily unavailable")
            if intent.intent_id in self.applied:
                return self.applied[intent.intent_id]
            if intent.kind in self.refuse_kinds:
                ack = SettlementAck(intent.intent_id, AckStatus.FAILED.value,
                                    reason=f"{intent.kind} refused")
                self.applied[intent.intent_id] = ack
                return ack
            if self.deferred:
                self._waiting[intent.intent_id] = intent
                return SettlementAck(intent.intent_id, AckStatus.PENDING.value)
            ack = self._apply(intent)
            if self.lose_response > 0:
                self.lose_response -= 1
                raise TransientSettlementError("response lost after apply")
            return ack

    def complete(self, intent_id: str) -> SettlementAck:
        """Settle a deferred intent and return the ack to deliver."""
        with self._lock:
            if intent_id in self.applied:
                return self.applied[intent_id]
            return self._apply(self._waiting.pop(intent_id))

    def _apply(self, intent: SettlementIntent) -> SettlementAck:
        self.balances[intent.from_party] -= intent.amount
        self.balances[intent.to_party] += intent.amount - intent.fee
        if intent.fee:
            self.balances[PLATFORM_PARTY] += intent.fee
        ack = SettlementAck(intent.intent_id, AckStatus.CONFIRMED.value,
                            settlement_reference=f"ledger-{len(self.applied) + 1:06d}")
        self.applied[intent.intent_id] = ack
        log.debug("LEDGER %s %s %s → %s", intent.kind, intent.amount,
                  intent.from_party, intent.to_party)
        return ack

    def balance(self, party: str) -> Decimal:
        return self.balances[party]


def default_settlement_client() -> SettlementClient:
    if SETTLEMENT_URL:
        return HttpSettlementClient()
    log.warning("KEYSTONE_SETTLEMENT_URL not set, using the in-memory ledger")
    return LedgerSettlementClient()
