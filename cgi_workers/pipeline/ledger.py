"""
Credit Ledger — one integer balance per account.

Two backends share the same contract:
  1. RedisCreditLedger — balances in Redis strings, reserve is a
     WATCH/MULTI compare-and-swap loop so concurrent reserves on the same
     account cannot both pass a balance check only one can satisfy.
  2. InMemoryCreditLedger — per-account threading locks; used when Redis
     is not configured, and in tests.

Balances never go negative: the only decrement is reserve(), which
checks and subtracts indivisibly.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict

import redis

from .errors import InsufficientCredits, ValidationError

logger = logging.getLogger(__name__)

KEY_PREFIX = "credits:"
MAX_CAS_RETRIES = 50


def _check_amount(amount: int):
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError(f"Credit amount must be a positive integer, got {amount!r}")


class CreditLedger(ABC):
    """Atomic reserve/refund/grant over per-account balances."""

    @abstractmethod
    def balance(self, account_id: str) -> int:
        ...

    @abstractmethod
    def reserve(self, account_id: str, amount: int) -> int:
        """Subtract `amount` or raise InsufficientCredits. Returns the new balance."""

    @abstractmethod
    def refund(self, account_id: str, amount: int) -> int:
        """Add `amount` back. Always succeeds. Returns the new balance."""

    def grant(self, account_id: str, amount: int) -> int:
        """Credit purchase path; identical semantics to refund."""
        return self.refund(account_id, amount)


# ── In-memory ─────────────────────────────────────────────────────────────────

class InMemoryCreditLedger(CreditLedger):

    def __init__(self, initial: Dict[str, int] | None = None):
        self._balances: Dict[str, int] = defaultdict(int)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        for account_id, amount in (initial or {}).items():
            if amount < 0:
                raise ValidationError(f"Initial balance for {account_id} is negative")
            self._balances[account_id] = amount

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.Lock()
            return lock

    def balance(self, account_id: str) -> int:
        # Plain read; unknown accounts get neither a balance entry nor a lock
        return self._balances.get(account_id, 0)

    def reserve(self, account_id: str, amount: int) -> int:
        _check_amount(amount)
        with self._lock_for(account_id):
            current = self._balances.get(account_id, 0)
            if current < amount:
                raise InsufficientCredits(required=amount, available=current)
            self._balances[account_id] = current - amount
            new_balance = self._balances[account_id]
        logger.info(f"Reserved {amount} credit(s) for {account_id}, balance {new_balance}")
        return new_balance

    def refund(self, account_id: str, amount: int) -> int:
        _check_amount(amount)
        with self._lock_for(account_id):
            self._balances[account_id] += amount
            new_balance = self._balances[account_id]
        logger.info(f"Refunded {amount} credit(s) to {account_id}, balance {new_balance}")
        return new_balance


# ── Redis ─────────────────────────────────────────────────────────────────────

class RedisCreditLedger(CreditLedger):
    """
    Balances stored at `credits:{account_id}`.

    reserve() uses optimistic locking: WATCH the key, read, and only
    DECRBY inside MULTI if the key was untouched in between. A concurrent
    writer aborts the transaction with WatchError and we retry.
    """

    def __init__(self, redis_client):
        self._redis = redis_client

    @staticmethod
    def _key(account_id: str) -> str:
        return f"{KEY_PREFIX}{account_id}"

    def balance(self, account_id: str) -> int:
        raw = self._redis.get(self._key(account_id))
        return int(raw) if raw is not None else 0

    def reserve(self, account_id: str, amount: int) -> int:
        _check_amount(amount)
        key = self._key(account_id)

        for attempt in range(MAX_CAS_RETRIES):
            with self._redis.pipeline() as pipe:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    current = int(raw) if raw is not None else 0
                    if current < amount:
                        pipe.unwatch()
                        raise InsufficientCredits(required=amount, available=current)

                    pipe.multi()
                    pipe.decrby(key, amount)
                    new_balance = pipe.execute()[0]
                    logger.info(f"Reserved {amount} credit(s) for {account_id}, balance {new_balance}")
                    return int(new_balance)
                except redis.WatchError:
                    logger.debug(f"Balance for {account_id} changed during reserve, retry {attempt + 1}")
                    continue

        raise RuntimeError(f"Could not reserve credits for {account_id}: too much contention")

    def refund(self, account_id: str, amount: int) -> int:
        _check_amount(amount)
        new_balance = int(self._redis.incrby(self._key(account_id), amount))
        logger.info(f"Refunded {amount} credit(s) to {account_id}, balance {new_balance}")
        return new_balance
