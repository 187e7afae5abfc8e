"""Account selection across upstream accounts, weighted by active connections."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 5.0
RETRY_401_COOLDOWN = 5 * 60.0
RETRY_403_COOLDOWN = 24 * 60 * 60.0


@dataclass
class Account:
    """An upstream account."""

    id: int = 0
    name: str = ""
    email: str = ""
    session_id: str = ""
    account_type: str = ""
    agent_mode: str = ""
    weight: int = 1
    status_code: str = ""
    last_attempt: float | None = None
    quota_reset_at: float | None = None


class AccountStore(Protocol):
    """Persistence the load balancer relies on."""

    def get_enabled_accounts(self) -> list[Account]: ...

    def get_model_by_model_id(self, model_id: str) -> Any: ...

    def increment_request_count(self, account_id: int) -> None: ...

    def update_account(self, account: Account) -> None: ...


class NoAccountAvailable(Exception):
    """No enabled account matches the request."""


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "*" * len(value)
    return value[:4] + "****" + value[-4:]


class LoadBalancer:
    """Picks the least-loaded available account, breaking ties at random."""

    def __init__(
        self,
        store: AccountStore | None = None,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
        on_status_cleared: Callable[[Account], None] | None = None,
    ) -> None:
        self.store = store
        self.cache_ttl = cache_ttl if cache_ttl > 0 else DEFAULT_CACHE_TTL
        self._clock = clock
        self._rng = rng or random.Random()
        self._on_status_cleared = on_status_cleared
        self._lock = threading.Lock()
        self._fetch_lock = threading.Lock()
        self._conn_lock = threading.Lock()
        self._cached: list[Account] = []
        self._cache_expires = 0.0
        self._active: dict[int, int] = {}

    def get_model_channel(self, model_id: str) -> str:
        if self.store is None:
            return ""
        try:
            model = self.store.get_model_by_model_id(model_id)
        except Exception:
            return ""
        if model is None:
            return ""
        return getattr(model, "channel", "") or ""

    def get_next_account(self, exclude_ids: Iterable[int], channel: str) -> Account:
        """Select and claim an account for the channel, skipping excluded ids."""
        excluded = set(exclude_ids)
        candidates = []
        for acc in self._enabled_accounts():
            if acc.id in excluded or not self.is_account_available(acc):
                continue
            if channel:
                acc_type = acc.account_type if acc.account_type.strip() else "orchids"
                if acc_type.lower() != channel.lower() and acc.agent_mode.lower() != channel.lower():
                    continue
            candidates.append(acc)

        if not candidates:
            raise NoAccountAvailable(f"no enabled accounts available for channel: {channel}")

        account = self.select_account(candidates)
        logger.info(
            "Selected account %s (%s), session %s",
            account.name, account.email, _mask(account.session_id),
        )
        if self.store is not None:
            self.store.increment_request_count(account.id)
        return account

    def _enabled_accounts(self) -> list[Account]:
        with self._fetch_lock:
            now = self._clock()
            with self._lock:
                if self._cached and now < self._cache_expires:
                    return [replace(a) for a in self._cached]
            if self.store is None:
                return []
            accounts = list(self.store.get_enabled_accounts())
            with self._lock:
                self._cached = accounts
                self._cache_expires = self._clock() + self.cache_ttl
            return [replace(a) for a in accounts]

    def select_account(self, accounts: list[Account]) -> Account | None:
        """Pick among accounts with the lowest connections-per-weight score."""
        if not accounts:
            return None
        if len(accounts) == 1:
            return accounts[0]
        best: list[Account] = []
        min_score = 0.0
        for acc in accounts:
            weight = acc.weight if acc.weight > 0 else 1
            score = self.active_connections(acc.id) / weight
            if not best or score < min_score:
                best = [acc]
                min_score = score
            elif score == min_score:
                best.append(acc)
        return self._rng.choice(best)

    def acquire_connection(self, account_id: int) -> None:
        with self._conn_lock:
            self._active[account_id] = self._active.get(account_id, 0) + 1

    def release_connection(self, account_id: int) -> None:
        with self._conn_lock:
            current = self._active.get(account_id)
            if current is not None and current > 0:
                self._active[account_id] = current - 1

    def active_connections(self, account_id: int) -> int:
        with self._conn_lock:
            return self._active.get(account_id, 0)

    def is_account_available(self, account: Account) -> bool:
        """Whether the account may be used; clears expired error statuses."""
        status = account.status_code.strip()
        if not status:
            return True
        if account.last_attempt is None:
            return False
        cooldown = RETRY_403_COOLDOWN if status in ("403", "404") else RETRY_401_COOLDOWN
        if self._clock() - account.last_attempt >= cooldown:
            if status in ("401", "403", "404"):
                reason = f"{status} cooldown finished, retrying"
            else:
                reason = f"{status} unknown status cooldown finished, retrying"
            self._clear_account_status(account, reason)
            return True
        return False

    def _clear_account_status(self, account: Account, reason: str) -> None:
        if self._on_status_cleared is not None:
            self._on_status_cleared(account)
        with self._lock:
            account.status_code = ""
            account.last_attempt = None
            account.quota_reset_at = None
        self._persist(account, reason)

    def mark_account_status(self, account: Account | None, status: str) -> None:
        """Record a failure status on the account and persist it."""
        if account is None or self.store is None or not status:
            return
        with self._lock:
            if account.status_code == status:
                return
            account.status_code = status
            account.last_attempt = self._clock()
        self._persist(account, f"background refresh failed: {status}")

    def _persist(self, account: Account, reason: str) -> None:
        if self.store is None:
            return
        try:
            self.store.update_account(account)
        except Exception as exc:
            logger.warning("Account %s status update failed (%s): %s", account.id, reason, exc)
            return
        logger.info("Account %s status now %r (%s)", account.id, account.status_code, reason)