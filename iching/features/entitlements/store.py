"""
iching/features/entitlements/store.py

Client-side entitlement store.

Tracks free uses and paid status, and decides when a reading needs payment.
The key-value store is the single source of truth: every mutation re-reads the
persisted record, writes the next state, and only then updates the in-memory view.
"""

import json
import logging
import threading
from typing import Callable, Optional

from pydantic import ValidationError as ModelValidationError

from iching.core.config import settings
from iching.features.storage.kv import KeyValueStore
from iching.models.payment import EntitlementState, PricingMode


logger = logging.getLogger("iching")

STATE_KEY = "iching_payment_state_v1"


class EntitlementStore:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        pricing_mode: Optional[PricingMode] = None,
        free_limit: Optional[int] = None,
        key: str = STATE_KEY,
    ):
        self.kv = kv
        self.pricing_mode = PricingMode(pricing_mode or settings.PRICING_MODE)
        self.free_limit = settings.FREE_USES_LIMIT if free_limit is None else free_limit
        self.key = key
        self._lock = threading.Lock()
        self._state = self._read()

    @property
    def state(self) -> EntitlementState:
        return self._state

    def reload(self) -> EntitlementState:
        """Discard the in-memory view and re-read the persisted record."""
        with self._lock:
            self._state = self._read()
            return self._state

    def _read(self) -> EntitlementState:
        raw = self.kv.get(self.key)
        if raw is None:
            return EntitlementState.default(self.free_limit)
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("entitlement record is not an object")
            return EntitlementState.model_validate(data)
        except (ValueError, ModelValidationError) as e:
            # JSONDecodeError is a ValueError
            logger.warning(
                "entitlement.state_malformed",
                extra={"key": self.key, "error": str(e)[:200]},
            )
            return EntitlementState.default(self.free_limit)

    def _commit(self, mutate: Callable[[EntitlementState], Optional[EntitlementState]]) -> Optional[EntitlementState]:
        with self._lock:
            current = self._read()
            nxt = mutate(current)
            if nxt is None:
                self._state = current
                return None
            self.kv.set(self.key, nxt.to_json())
            self._state = nxt
            return nxt

    def can_use_free(self) -> bool:
        return self._state.free_uses_remaining > 0

    def needs_payment(self) -> bool:
        if self.pricing_mode is PricingMode.UNLIMITED:
            return not self.can_use_free() and not self._state.has_paid
        return not self.can_use_free()

    def consume_free_use(self) -> bool:
        """Use one free reading. Returns False, with nothing written, when none are left."""
        def mutate(s: EntitlementState) -> Optional[EntitlementState]:
            if s.free_uses_remaining <= 0:
                return None
            return s.model_copy(update={
                "free_uses_remaining": s.free_uses_remaining - 1,
                "total_uses": s.total_uses + 1,
            })

        return self._commit(mutate) is not None

    def mark_paid(self) -> EntitlementState:
        """Record a verified payment. Call only after verification succeeded."""
        def mutate(s: EntitlementState) -> EntitlementState:
            update = {"total_uses": s.total_uses + 1}
            if self.pricing_mode is PricingMode.UNLIMITED:
                update["has_paid"] = True
            return s.model_copy(update=update)

        state = self._commit(mutate)
        logger.info(
            "entitlement.marked_paid",
            extra={"pricing_mode": self.pricing_mode.value, "total_uses": state.total_uses},
        )
        return state
