"""Local divination history, newest first."""
import json
import logging
import time
from typing import List, Optional

from pydantic import ValidationError as ModelValidationError

from iching.core.config import settings
from iching.features.storage.kv import KeyValueStore
from iching.models.divination import DivinationRequest, DivinationResponse, HistoryItem


logger = logging.getLogger("iching")

HISTORY_KEY = "iching_history_v1"


class HistoryStore:
    def __init__(self, kv: KeyValueStore, *, max_items: Optional[int] = None, key: str = HISTORY_KEY):
        self.kv = kv
        self.max_items = settings.HISTORY_MAX if max_items is None else max_items
        self.key = key

    def load(self) -> List[HistoryItem]:
        raw = self.kv.get(self.key)
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("history.malformed", extra={"key": self.key})
            return []
        if not isinstance(parsed, list):
            return []

        items = []
        for entry in parsed:
            try:
                items.append(HistoryItem.model_validate(entry))
            except ModelValidationError:
                continue
        return items

    def add(
        self,
        request: DivinationRequest,
        response: DivinationResponse,
        timestamp_ms: Optional[int] = None,
    ) -> List[HistoryItem]:
        item = HistoryItem(
            timestamp=timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
            n1=request.n1,
            n2=request.n2,
            n3=request.n3,
            question=request.question,
            hexagram_name=response.hexagram_name,
            changing_line=response.changing_line,
            lower_trigram=response.lower_trigram,
            upper_trigram=response.upper_trigram,
            explanation=response.explanation,
        )
        items = [item] + self.load()
        items = items[: self.max_items]
        self.kv.set(
            self.key,
            json.dumps([i.model_dump(mode="json", by_alias=True) for i in items], ensure_ascii=False),
        )
        return items
