"""Lead tag merging and persistence."""

from pathlib import Path
from typing import Iterable, Optional

import structlog

from funnel_runner.core.db import DEFAULT_DB_PATH, init_db, load_data, save_data
from funnel_runner.core.schema import LeadCard, now_ms

log = structlog.get_logger()

LEAD_STORAGE_KEY = "zopLeadCards"


def normalize_tags(tags: Optional[Iterable]) -> list[str]:
    """Trim, drop empties and dedupe, keeping first-seen order."""
    seen: dict[str, None] = {}
    for tag in tags or []:
        if tag is None:
            continue
        cleaned = str(tag).strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


def merge_tags(lead: LeadCard, tags: Iterable) -> LeadCard:
    """Return a copy of `lead` with `tags` added. Unchanged lead if nothing to add."""
    normalized = normalize_tags(tags)
    if not normalized:
        return lead

    return lead.model_copy(update={
        "tags": normalize_tags([*lead.tags, *normalized]),
        "last_update_at": now_ms(),
    })


class LeadStore:
    """Lead cards stored as one mapping under a single storage key.

    Writes are read-modify-write with no compare-and-swap: two runs tagging
    the same lead at once resolve last-writer-wins.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = db_path
        init_db(db_path)

    def load_all(self) -> dict[str, dict]:
        return load_data(self.db_path, LEAD_STORAGE_KEY, {}) or {}

    def get(self, key: str) -> Optional[LeadCard]:
        store = self.load_all()
        raw = store.get(key)
        if raw is None:
            raw = next((lead for lead in store.values() if lead.get("chatId") == key), None)
        return LeadCard.model_validate(raw) if raw else None

    def save(self, lead: LeadCard) -> None:
        store = self.load_all()
        store[lead.store_key] = lead.to_wire()
        save_data(self.db_path, LEAD_STORAGE_KEY, store)
        log.info("lead_persisted", lead_id=lead.store_key, tags=lead.tags)
