"""
Per-show sync watermarks and the global activity cursor.
"""

import datetime
import logging
from typing import Dict, Iterable, List, NamedTuple

from SyncStore import SyncStore

CURSOR_KEY = "cursor:lastSyncTimestamp"


class SyncState(NamedTuple):
    """State carried between runs: the AniList createdAt cursor for the next fetch"""

    cursor: int = 0


def loadSyncState(store: SyncStore) -> SyncState:
    raw = store.get(CURSOR_KEY)
    try:
        return SyncState(cursor=int(raw or 0))
    except (TypeError, ValueError):
        logging.warning(f"Ignoring unreadable cursor value {raw!r}")
        return SyncState()


def saveSyncState(store: SyncStore, state: SyncState):
    store.set(CURSOR_KEY, int(state.cursor))
    logging.info(f"Saved new lastSyncTimestamp: {state.cursor}")


class SyncProgressTracker(object):
    """
    Tracks the highest absolute episode confirmed synced for each AniList show.

    The watermark never moves backwards: `commit` ignores any value below the
    stored one. Callers only commit after Trakt has confirmed the write.
    """

    PREFIX = "progress:"

    def __init__(self, store: SyncStore):
        self.store = store

    def _key(self, source_show_id) -> str:
        return f"{self.PREFIX}{int(source_show_id)}"

    @staticmethod
    def _watermark(raw) -> int:
        if isinstance(raw, dict):
            raw = raw.get("last_abs")
        try:
            return max(0, int(raw or 0))
        except (TypeError, ValueError):
            return 0

    def get(self, source_show_id) -> int:
        return self._watermark(self.store.get(self._key(source_show_id)))

    def getMany(self, source_show_ids: Iterable) -> Dict[int, int]:
        ids = [int(i) for i in source_show_ids]
        raw = self.store.getMany(self._key(i) for i in ids)
        return {i: self._watermark(raw.get(self._key(i))) for i in ids}

    def commit(self, source_show_id, new_watermark: int) -> bool:
        """
        Store a new watermark for a show.

        Returns False (and leaves the stored value alone) when new_watermark is
        lower than what is already stored. Raises PersistenceWriteError when the
        store cannot be written.
        """
        current = self.get(source_show_id)
        new_watermark = int(new_watermark)
        if new_watermark < current:
            logging.warning(
                f"Refusing to move watermark for AniList {source_show_id} back from {current} to {new_watermark}"
            )
            return False
        if new_watermark == current:
            return True
        self.store.set(
            self._key(source_show_id),
            {
                "last_abs": new_watermark,
                "updated_at": datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z"),
            },
        )
        logging.debug(f"Watermark for AniList {source_show_id}: {current} -> {new_watermark}")
        return True

    def list(self, limit: int = 50) -> List[dict]:
        rows = []
        for key in self.store.keys(self.PREFIX):
            raw = self.store.get(key) or {}
            rows.append({
                "source_show_id": int(key[len(self.PREFIX):]),
                "last_abs": self._watermark(raw),
                "updated_at": raw.get("updated_at") if isinstance(raw, dict) else None,
            })
        rows.sort(key=lambda row: row["updated_at"] or "", reverse=True)
        return rows[:limit]
