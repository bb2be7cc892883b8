"""
Show mappings (AniList id -> Trakt id) and per-episode overrides.
"""

import datetime
import logging
from typing import Dict, Iterable, Optional

from SyncErrors import PersistenceWriteError
from SyncStore import SyncStore

ORIGIN_MANUAL = "manual"
ORIGIN_AUTO = "auto"


def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


class ShowMapping(object):
    def __init__(
        self,
        source_show_id: int,
        destination_show_id,
        secondary_ids: Optional[dict] = None,
        origin: str = ORIGIN_AUTO,
        title: Optional[str] = None,
        updated_at: Optional[str] = None,
    ):
        self.source_show_id = int(source_show_id)
        self.destination_show_id = destination_show_id
        self.secondary_ids = dict(secondary_ids or {})
        self.origin = origin
        self.title = title
        self.updated_at = updated_at

    @property
    def isManual(self) -> bool:
        return self.origin == ORIGIN_MANUAL

    def toDict(self) -> dict:
        return {
            "source_show_id": self.source_show_id,
            "destination_show_id": self.destination_show_id,
            "secondary_ids": self.secondary_ids,
            "origin": self.origin,
            "title": self.title,
            "updated_at": self.updated_at,
        }

    @classmethod
    def fromDict(cls, data: dict) -> "ShowMapping":
        return cls(
            data["source_show_id"],
            data.get("destination_show_id"),
            secondary_ids=data.get("secondary_ids"),
            origin=data.get("origin", ORIGIN_AUTO),
            title=data.get("title"),
            updated_at=data.get("updated_at"),
        )


class MappingStore(object):
    """Persists ShowMapping records and EpisodeOverride tables in the SyncStore"""

    MAPPING_PREFIX = "mapping:"
    OVERRIDE_PREFIX = "overrides:"

    def __init__(self, store: SyncStore):
        self.store = store

    def getMapping(self, source_show_id: int) -> Optional[ShowMapping]:
        raw = self.store.get(f"{self.MAPPING_PREFIX}{int(source_show_id)}")
        if not raw:
            return None
        return ShowMapping.fromDict(raw)

    def getMappings(self, source_show_ids: Iterable[int]) -> Dict[int, Optional[ShowMapping]]:
        ids = [int(i) for i in source_show_ids]
        raw = self.store.getMany(f"{self.MAPPING_PREFIX}{i}" for i in ids)
        result: Dict[int, Optional[ShowMapping]] = {}
        for source_show_id in ids:
            data = raw.get(f"{self.MAPPING_PREFIX}{source_show_id}")
            result[source_show_id] = ShowMapping.fromDict(data) if data else None
        return result

    def saveMapping(self, mapping: ShowMapping) -> bool:
        """
        Persist a mapping. Auto mappings never replace a manual one.

        Returns True when the record was written. A failed write is logged and
        reported as False; the caller still uses the resolved id for this run.
        """
        if not mapping.isManual:
            existing = self.getMapping(mapping.source_show_id)
            if existing is not None and existing.isManual:
                logging.info(
                    f"Keeping manual mapping for AniList {mapping.source_show_id} "
                    f"(Trakt {existing.destination_show_id})"
                )
                return False

        mapping.updated_at = _now_iso()
        try:
            self.store.set(f"{self.MAPPING_PREFIX}{mapping.source_show_id}", mapping.toDict())
        except PersistenceWriteError as e:
            logging.error(f"Could not save mapping for AniList {mapping.source_show_id}: {e}")
            return False
        return True

    def setManualMapping(self, source_show_id: int, destination_show_id, secondary_ids: Optional[dict] = None,
                         title: Optional[str] = None) -> ShowMapping:
        mapping = ShowMapping(
            source_show_id,
            destination_show_id,
            secondary_ids=secondary_ids,
            origin=ORIGIN_MANUAL,
            title=title,
        )
        mapping.updated_at = _now_iso()
        # Manual actions surface write errors to the operator
        self.store.set(f"{self.MAPPING_PREFIX}{mapping.source_show_id}", mapping.toDict())
        logging.info(f"Manual mapping saved: AniList {source_show_id} -> Trakt {destination_show_id}")
        return mapping

    def listMappings(self) -> Dict[str, list]:
        manual, auto = [], []
        for key in sorted(self.store.keys(self.MAPPING_PREFIX)):
            data = self.store.get(key)
            if not data:
                continue
            mapping = ShowMapping.fromDict(data)
            (manual if mapping.isManual else auto).append(mapping)
        return {"manual": manual, "auto": auto}

    # --- Episode overrides ---

    @staticmethod
    def _normalize_overrides(raw) -> Dict[int, dict]:
        overrides: Dict[int, dict] = {}
        for abs_number, target in (raw or {}).items():
            try:
                overrides[int(abs_number)] = {"season": int(target["season"]), "episode": int(target["episode"])}
            except (KeyError, TypeError, ValueError):
                logging.warning(f"Ignoring malformed episode override {abs_number!r}: {target!r}")
        return overrides

    def getOverrides(self, destination_show_id) -> Dict[int, dict]:
        return self._normalize_overrides(self.store.get(f"{self.OVERRIDE_PREFIX}{destination_show_id}"))

    def getOverridesMany(self, destination_show_ids: Iterable) -> Dict[object, Dict[int, dict]]:
        ids = list(destination_show_ids)
        raw = self.store.getMany(f"{self.OVERRIDE_PREFIX}{i}" for i in ids)
        return {i: self._normalize_overrides(raw.get(f"{self.OVERRIDE_PREFIX}{i}")) for i in ids}

    def setEpisodeOverride(self, destination_show_id, absolute_episode: int, season: int, episode: int):
        key = f"{self.OVERRIDE_PREFIX}{destination_show_id}"
        current = self.store.get(key) or {}
        current[str(int(absolute_episode))] = {"season": int(season), "episode": int(episode)}
        self.store.set(key, current)
        logging.info(
            f"Episode override saved: Trakt {destination_show_id} abs {absolute_episode} -> "
            f"S{int(season):02d}E{int(episode):02d}"
        )
