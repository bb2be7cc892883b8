"""
Community cross-reference datasets that link AniList ids to TMDB, IMDb, TVDB
and (sometimes) Trakt ids.

Two datasets are used:
- Fribb/anime-lists (anime-list-full.json)
- Otaku-Mappings (anime_mappings.db, an SQLite file that can also carry Trakt ids)

Both are downloaded to a local cache directory and refreshed after
config.ANIME_LISTS_TTL_DAYS days.
"""

import json
import logging
import os
import sqlite3
import time
from typing import Dict, Optional

import requests
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

import config
from SyncErrors import TransientNetworkError, ValidationError

ID_TYPES = ("trakt", "tmdb", "imdb", "tvdb")


def _clean_id(value):
    if value in (None, "", 0, "0"):
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


class AnimeLists(object):
    FRIBB_FILE = "anime-list-full.json"
    OTAKU_FILE = "anime_mappings.db"

    def __init__(self, cache_dir: Optional[str] = None, ttl_days: Optional[int] = None,
                 session: Optional[requests.Session] = None):
        self.cache_dir = cache_dir or config.ANIME_LISTS_CACHE_DIR
        self.ttl = (ttl_days if ttl_days is not None else config.ANIME_LISTS_TTL_DAYS) * 24 * 60 * 60
        self.session = session or requests.Session()
        self._fribb: Optional[Dict[str, dict]] = None
        self._otaku: Optional[Dict[str, dict]] = None

    def _path(self, name: str) -> str:
        return os.path.join(self.cache_dir, name)

    def _is_fresh(self, path: str) -> bool:
        return os.path.exists(path) and (time.time() - os.path.getmtime(path)) < self.ttl

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=2, min=2, max=30),
        retry=retry_if_exception_type(TransientNetworkError),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
        reraise=True,
    )
    def _download(self, url: str, path: str):
        logging.info(f"Downloading cross-reference dataset {url}")
        try:
            response = self.session.get(url, timeout=config.HTTP_TIMEOUT * 3)
        except requests.RequestException as e:
            raise TransientNetworkError(f"Download of {url} failed: {e}") from e
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkError(f"Download of {url} returned HTTP {response.status_code}")
        if response.status_code != 200:
            raise ValidationError(f"Download of {url} returned HTTP {response.status_code}")
        if len(response.content) < 1024:
            raise ValidationError(f"Download of {url} is suspiciously small ({len(response.content)} bytes)")

        os.makedirs(self.cache_dir, exist_ok=True)
        tmp_path = path + ".tmp"
        with open(tmp_path, "wb") as f:
            f.write(response.content)
        os.replace(tmp_path, path)

    def _ensure_file(self, url: str, name: str, force: bool = False) -> Optional[str]:
        """Return a local path for the dataset, downloading when stale. None if unavailable."""
        path = self._path(name)
        if not force and self._is_fresh(path):
            return path
        try:
            self._download(url, path)
        except (TransientNetworkError, ValidationError, OSError) as e:
            if os.path.exists(path):
                logging.warning(f"Could not refresh {name} ({e}); using the stale copy")
                return path
            logging.error(f"Could not download {name}: {e}")
            return None
        return path

    def _load_fribb(self, force: bool = False) -> Dict[str, dict]:
        if self._fribb is not None and not force:
            return self._fribb
        self._fribb = {}
        path = self._ensure_file(config.FRIBB_LIST_URL, self.FRIBB_FILE, force)
        if path is None:
            return self._fribb
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logging.error(f"Failed to parse {path}: {e}")
            return self._fribb
        for item in data:
            anilist_id = item.get("anilist_id")
            if not anilist_id:
                continue
            self._fribb[str(anilist_id)] = {
                "tmdb": _clean_id(item.get("themoviedb_id")),
                "imdb": _clean_id(item.get("imdb_id")),
                "tvdb": _clean_id(item.get("thetvdb_id")),
                "type": str(item["type"]).lower() if item.get("type") else None,
            }
        logging.info(f"Loaded {len(self._fribb)} Fribb anime-list entries")
        return self._fribb

    def _load_otaku(self, force: bool = False) -> Dict[str, dict]:
        if self._otaku is not None and not force:
            return self._otaku
        self._otaku = {}
        path = self._ensure_file(config.OTAKU_DB_URL, self.OTAKU_FILE, force)
        if path is None:
            return self._otaku
        try:
            connection = sqlite3.connect(path)
            try:
                rows = connection.execute(
                    "SELECT anilist_id, thetvdb_id, themoviedb_id, imdb_id, trakt_id, anime_media_type "
                    "FROM anime WHERE anilist_id IS NOT NULL"
                ).fetchall()
            finally:
                connection.close()
        except sqlite3.Error as e:
            logging.error(f"Failed to read {path}: {e}")
            return self._otaku
        for anilist_id, tvdb_id, tmdb_id, imdb_id, trakt_id, media_type in rows:
            self._otaku[str(anilist_id)] = {
                "trakt": _clean_id(trakt_id),
                "tmdb": _clean_id(tmdb_id),
                "imdb": _clean_id(imdb_id),
                "tvdb": _clean_id(tvdb_id),
                "type": str(media_type).lower() if media_type else None,
            }
        logging.info(f"Loaded {len(self._otaku)} Otaku mapping entries")
        return self._otaku

    def refresh(self) -> Dict[str, int]:
        """Force both datasets to be downloaded again"""
        return {
            "fribb": len(self._load_fribb(force=True)),
            "otaku": len(self._load_otaku(force=True)),
        }

    def lookup(self, source_show_id: int) -> Optional[dict]:
        """
        Return the known secondary ids for an AniList show, or None if neither
        dataset knows it. Otaku values win; Fribb fills the gaps.

        The media type ("tv", "movie", "ova", ...) is returned under "type" when
        a dataset has it, since a movie's tmdb id is not a TV id.
        """
        key = str(int(source_show_id))
        otaku = self._load_otaku().get(key)
        fribb = self._load_fribb().get(key)
        if otaku is None and fribb is None:
            return None

        ids: Dict[str, object] = {}
        for source in (fribb or {}, otaku or {}):
            for field in ID_TYPES + ("type",):
                value = source.get(field)
                if value is not None:
                    ids[field] = value
        return ids
