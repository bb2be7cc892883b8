"""
Configuration for the AniList to Trakt sync.

Values are read from config.ini (see config.ini.example) and can be overridden
by environment variables of the same upper-case name.
"""

import configparser
import os

CONFIG_FILE = os.environ.get("ANILIST2TRAKT_CONFIG", "config.ini")

_parser = configparser.ConfigParser()
_parser.read(CONFIG_FILE)


def _get(section: str, key: str, default=None):
    env_value = os.environ.get(key)
    if env_value is not None:
        return env_value
    return _parser.get(section, key, fallback=default)


def _get_int(section: str, key: str, default: int) -> int:
    value = _get(section, key, None)
    if value is None or value == "":
        return default
    return int(value)


def _get_bool(section: str, key: str, default: bool) -> bool:
    value = _get(section, key, None)
    if value is None or value == "":
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# Trakt
TRAKT_API_CLIENT_ID = _get("Trakt", "TRAKT_API_CLIENT_ID", "")
TRAKT_API_CLIENT_SECRET = _get("Trakt", "TRAKT_API_CLIENT_SECRET", "")
TRAKT_AUTH_FILE = _get("Trakt", "TRAKT_AUTH_FILE", "traktAuth.json")
TRAKT_API_SYNC_PAGE_SIZE = _get_int("Trakt", "TRAKT_API_SYNC_PAGE_SIZE", 500)
TRAKT_API_DRY_RUN = _get_bool("Trakt", "TRAKT_API_DRY_RUN", False)
TRAKT_API_MAX_RETRIES = _get_int("Trakt", "TRAKT_API_MAX_RETRIES", 3)

# AniList
ANILIST_ACCESS_TOKEN = _get("AniList", "ANILIST_ACCESS_TOKEN", "")
ANILIST_API_URL = _get("AniList", "ANILIST_API_URL", "https://graphql.anilist.co")
ANILIST_PAGE_SIZE = _get_int("AniList", "ANILIST_PAGE_SIZE", 50)
ANILIST_MAX_PAGES = _get_int("AniList", "ANILIST_MAX_PAGES", 10)
ANILIST_VIEWER_TTL = _get_int("AniList", "ANILIST_VIEWER_TTL", 600)
ANILIST_MAX_RETRIES = _get_int("AniList", "ANILIST_MAX_RETRIES", 3)

# TMDB (optional, only used to expand secondary ids)
TMDB_API_KEY = _get("TMDB", "TMDB_API_KEY", "")
TMDB_LANGUAGE = _get("TMDB", "TMDB_LANGUAGE", "en")
TMDB_DEBUG = _get_bool("TMDB", "TMDB_DEBUG", False)

# Cross-reference datasets
FRIBB_LIST_URL = _get(
    "AnimeLists",
    "FRIBB_LIST_URL",
    "https://raw.githubusercontent.com/Fribb/anime-lists/master/anime-list-full.json",
)
OTAKU_DB_URL = _get(
    "AnimeLists",
    "OTAKU_DB_URL",
    "https://github.com/Goldenfreddy0703/Otaku-Mappings/raw/refs/heads/main/anime_mappings.db",
)
ANIME_LISTS_CACHE_DIR = _get("AnimeLists", "ANIME_LISTS_CACHE_DIR", "anime_lists_cache")
ANIME_LISTS_TTL_DAYS = _get_int("AnimeLists", "ANIME_LISTS_TTL_DAYS", 7)

# Storage
STORE_FILE = _get("Storage", "STORE_FILE", "sync_store.json")
BREAKPOINT_MAP_TTL_DAYS = _get_int("Storage", "BREAKPOINT_MAP_TTL_DAYS", 7)
RUN_LOCK_TTL = _get_int("Storage", "RUN_LOCK_TTL", 1800)

# Network
HTTP_TIMEOUT = float(_get("Network", "HTTP_TIMEOUT", 20))

# Logging / UI
LOG_FILENAME = _get("Logging", "LOG_FILENAME", "anilist2trakt.log")
LOG_LEVEL = _get("Logging", "LOG_LEVEL", "INFO")
SHOW_PROGRESS = _get_bool("Logging", "SHOW_PROGRESS", True)
