"""
Resolves AniList show ids to Trakt show ids.

Order of lookups, first success wins:
1. manual mapping in the MappingStore
2. previously saved auto mapping
3. cross-reference datasets (AnimeLists) for secondary ids
4. optional TMDB expansion of those ids (best effort)
5. the strategy chain: direct Trakt id, then Trakt search by tmdb, imdb, tvdb
"""

import logging
from typing import Dict, List, Optional

from tmdbv3api import TV, TMDb
from tmdbv3api.exceptions import TMDbException

import config
from MappingStore import ORIGIN_AUTO, MappingStore, ShowMapping
from SyncErrors import NotFoundError, TransientNetworkError, ValidationError

MOVIE_TYPE = "movie"


def is_movie(ids: dict) -> bool:
    return ids.get("type") == MOVIE_TYPE


class KnownTraktIdStrategy(object):
    """Use a Trakt id that the cross-reference already carries"""

    name = "trakt"

    def tryResolve(self, ids: dict) -> Optional[int]:
        trakt_id = ids.get("trakt")
        try:
            return int(trakt_id) if trakt_id else None
        except (TypeError, ValueError):
            logging.debug(f"Ignoring non-numeric Trakt id {trakt_id!r}")
            return None


class ExternalIdStrategy(object):
    """Exact-match search on Trakt by one external id type"""

    def __init__(self, trakt_io, id_type: str):
        self.trakt_io = trakt_io
        self.id_type = id_type
        self.name = id_type

    def tryResolve(self, ids: dict) -> Optional[int]:
        value = ids.get(self.id_type)
        if not value:
            return None
        if self.id_type == "tmdb" and is_movie(ids):
            # TMDB movie and TV ids are separate namespaces; Trakt is searched for shows
            return None
        return self.trakt_io.searchByExternalId(self.id_type, value)


def default_strategies(trakt_io) -> list:
    return [
        KnownTraktIdStrategy(),
        ExternalIdStrategy(trakt_io, "tmdb"),
        ExternalIdStrategy(trakt_io, "imdb"),
        ExternalIdStrategy(trakt_io, "tvdb"),
    ]


def setupTMDB() -> TMDb:
    tmdb_instance = TMDb()
    tmdb_instance.api_key = config.TMDB_API_KEY
    tmdb_instance.language = config.TMDB_LANGUAGE
    tmdb_instance.debug = config.TMDB_DEBUG
    return tmdb_instance


class TmdbIdExpander(object):
    """Adds imdb/tvdb ids found on TMDB for a show's tmdb id"""

    def __init__(self, tv_api=None):
        if tv_api is None:
            setupTMDB()
            tv_api = TV()
        self.tv_api = tv_api

    def expand(self, tmdb_id) -> Dict[str, object]:
        result = self.tv_api.external_ids(int(tmdb_id))
        if hasattr(result, "get"):
            data = result
        else:
            data = getattr(result, "__dict__", {}) or {}
        expanded = {}
        if data.get("imdb_id"):
            expanded["imdb"] = data.get("imdb_id")
        if data.get("tvdb_id"):
            expanded["tvdb"] = data.get("tvdb_id")
        return expanded


class IdResolver(object):
    def __init__(self, mapping_store: MappingStore, anime_lists, trakt_io, tmdb_expander=None,
                 strategies: Optional[List] = None):
        self.mapping_store = mapping_store
        self.anime_lists = anime_lists
        self.tmdb_expander = tmdb_expander
        if self.tmdb_expander is None and config.TMDB_API_KEY:
            self.tmdb_expander = TmdbIdExpander()
        self.strategies = strategies if strategies is not None else default_strategies(trakt_io)

    def _expand_ids(self, source_show_id, ids: dict) -> dict:
        if not ids.get("tmdb") or self.tmdb_expander is None or is_movie(ids):
            return ids
        try:
            extra = self.tmdb_expander.expand(ids["tmdb"])
        except (TMDbException, TransientNetworkError, ValueError, OSError) as e:
            logging.warning(f"TMDB id expansion failed for AniList {source_show_id}: {e}")
            return ids
        merged = dict(ids)
        for id_type, value in extra.items():
            # Cross-reference values win over TMDB
            if value and not merged.get(id_type):
                merged[id_type] = value
        return merged

    def _secondary_ids(self, source_show_id) -> dict:
        ids = self.anime_lists.lookup(source_show_id)
        if ids is None:
            raise NotFoundError(f"AniList {source_show_id} is not in the cross-reference datasets")
        usable = {k: v for k, v in ids.items() if v}
        if not any(k != "type" for k in usable):
            raise ValidationError(f"Cross-reference entry for AniList {source_show_id} has no usable ids")
        return usable

    def resolve(self, source_show_id: int, title: Optional[str] = None,
                mapping: Optional[ShowMapping] = None) -> int:
        """
        Return the Trakt show id for an AniList show.

        `mapping` can be passed in when the caller already bulk-read it. Raises
        NotFoundError (or its ValidationError subclass) when no strategy finds a
        match; the caller skips the show for this run.
        """
        if mapping is None:
            mapping = self.mapping_store.getMapping(source_show_id)
        if mapping is not None and mapping.destination_show_id:
            logging.debug(
                f"Using {mapping.origin} mapping for AniList {source_show_id} -> Trakt {mapping.destination_show_id}"
            )
            return mapping.destination_show_id

        ids = self._expand_ids(source_show_id, self._secondary_ids(source_show_id))

        for strategy in self.strategies:
            try:
                trakt_id = strategy.tryResolve(ids)
            except TransientNetworkError as e:
                logging.warning(f"Trakt {strategy.name} lookup for AniList {source_show_id} unavailable: {e}")
                continue
            if not trakt_id:
                continue

            logging.info(f"Resolved AniList {source_show_id} -> Trakt {trakt_id} via {strategy.name}")
            self.mapping_store.saveMapping(
                ShowMapping(source_show_id, trakt_id, secondary_ids=ids, origin=ORIGIN_AUTO, title=title)
            )
            return trakt_id

        raise NotFoundError(f"No Trakt match for AniList {source_show_id} with ids {ids}")
