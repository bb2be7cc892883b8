"""
Breakpoint maps: converting AniList absolute episode numbers into Trakt
season/episode pairs.
"""

import logging
from typing import Dict, Iterable, List, NamedTuple, Optional

import config
from SyncErrors import PersistenceWriteError, TransientNetworkError
from SyncStore import SyncStore


class Breakpoint(NamedTuple):
    """A Trakt season and the absolute episode at which it starts"""

    season: int
    starts_at: int


class EpisodeNumber(NamedTuple):
    season: int
    episode: int


# A watch event ready to be written to Trakt history
class TranslatedEpisode(NamedTuple):
    destination_show_id: int
    season: int
    episode: int
    watched_at: str
    source_show_id: int
    absolute_episode: int


def _absolute_number(episode) -> Optional[int]:
    if not isinstance(episode, dict):
        return None
    value = episode.get("number_abs")
    if value is None:
        value = episode.get("absolute_number")
    try:
        value = int(value)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def build_breakpoint_map(seasons: Iterable[dict]) -> List[Breakpoint]:
    """
    Build the breakpoint map for a show from Trakt season metadata.

    Specials (season 0) are dropped and the rest are walked in season order.
    A season whose episodes carry absolute numbers starts at the smallest one,
    and the next season is projected to start right after its largest one.
    A season without absolute numbers starts at the running projection, which
    then grows by the season's episode_count (or its episode list length when
    Trakt does not report a count).
    """
    regular = [s for s in seasons or [] if isinstance(s, dict) and (s.get("number") or 0) > 0]
    regular.sort(key=lambda s: s["number"])

    breakpoints: List[Breakpoint] = []
    next_projected_start = 1
    for season in regular:
        episodes = season.get("episodes") or []
        absolute_numbers = [n for n in (_absolute_number(ep) for ep in episodes) if n is not None]

        if absolute_numbers:
            starts_at = min(absolute_numbers)
            next_projected_start = max(absolute_numbers) + 1
        else:
            starts_at = next_projected_start
            next_projected_start += season.get("episode_count") or len(episodes)

        breakpoints.append(Breakpoint(int(season["number"]), starts_at))
    return breakpoints


def translate_episode(absolute_episode: int, breakpoint_map: Iterable[Breakpoint],
                      overrides: Optional[Dict[int, dict]] = None) -> EpisodeNumber:
    """
    Translate an absolute episode number into a Trakt season/episode pair.

    A manual override for the episode always wins. Otherwise the breakpoint with
    the largest starts_at not above the episode is used, preferring the higher
    season when two breakpoints start at the same episode. Episodes before the
    first breakpoint fall back to S01E01.
    """
    if overrides:
        override = overrides.get(absolute_episode)
        if override is None:
            override = overrides.get(str(absolute_episode))
        if override is not None:
            return EpisodeNumber(int(override["season"]), int(override["episode"]))

    best: Optional[Breakpoint] = None
    for entry in breakpoint_map or []:
        season, starts_at = int(entry[0]), int(entry[1])
        if starts_at > absolute_episode:
            continue
        if best is None or (starts_at, season) > (best.starts_at, best.season):
            best = Breakpoint(season, starts_at)

    if best is None:
        return EpisodeNumber(1, 1)
    return EpisodeNumber(best.season, absolute_episode - best.starts_at + 1)


class BreakpointMapBuilder(object):
    """Builds breakpoint maps from Trakt and caches them in the SyncStore"""

    PREFIX = "map:"

    def __init__(self, trakt_io, store: SyncStore, ttl_days: Optional[int] = None):
        self.trakt_io = trakt_io
        self.store = store
        self.ttl = (ttl_days if ttl_days is not None else config.BREAKPOINT_MAP_TTL_DAYS) * 24 * 60 * 60

    def build(self, destination_show_id) -> Optional[List[Breakpoint]]:
        """Return the breakpoint map for a Trakt show, or None when it cannot be built"""
        cache_key = f"{self.PREFIX}{destination_show_id}"
        cached = self.store.get(cache_key)
        if cached:
            logging.debug(f"Map cache hit for Trakt {destination_show_id}")
            return [Breakpoint(int(e["season"]), int(e["starts_at"])) for e in cached]

        logging.info(f"Map cache miss for Trakt {destination_show_id}, fetching seasons")
        try:
            seasons = self.trakt_io.getSeasons(destination_show_id)
        except TransientNetworkError as e:
            logging.error(f"Failed to fetch Trakt seasons for {destination_show_id}: {e}")
            return None
        if seasons is None:
            logging.error(f"Trakt returned no season data for {destination_show_id}")
            return None

        breakpoint_map = build_breakpoint_map(seasons)
        if not breakpoint_map:
            logging.warning(f"Trakt {destination_show_id} has no regular seasons, cannot build a map")
            return None

        try:
            self.store.set(
                cache_key,
                [{"season": b.season, "starts_at": b.starts_at} for b in breakpoint_map],
                ttl=self.ttl,
            )
        except PersistenceWriteError as e:
            logging.warning(f"Could not cache map for Trakt {destination_show_id}: {e}")
        return breakpoint_map
