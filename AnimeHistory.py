import datetime
import logging
import re
from typing import List, NamedTuple, Optional

# AniList records ranged progress as "4 - 6"
_PROGRESS_RANGE = re.compile(r"^\s*(\d+)\s*-\s*(\d+)\s*$")


def _iso_from_unix(timestamp: int) -> str:
    return datetime.datetime.fromtimestamp(int(timestamp), tz=datetime.timezone.utc).strftime(
        "%Y-%m-%dT%H:%M:%S.000Z"
    )


# A single "watched episode" as reported by AniList
class WatchEvent(NamedTuple):
    source_show_id: int
    show_title: str
    absolute_episode: int
    watched_at: str
    created_at: int
    event_id: int = 0


# An entry in the user's AniList anime list
class ListEntry(NamedTuple):
    source_show_id: int
    show_title: str
    progress: int
    status: str
    updated_at: int = 0
    completed_at: Optional[str] = None

    def watchedAt(self) -> str:
        """Completion date when known, otherwise the last list update"""
        if self.completed_at:
            return self.completed_at
        if self.updated_at:
            return _iso_from_unix(self.updated_at)
        return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def parse_progress(progress) -> List[int]:
    """
    Turn an activity's progress field into the absolute episodes it covers.

    "5" -> [5], "4 - 6" -> [4, 5, 6]. Unparseable values yield [].
    """
    if progress is None:
        return []
    if isinstance(progress, int):
        return [progress] if progress > 0 else []
    text = str(progress).strip()
    match = _PROGRESS_RANGE.match(text)
    if match:
        first, last = int(match.group(1)), int(match.group(2))
        if first > last:
            first, last = last, first
        return [n for n in range(first, last + 1) if n > 0]
    try:
        number = int(text)
    except ValueError:
        logging.debug(f"Unparseable AniList progress value: {progress!r}")
        return []
    return [number] if number > 0 else []


def events_from_activity(activity: dict) -> List[WatchEvent]:
    """Convert one AniList ListActivity into WatchEvents (one per episode)"""
    if not isinstance(activity, dict) or activity.get("status") != "watched episode":
        return []
    media = activity.get("media") or {}
    created_at = activity.get("createdAt")
    if not media.get("id") or created_at is None:
        logging.debug(f"Skipping activity without media id or timestamp: {activity.get('id')}")
        return []

    title = (media.get("title") or {}).get("romaji") or str(media["id"])
    watched_at = _iso_from_unix(created_at)
    return [
        WatchEvent(
            source_show_id=int(media["id"]),
            show_title=title,
            absolute_episode=episode,
            watched_at=watched_at,
            created_at=int(created_at),
            event_id=int(activity.get("id") or 0),
        )
        for episode in parse_progress(activity.get("progress"))
    ]


def sort_oldest_first(events: List[WatchEvent]) -> List[WatchEvent]:
    return sorted(events, key=lambda e: (e.created_at, e.event_id, e.absolute_episode))


def entry_from_list_item(item: dict) -> Optional[ListEntry]:
    media = item.get("media") or {}
    media_id = item.get("mediaId") or media.get("id")
    if not media_id:
        return None
    titles = media.get("title") or {}
    completed = item.get("completedAt") or {}
    completed_at = None
    if completed.get("year") and completed.get("month") and completed.get("day"):
        completed_at = datetime.datetime(
            completed["year"], completed["month"], completed["day"], tzinfo=datetime.timezone.utc
        ).strftime("%Y-%m-%dT%H:%M:%S.000Z")
    return ListEntry(
        source_show_id=int(media_id),
        show_title=titles.get("romaji") or titles.get("english") or str(media_id),
        progress=int(item.get("progress") or 0),
        status=item.get("status") or "",
        updated_at=int(item.get("updatedAt") or 0),
        completed_at=completed_at,
    )


def events_from_list_entry(entry: ListEntry) -> List[WatchEvent]:
    """Synthesize one event per episode up to the entry's progress"""
    watched_at = entry.watchedAt()
    return [
        WatchEvent(
            source_show_id=entry.source_show_id,
            show_title=entry.show_title,
            absolute_episode=episode,
            watched_at=watched_at,
            created_at=entry.updated_at,
        )
        for episode in range(1, entry.progress + 1)
    ]
