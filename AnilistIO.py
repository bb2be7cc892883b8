"""
AniList GraphQL client: the source side of the sync.
"""

import hashlib
import logging
import time
from typing import Dict, Iterable, List, Optional, Tuple

import requests
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

import config
from AnimeHistory import ListEntry, WatchEvent, entry_from_list_item, events_from_activity
from SyncErrors import TransientNetworkError, ValidationError

VIEWER_QUERY = "query { Viewer { id name } }"

ACTIVITIES_QUERY = """
query($userId: Int, $minCreatedAt: Int, $page: Int, $perPage: Int) {
  Page(page: $page, perPage: $perPage) {
    pageInfo { hasNextPage }
    activities(userId: $userId, type: ANIME_LIST, sort: ID, createdAt_greater: $minCreatedAt) {
      ... on ListActivity {
        id
        status
        progress
        createdAt
        media { id title { romaji } }
      }
    }
  }
}
"""

LIST_QUERY = """
query($userId: Int, $statuses: [MediaListStatus]) {
  MediaListCollection(userId: $userId, type: ANIME, status_in: $statuses) {
    lists {
      entries {
        mediaId
        status
        progress
        updatedAt
        completedAt { year month day }
        media { id title { romaji english } }
      }
    }
  }
}
"""

ENTRY_QUERY = """
query($userId: Int, $mediaId: Int) {
  MediaList(userId: $userId, mediaId: $mediaId, type: ANIME) {
    mediaId
    status
    progress
    updatedAt
    completedAt { year month day }
    media { id title { romaji english } }
  }
}
"""


class AnilistIO(object):
    """
    Reads the authenticated user's watch activity from AniList.

    The viewer lookup ("who am I") is memoized per access token for a short
    time, so one run only asks once and a rotated token is looked up again.
    """

    def __init__(self, access_token: Optional[str] = None, session: Optional[requests.Session] = None,
                 viewer_ttl: Optional[int] = None):
        self.access_token = access_token if access_token is not None else config.ANILIST_ACCESS_TOKEN
        self.api_url = config.ANILIST_API_URL
        self.session = session or requests.Session()
        self.viewer_ttl = viewer_ttl if viewer_ttl is not None else config.ANILIST_VIEWER_TTL
        # token digest -> (expires_at, viewer dict)
        self._viewer_cache: Dict[str, Tuple[float, dict]] = {}

    def _credential_key(self) -> str:
        return hashlib.sha256((self.access_token or "").encode("utf-8")).hexdigest()

    @retry(
        stop=stop_after_attempt(config.ANILIST_MAX_RETRIES),
        wait=wait_exponential(multiplier=1, min=1, max=20),
        retry=retry_if_exception_type(TransientNetworkError),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
        reraise=True,
    )
    def _query(self, query: str, variables: Optional[dict] = None) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        try:
            response = self.session.post(
                self.api_url,
                json={"query": query, "variables": variables or {}},
                headers=headers,
                timeout=config.HTTP_TIMEOUT,
            )
        except requests.RequestException as e:
            raise TransientNetworkError(f"AniList request failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientNetworkError(f"AniList returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as e:
            raise ValidationError(f"AniList returned non-JSON body (HTTP {response.status_code})") from e
        if response.status_code != 200 or payload.get("errors"):
            messages = [err.get("message") for err in payload.get("errors") or []]
            raise ValidationError(f"AniList query failed (HTTP {response.status_code}): {messages}")
        return payload.get("data") or {}

    def getViewer(self) -> dict:
        """Return {"id", "name"} for the authenticated user"""
        key = self._credential_key()
        cached = self._viewer_cache.get(key)
        now = time.time()
        if cached is not None and cached[0] > now:
            return cached[1]

        viewer = self._query(VIEWER_QUERY).get("Viewer")
        if not viewer or not viewer.get("id"):
            raise ValidationError("Could not authenticate with ANILIST_ACCESS_TOKEN")
        logging.info(f"AniList authenticated as: {viewer.get('name')} (ID: {viewer.get('id')})")
        self._viewer_cache = {k: v for k, v in self._viewer_cache.items() if v[0] > now}
        self._viewer_cache[key] = (now + self.viewer_ttl, viewer)
        return viewer

    def getWatchedEpisodesSince(self, cursor: int) -> List[WatchEvent]:
        """
        Fetch "watched episode" activity newer than cursor.

        Pages are requested oldest first, so when ANILIST_MAX_PAGES cuts the
        fetch short it is the newest activity that waits for the next run. The
        cap applies once the fetched events span at least two createdAt seconds.
        The result is returned newest first, like the AniList activity feed.
        """
        user_id = self.getViewer()["id"]
        events: List[WatchEvent] = []
        page = 1
        truncated = False
        while True:
            data = self._query(
                ACTIVITIES_QUERY,
                {
                    "userId": user_id,
                    "minCreatedAt": int(cursor or 0),
                    "page": page,
                    "perPage": config.ANILIST_PAGE_SIZE,
                },
            )
            page_data = data.get("Page") or {}
            for activity in page_data.get("activities") or []:
                events.extend(events_from_activity(activity))
            if not (page_data.get("pageInfo") or {}).get("hasNextPage"):
                break
            # Stop at the cap only once the newest second can be held back
            if page >= config.ANILIST_MAX_PAGES and len({e.created_at for e in events}) > 1:
                truncated = True
                break
            page += 1

        if truncated:
            # The next page may hold more activity with the same createdAt as the
            # newest event here; leave that second for the next run.
            newest = max(e.created_at for e in events)
            events = [e for e in events if e.created_at < newest]
            logging.warning(
                f"Stopped after {page} activity pages; activity after "
                f"{max(e.created_at for e in events)} will be picked up next run"
            )

        logging.info(f"AniList returned {len(events)} watched episodes since {cursor}")
        return list(reversed(events))

    def getListEntries(self, statuses: Iterable[str] = ("COMPLETED", "CURRENT")) -> List[ListEntry]:
        user_id = self.getViewer()["id"]
        data = self._query(LIST_QUERY, {"userId": user_id, "statuses": list(statuses)})
        entries: List[ListEntry] = []
        for media_list in (data.get("MediaListCollection") or {}).get("lists") or []:
            for item in media_list.get("entries") or []:
                entry = entry_from_list_item(item)
                if entry is not None:
                    entries.append(entry)
        return entries

    def getListEntry(self, source_show_id: int) -> Optional[ListEntry]:
        user_id = self.getViewer()["id"]
        try:
            data = self._query(ENTRY_QUERY, {"userId": user_id, "mediaId": int(source_show_id)})
        except ValidationError as e:
            # AniList answers 404 when the show is not on the user's list
            logging.info(f"No AniList list entry for {source_show_id}: {e}")
            return None
        item = data.get("MediaList")
        return entry_from_list_item(item) if item else None
