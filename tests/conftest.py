import pytest

import config
from AnimeHistory import WatchEvent
from SyncErrors import SubmissionFailure, TransientNetworkError
from SyncStore import SyncStore


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    # tenacity backoff and the Trakt rate limiter both sleep through time.sleep
    monkeypatch.setattr("time.sleep", lambda seconds: None)


@pytest.fixture(autouse=True)
def quiet_config(monkeypatch):
    monkeypatch.setattr(config, "SHOW_PROGRESS", False)
    monkeypatch.setattr(config, "TMDB_API_KEY", "")


@pytest.fixture
def store(tmp_path):
    return SyncStore(str(tmp_path / "store.json"))


def make_event(show_id, absolute_episode, created_at, title=None, event_id=0):
    return WatchEvent(
        source_show_id=show_id,
        show_title=title or f"Show {show_id}",
        absolute_episode=absolute_episode,
        watched_at=f"2024-01-01T00:00:{absolute_episode % 60:02d}.000Z",
        created_at=created_at,
        event_id=event_id,
    )


def make_seasons(*episode_counts, with_specials=False):
    """Trakt-style season list without absolute numbers"""
    seasons = []
    if with_specials:
        seasons.append({"number": 0, "episode_count": 2, "episodes": [{"number": 1}, {"number": 2}]})
    for index, count in enumerate(episode_counts, start=1):
        seasons.append({
            "number": index,
            "episode_count": count,
            "episodes": [{"number": n} for n in range(1, count + 1)],
        })
    return seasons


class FakeAnilist(object):
    def __init__(self, events=None, entries=None):
        self.events = list(events or [])
        self.entries = list(entries or [])
        self.cursors = []

    def getWatchedEpisodesSince(self, cursor):
        self.cursors.append(cursor)
        newer = [e for e in self.events if e.created_at > cursor]
        return sorted(newer, key=lambda e: e.created_at, reverse=True)

    def getListEntry(self, source_show_id):
        return next((e for e in self.entries if e.source_show_id == source_show_id), None)

    def getListEntries(self, statuses=("COMPLETED", "CURRENT")):
        return [e for e in self.entries if e.status in statuses]


class FakeTrakt(object):
    def __init__(self, seasons=None, search=None, search_errors=None, fail=False, dry_run=False):
        self.seasons = dict(seasons or {})
        self.search = dict(search or {})
        self.search_errors = set(search_errors or ())
        self.fail = fail
        self.dry_run = dry_run
        self.season_calls = []
        self.search_calls = []
        self.submissions = []

    def getSeasons(self, trakt_id):
        self.season_calls.append(trakt_id)
        return self.seasons.get(trakt_id)

    def searchByExternalId(self, id_type, value):
        self.search_calls.append((id_type, value))
        if id_type in self.search_errors:
            raise TransientNetworkError(f"{id_type} search timed out")
        return self.search.get((id_type, value))

    def submitHistory(self, episodes):
        episodes = list(episodes)
        self.submissions.append(episodes)
        if self.fail:
            raise SubmissionFailure("Trakt returned HTTP 503")
        return {"accepted": len(episodes), "not_found": 0, "batches": 1}


class FakeAnimeLists(object):
    def __init__(self, ids=None):
        self.ids = dict(ids or {})
        self.lookups = []

    def lookup(self, source_show_id):
        self.lookups.append(source_show_id)
        return self.ids.get(source_show_id)


class FakeHttpResponse(object):
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self.payload = payload

    def json(self):
        if self.payload is None:
            raise ValueError("no JSON")
        return self.payload


def watched_activity(activity_id, media_id, progress, created_at, status="watched episode"):
    return {
        "id": activity_id,
        "status": status,
        "progress": progress,
        "createdAt": created_at,
        "media": {"id": media_id, "title": {"romaji": f"Show {media_id}"}},
    }


class ActivityFeedSession(object):
    """
    Serves AniList activity like the real API: filtered by createdAt_greater,
    ordered by the query's sort and paged by perPage.
    """

    def __init__(self, activities):
        self.activities = list(activities)
        self.posts = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append(json)
        query, variables = json["query"], json["variables"]
        if "Viewer" in query:
            return FakeHttpResponse(200, {"data": {"Viewer": {"id": 7, "name": "tester"}}})

        newer = [a for a in self.activities if a["createdAt"] > variables["minCreatedAt"]]
        newer.sort(key=lambda a: a["id"], reverse="ID_DESC" in query)
        per_page, page = variables["perPage"], variables["page"]
        chunk = newer[(page - 1) * per_page : page * per_page]
        has_next = page * per_page < len(newer)
        return FakeHttpResponse(
            200, {"data": {"Page": {"pageInfo": {"hasNextPage": has_next}, "activities": chunk}}}
        )
