import json
import os
import sqlite3

import config

from AnimeLists import AnimeLists


class FakeResponse(object):
    def __init__(self, status_code, content=b""):
        self.status_code = status_code
        self.content = content


class FakeSession(object):
    def __init__(self, responses):
        self.responses = dict(responses)
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        return self.responses.get(url, FakeResponse(404))


def write_fribb(cache_dir, entries):
    with open(os.path.join(cache_dir, AnimeLists.FRIBB_FILE), "w", encoding="utf-8") as f:
        json.dump(entries, f)


def write_otaku(cache_dir, rows):
    connection = sqlite3.connect(os.path.join(cache_dir, AnimeLists.OTAKU_FILE))
    connection.execute(
        "CREATE TABLE anime (anilist_id INTEGER, thetvdb_id INTEGER, themoviedb_id INTEGER, "
        "imdb_id TEXT, trakt_id INTEGER, anime_media_type TEXT)"
    )
    connection.executemany("INSERT INTO anime VALUES (?, ?, ?, ?, ?, ?)", rows)
    connection.commit()
    connection.close()


def test_lookup_merges_datasets(tmp_path):
    cache_dir = str(tmp_path)
    write_fribb(cache_dir, [
        {"anilist_id": 21, "themoviedb_id": 37854, "imdb_id": "tt0388629", "thetvdb_id": 81797, "type": "TV"},
        {"anilist_id": 30, "themoviedb_id": 1000, "type": "TV"},
    ])
    write_otaku(cache_dir, [(21, None, 37854, None, 37696, "TV")])
    lists = AnimeLists(cache_dir=cache_dir, session=FakeSession({}))

    assert lists.lookup(21) == {"trakt": 37696, "tmdb": 37854, "imdb": "tt0388629", "tvdb": 81797, "type": "tv"}
    assert lists.lookup(30) == {"tmdb": 1000, "type": "tv"}
    assert lists.lookup(99) is None
    assert lists.session.urls == []


def test_lookup_carries_media_type(tmp_path):
    cache_dir = str(tmp_path)
    write_fribb(cache_dir, [
        {"anilist_id": 20954, "themoviedb_id": 378064, "imdb_id": "tt5323662", "type": "MOVIE"},
        {"anilist_id": 40, "themoviedb_id": 2000, "type": "OVA"},
    ])
    write_otaku(cache_dir, [(40, None, None, None, None, "Movie")])
    lists = AnimeLists(cache_dir=cache_dir, session=FakeSession({}))

    assert lists.lookup(20954)["type"] == "movie"
    assert lists.lookup(40) == {"tmdb": 2000, "type": "movie"}


def test_missing_datasets_give_no_matches(tmp_path):
    lists = AnimeLists(cache_dir=str(tmp_path), session=FakeSession({}))
    assert lists.lookup(21) is None


def test_stale_copy_used_when_download_fails(tmp_path):
    cache_dir = str(tmp_path)
    write_fribb(cache_dir, [{"anilist_id": 21, "themoviedb_id": 37854}])
    lists = AnimeLists(cache_dir=cache_dir, ttl_days=0, session=FakeSession({}))

    assert lists.lookup(21) == {"tmdb": 37854}
    assert len(lists.session.urls) == 2


def test_refresh_downloads(tmp_path):
    entries = [{"anilist_id": n, "themoviedb_id": n * 10} for n in range(1, 60)]
    content = json.dumps(entries).encode("utf-8")
    session = FakeSession({config.FRIBB_LIST_URL: FakeResponse(200, content)})
    lists = AnimeLists(cache_dir=str(tmp_path / "cache"), session=session)

    counts = lists.refresh()

    assert counts == {"fribb": 59, "otaku": 0}
    assert lists.lookup(5) == {"tmdb": 50}
