import pytest
from tmdbv3api.exceptions import TMDbException

from IdResolver import ExternalIdStrategy, IdResolver, KnownTraktIdStrategy, TmdbIdExpander
from MappingStore import ORIGIN_AUTO, MappingStore, ShowMapping
from SyncErrors import NotFoundError, ValidationError

from conftest import FakeAnimeLists, FakeTrakt


class FakeExpander(object):
    def __init__(self, extra=None, error=None):
        self.extra = extra or {}
        self.error = error
        self.calls = []

    def expand(self, tmdb_id):
        self.calls.append(tmdb_id)
        if self.error:
            raise self.error
        return self.extra


def make_resolver(store, ids=None, trakt=None, expander=None):
    mappings = MappingStore(store)
    lists = FakeAnimeLists(ids)
    trakt = trakt or FakeTrakt()
    return IdResolver(mappings, lists, trakt, tmdb_expander=expander), mappings, lists, trakt


def test_manual_mapping_short_circuits(store):
    resolver, mappings, lists, trakt = make_resolver(store, ids={21: {"trakt": 37696}})
    mappings.setManualMapping(21, 500)

    assert resolver.resolve(21) == 500
    assert lists.lookups == []
    assert trakt.search_calls == []


def test_cached_auto_mapping_short_circuits(store):
    resolver, mappings, lists, trakt = make_resolver(store)
    mappings.saveMapping(ShowMapping(21, 37696))

    assert resolver.resolve(21) == 37696
    assert lists.lookups == []


def test_prefetched_mapping_is_used(store):
    resolver, mappings, lists, trakt = make_resolver(store)
    assert resolver.resolve(21, mapping=ShowMapping(21, 42)) == 42
    assert lists.lookups == []


def test_missing_from_cross_reference(store):
    resolver, mappings, lists, trakt = make_resolver(store)
    with pytest.raises(NotFoundError):
        resolver.resolve(21)
    assert mappings.getMapping(21) is None


def test_entry_without_ids_is_validation_error(store):
    resolver, mappings, lists, trakt = make_resolver(store, ids={21: {"tmdb": None, "imdb": None}})
    with pytest.raises(ValidationError):
        resolver.resolve(21)


def test_known_trakt_id_used_directly_and_saved(store):
    resolver, mappings, lists, trakt = make_resolver(store, ids={21: {"trakt": 37696, "tmdb": 37854}})

    assert resolver.resolve(21, title="One Piece") == 37696
    assert trakt.search_calls == []

    saved = mappings.getMapping(21)
    assert saved.destination_show_id == 37696
    assert saved.origin == ORIGIN_AUTO
    assert saved.secondary_ids == {"trakt": 37696, "tmdb": 37854}
    assert saved.title == "One Piece"

    # second call is answered from the store
    resolver.resolve(21)
    assert lists.lookups == [21]


def test_search_order_stops_at_first_match(store):
    trakt = FakeTrakt(search={("imdb", "tt0388629"): 37696, ("tvdb", 81797): 1})
    resolver, mappings, lists, _ = make_resolver(
        store, ids={21: {"tmdb": 37854, "imdb": "tt0388629", "tvdb": 81797}}, trakt=trakt
    )

    assert resolver.resolve(21) == 37696
    assert trakt.search_calls == [("tmdb", 37854), ("imdb", "tt0388629")]


def test_transient_search_error_tries_next_id_type(store):
    trakt = FakeTrakt(search={("imdb", "tt0388629"): 37696}, search_errors={"tmdb"})
    resolver, mappings, lists, _ = make_resolver(
        store, ids={21: {"tmdb": 37854, "imdb": "tt0388629"}}, trakt=trakt
    )

    assert resolver.resolve(21) == 37696
    assert [call[0] for call in trakt.search_calls] == ["tmdb", "imdb"]


def test_no_match_is_not_found_and_not_saved(store):
    resolver, mappings, lists, trakt = make_resolver(store, ids={21: {"tmdb": 37854, "tvdb": 81797}})
    with pytest.raises(NotFoundError):
        resolver.resolve(21)
    assert mappings.getMapping(21) is None
    assert [call[0] for call in trakt.search_calls] == ["tmdb", "tvdb"]


def test_tmdb_expansion_adds_ids(store):
    trakt = FakeTrakt(search={("imdb", "tt0388629"): 37696})
    expander = FakeExpander(extra={"imdb": "tt0388629", "tvdb": 81797})
    resolver, mappings, lists, _ = make_resolver(store, ids={21: {"tmdb": 37854}}, trakt=trakt, expander=expander)

    assert resolver.resolve(21) == 37696
    assert expander.calls == [37854]
    assert mappings.getMapping(21).secondary_ids["imdb"] == "tt0388629"


def test_tmdb_expansion_does_not_replace_known_ids(store):
    expander = FakeExpander(extra={"imdb": "tt9999999"})
    trakt = FakeTrakt(search={("imdb", "tt0388629"): 37696})
    resolver, mappings, lists, _ = make_resolver(
        store, ids={21: {"tmdb": 37854, "imdb": "tt0388629"}}, trakt=trakt, expander=expander
    )
    assert resolver.resolve(21) == 37696


def test_tmdb_expansion_failure_is_swallowed(store):
    trakt = FakeTrakt(search={("tmdb", 37854): 37696})
    expander = FakeExpander(error=TMDbException("Invalid API key"))
    resolver, mappings, lists, _ = make_resolver(store, ids={21: {"tmdb": 37854}}, trakt=trakt, expander=expander)

    assert resolver.resolve(21) == 37696


def test_custom_strategy_order(store):
    trakt = FakeTrakt(search={("tvdb", 81797): 5, ("tmdb", 37854): 6})
    mappings = MappingStore(store)
    resolver = IdResolver(
        mappings,
        FakeAnimeLists({21: {"tmdb": 37854, "tvdb": 81797}}),
        trakt,
        strategies=[ExternalIdStrategy(trakt, "tvdb"), ExternalIdStrategy(trakt, "tmdb")],
    )
    assert resolver.resolve(21) == 5


def test_known_trakt_id_strategy_ignores_garbage():
    assert KnownTraktIdStrategy().tryResolve({"trakt": "abc"}) is None
    assert KnownTraktIdStrategy().tryResolve({}) is None
    assert KnownTraktIdStrategy().tryResolve({"trakt": "42"}) == 42


def test_tmdb_expander_reads_external_ids():
    class FakeTV(object):
        def external_ids(self, tmdb_id):
            return {"id": tmdb_id, "imdb_id": "tt0388629", "tvdb_id": 81797, "facebook_id": None}

    assert TmdbIdExpander(tv_api=FakeTV()).expand("37854") == {"imdb": "tt0388629", "tvdb": 81797}


def test_movie_entry_skips_tmdb_search_and_expansion(store):
    trakt = FakeTrakt(search={("tmdb", 378064): 99, ("imdb", "tt5323662"): 37696})
    expander = FakeExpander(extra={"tvdb": 1})
    resolver, mappings, lists, _ = make_resolver(
        store, ids={20954: {"tmdb": 378064, "imdb": "tt5323662", "type": "movie"}}, trakt=trakt, expander=expander
    )

    assert resolver.resolve(20954) == 37696
    assert trakt.search_calls == [("imdb", "tt5323662")]
    assert expander.calls == []


def test_movie_entry_with_only_tmdb_is_not_matched(store):
    trakt = FakeTrakt(search={("tmdb", 378064): 99})
    resolver, mappings, lists, _ = make_resolver(
        store, ids={20954: {"tmdb": 378064, "type": "movie"}}, trakt=trakt, expander=FakeExpander()
    )

    with pytest.raises(NotFoundError):
        resolver.resolve(20954)
    assert trakt.search_calls == []
    assert mappings.getMapping(20954) is None


def test_tv_entry_still_searches_by_tmdb(store):
    trakt = FakeTrakt(search={("tmdb", 37854): 37696})
    expander = FakeExpander()
    resolver, mappings, lists, _ = make_resolver(
        store, ids={21: {"tmdb": 37854, "type": "tv"}}, trakt=trakt, expander=expander
    )

    assert resolver.resolve(21) == 37696
    assert trakt.search_calls == [("tmdb", 37854)]
    assert expander.calls == [37854]


def test_entry_with_only_a_type_is_validation_error(store):
    resolver, mappings, lists, trakt = make_resolver(store, ids={21: {"tmdb": None, "type": "tv"}})
    with pytest.raises(ValidationError):
        resolver.resolve(21)
