#!/usr/bin/env python3

"""
Sync AniList episode activity to Trakt history.

A run moves through FETCHING -> RESOLVING -> TRANSLATING -> SUBMITTING ->
COMMITTING -> DONE. Per-show watermarks and the global activity cursor are
only advanced after Trakt has confirmed the history write, so a failed run is
simply retried by the next one.
"""

import argparse
import datetime
import json
import logging
import sys
import time
from collections import OrderedDict, deque
from typing import Dict, Iterable, List, Optional, Tuple

from tqdm import tqdm

import config
from AnilistIO import AnilistIO
from AnimeHistory import ListEntry, WatchEvent, events_from_list_entry, sort_oldest_first
from AnimeLists import AnimeLists
from EpisodeMap import BreakpointMapBuilder, TranslatedEpisode, translate_episode
from IdResolver import IdResolver
from MappingStore import MappingStore
from SyncErrors import (
    NotFoundError,
    PersistenceWriteError,
    SubmissionFailure,
    SyncAlreadyRunning,
    TransientNetworkError,
    ValidationError,
)
from SyncProgress import SyncProgressTracker, SyncState, loadSyncState, saveSyncState
from SyncStore import SyncStore
from TraktIO import TraktIO

FETCHING = "FETCHING"
RESOLVING = "RESOLVING"
TRANSLATING = "TRANSLATING"
SUBMITTING = "SUBMITTING"
COMMITTING = "COMMITTING"
DONE = "DONE"

RUN_KINDS = ("sync", "show", "library")


def last_run_key(kind: str) -> str:
    return f"status:{kind}:last-run"


LAST_RUN_KEY = last_run_key("sync")


class SyncReport(object):
    """Structured summary of one run"""

    def __init__(self, kind: str = "sync"):
        self.kind = kind
        self.state = FETCHING
        self.found = 0
        self.translated = 0
        self.skipped_unmapped = 0
        self.skipped_already_synced = 0
        self.accepted = 0
        self.not_found = 0
        self.failed = False
        self.error: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "kind": self.kind,
            "state": self.state,
            "found": self.found,
            "translated": self.translated,
            "skipped_unmapped": self.skipped_unmapped,
            "skipped_already_synced": self.skipped_already_synced,
            "accepted": self.accepted,
            "not_found": self.not_found,
            "failed": self.failed,
            "error": self.error,
        }

    def summary(self) -> str:
        lines = [
            f"AniList episodes found: {self.found}",
            f"Episodes translated: {self.translated}",
            f"Skipped (unmapped show): {self.skipped_unmapped}",
            f"Skipped (already synced): {self.skipped_already_synced}",
            f"Accepted by Trakt: {self.accepted}",
        ]
        if self.not_found:
            lines.append(f"Not found on Trakt: {self.not_found}")
        if self.failed:
            lines.append(f"FAILED: {self.error}")
        return "\n".join(lines)


class SyncRunner(object):
    def __init__(self, anilist_io, resolver: IdResolver, map_builder: BreakpointMapBuilder,
                 mapping_store: MappingStore, progress: SyncProgressTracker, trakt_io):
        self.anilist_io = anilist_io
        self.resolver = resolver
        self.map_builder = map_builder
        self.mapping_store = mapping_store
        self.progress = progress
        self.trakt_io = trakt_io

    @property
    def dry_run(self) -> bool:
        return bool(getattr(self.trakt_io, "dry_run", False))

    def run(self, state: SyncState, now: Optional[int] = None) -> Tuple[SyncState, SyncReport]:
        """
        Sync all activity newer than state.cursor.

        Returns the state for the next run and the report. Source fetch errors
        propagate. A failed Trakt write returns the input state unchanged.
        """
        report = SyncReport("sync")
        run_started = int(now if now is not None else time.time())

        events = self.anilist_io.getWatchedEpisodesSince(state.cursor)
        if not events:
            report.state = DONE
            logging.info("No new AniList activity")
            return SyncState(cursor=max(state.cursor, run_started)), report

        events = sort_oldest_first(events)
        report.found = len(events)
        if not self._process(events, report):
            return state, report

        newest = max(event.created_at for event in events)
        return SyncState(cursor=max(state.cursor, newest)), report

    def run_backfill(self, entries: Iterable[ListEntry], kind: str = "library") -> SyncReport:
        """Sync list entries up to their current progress. The cursor is not touched."""
        report = SyncReport(kind)
        events: List[WatchEvent] = []
        for entry in entries:
            events.extend(events_from_list_entry(entry))
        report.found = len(events)
        if not events:
            report.state = DONE
            return report
        self._process(sort_oldest_first(events), report)
        return report

    def _resolve_shows(self, events: List[WatchEvent], report: SyncReport) -> Dict[int, int]:
        report.state = RESOLVING
        titles: "OrderedDict[int, str]" = OrderedDict()
        for event in events:
            titles.setdefault(event.source_show_id, event.show_title)

        mappings = self.mapping_store.getMappings(titles.keys())
        destinations: Dict[int, int] = {}
        for source_show_id in tqdm(titles, desc="Resolving AniList shows on Trakt",
                                   disable=not config.SHOW_PROGRESS):
            try:
                destinations[source_show_id] = self.resolver.resolve(
                    source_show_id, title=titles[source_show_id], mapping=mappings.get(source_show_id)
                )
            except (NotFoundError, TransientNetworkError) as e:
                logging.warning(f"Skipping '{titles[source_show_id]}' (AniList {source_show_id}): {e}")
        return destinations

    def _process(self, events: List[WatchEvent], report: SyncReport) -> bool:
        """Resolve, translate, submit and commit. Returns False when the submission failed."""
        destinations = self._resolve_shows(events, report)

        report.state = TRANSLATING
        watermarks = self.progress.getMany(destinations.keys())
        overrides = self.mapping_store.getOverridesMany(set(destinations.values()))
        maps: Dict[int, Optional[list]] = {}
        staged: Dict[int, int] = {}
        translated: List[TranslatedEpisode] = []

        for event in events:
            source_show_id = event.source_show_id
            destination_show_id = destinations.get(source_show_id)
            if destination_show_id is None:
                report.skipped_unmapped += 1
                continue

            watermark = max(watermarks.get(source_show_id, 0), staged.get(source_show_id, 0))
            if event.absolute_episode <= watermark:
                report.skipped_already_synced += 1
                continue

            if destination_show_id not in maps:
                maps[destination_show_id] = self.map_builder.build(destination_show_id)
                if maps[destination_show_id] is None:
                    logging.warning(
                        f"Skipping '{event.show_title}' for this run: no episode map for Trakt {destination_show_id}"
                    )
            breakpoint_map = maps[destination_show_id]
            if breakpoint_map is None:
                report.skipped_unmapped += 1
                continue

            number = translate_episode(
                event.absolute_episode, breakpoint_map, overrides.get(destination_show_id)
            )
            logging.debug(
                f"{event.show_title} #{event.absolute_episode} -> S{number.season:02d}E{number.episode:02d}"
            )
            translated.append(
                TranslatedEpisode(
                    destination_show_id=destination_show_id,
                    season=number.season,
                    episode=number.episode,
                    watched_at=event.watched_at,
                    source_show_id=source_show_id,
                    absolute_episode=event.absolute_episode,
                )
            )
            staged[source_show_id] = event.absolute_episode

        report.translated = len(translated)
        if not translated:
            report.state = DONE
            logging.info("Nothing new to submit to Trakt")
            return True

        report.state = SUBMITTING
        try:
            result = self.trakt_io.submitHistory(translated)
        except SubmissionFailure as e:
            report.failed = True
            report.error = str(e)
            logging.error(f"Trakt submission failed, no progress committed: {e}")
            return False
        report.accepted = int(result.get("accepted") or 0)
        report.not_found = int(result.get("not_found") or 0)

        report.state = COMMITTING
        if self.dry_run:
            logging.info(f"Dry run: not committing progress for {len(staged)} shows")
        else:
            self._commit(staged)
        report.state = DONE
        return True

    def _commit(self, staged: Dict[int, int]):
        for source_show_id, watermark in staged.items():
            try:
                self.progress.commit(source_show_id, watermark)
            except PersistenceWriteError as e:
                logging.error(f"Could not save progress for AniList {source_show_id}: {e}")


def build_runner(store: SyncStore) -> SyncRunner:
    trakt_io = TraktIO()
    mapping_store = MappingStore(store)
    resolver = IdResolver(mapping_store, AnimeLists(), trakt_io)
    return SyncRunner(
        AnilistIO(),
        resolver,
        BreakpointMapBuilder(trakt_io, store),
        mapping_store,
        SyncProgressTracker(store),
        trakt_io,
    )


def _record_last_run(store: SyncStore, report: SyncReport):
    status = report.as_dict()
    status["finished_at"] = datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")
    try:
        store.set(last_run_key(report.kind), status)
    except PersistenceWriteError as e:
        logging.warning(f"Could not record last run status: {e}")


def sync_once(runner: SyncRunner, store: SyncStore, now: Optional[int] = None) -> SyncReport:
    """One full incremental run under the run lock"""
    with store.runLock():
        state = loadSyncState(store)
        logging.info(f"Starting sync from cursor {state.cursor}")
        new_state, report = runner.run(state, now=now)
        if new_state != state and not runner.dry_run:
            try:
                saveSyncState(store, new_state)
            except PersistenceWriteError as e:
                logging.error(f"Could not save cursor {new_state.cursor}: {e}")
        _record_last_run(store, report)
    return report


def sync_show(runner: SyncRunner, store: SyncStore, source_show_id: int) -> SyncReport:
    """Sync one show up to its current AniList progress"""
    with store.runLock():
        entry = runner.anilist_io.getListEntry(source_show_id)
        if entry is None:
            report = SyncReport("show")
            report.state = DONE
            logging.info(f"AniList {source_show_id} is not on the user's list")
            return report
        report = runner.run_backfill([entry], kind="show")
        _record_last_run(store, report)
    return report


def sync_library(runner: SyncRunner, store: SyncStore,
                 statuses: Iterable[str] = ("COMPLETED", "CURRENT")) -> SyncReport:
    """Backfill every list entry with one of the given statuses"""
    with store.runLock():
        entries = runner.anilist_io.getListEntries(statuses)
        logging.info(f"Backfilling {len(entries)} AniList entries ({', '.join(statuses)})")
        report = runner.run_backfill(entries, kind="library")
        _record_last_run(store, report)
    return report


def tail_log(filename: str, lines: int = 50) -> List[str]:
    try:
        with open(filename, "r", encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=lines)]
    except FileNotFoundError:
        return []


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync AniList episode activity to Trakt")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("sync", help="Sync new AniList activity (default)")

    show = sub.add_parser("show", help="Sync one show up to its AniList progress")
    show.add_argument("anilist_id", type=int)

    library = sub.add_parser("library", help="Backfill list entries")
    library.add_argument("--status", action="append", dest="statuses",
                         help="AniList list status, may be repeated (default COMPLETED and CURRENT)")

    sub.add_parser("mappings", help="List show mappings")

    mapping = sub.add_parser("map", help="Set a manual AniList -> Trakt mapping")
    mapping.add_argument("anilist_id", type=int)
    mapping.add_argument("trakt_id", type=int)
    mapping.add_argument("--title")

    override = sub.add_parser("override", help="Pin an absolute episode to a Trakt season/episode")
    override.add_argument("trakt_id", type=int)
    override.add_argument("absolute_episode", type=int)
    override.add_argument("season", type=int)
    override.add_argument("episode", type=int)

    progress = sub.add_parser("progress", help="Show sync progress")
    progress.add_argument("anilist_id", type=int, nargs="?")

    logs = sub.add_parser("logs", help="Print the end of the log file")
    logs.add_argument("-n", "--lines", type=int, default=50)

    sub.add_parser("refresh-lists", help="Download the cross-reference datasets again")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point: parses arguments, wires the collaborators, runs the command"""
    args = _build_parser().parse_args(argv)
    command = args.command or "sync"

    # Set up logging
    logging.basicConfig(
        filename=config.LOG_FILENAME,
        level=config.LOG_LEVEL,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    if command == "logs":
        for line in tail_log(config.LOG_FILENAME, args.lines):
            print(line)
        return 0

    if command == "refresh-lists":
        counts = AnimeLists().refresh()
        print(f"Fribb entries: {counts['fribb']}, Otaku entries: {counts['otaku']}")
        return 0

    store = SyncStore()
    mapping_store = MappingStore(store)

    if command == "mappings":
        mappings = mapping_store.listMappings()
        for origin in ("manual", "auto"):
            print(f"{origin.capitalize()} mappings ({len(mappings[origin])}):")
            for m in mappings[origin]:
                print(f"  AniList {m.source_show_id} -> Trakt {m.destination_show_id}  {m.title or ''}")
        return 0

    if command == "map":
        mapping_store.setManualMapping(args.anilist_id, args.trakt_id, title=args.title)
        print(f"AniList {args.anilist_id} now maps to Trakt {args.trakt_id}")
        return 0

    if command == "override":
        mapping_store.setEpisodeOverride(args.trakt_id, args.absolute_episode, args.season, args.episode)
        print(f"Trakt {args.trakt_id} episode {args.absolute_episode} -> S{args.season:02d}E{args.episode:02d}")
        return 0

    if command == "progress":
        tracker = SyncProgressTracker(store)
        if args.anilist_id is not None:
            print(f"AniList {args.anilist_id}: last synced episode {tracker.get(args.anilist_id)}")
        else:
            print(json.dumps({"cursor": loadSyncState(store).cursor, "shows": tracker.list()}, indent=2))
            for kind in RUN_KINDS:
                last_run = store.get(last_run_key(kind))
                if last_run:
                    print(f"Last {kind} run: {json.dumps(last_run)}")
        return 0

    runner = build_runner(store)
    try:
        if command == "show":
            report = sync_show(runner, store, args.anilist_id)
        elif command == "library":
            report = sync_library(runner, store, args.statuses or ("COMPLETED", "CURRENT"))
        else:
            report = sync_once(runner, store)
    except SyncAlreadyRunning as e:
        print(f"Not started: {e}")
        return 2
    except (TransientNetworkError, ValidationError) as e:
        logging.error(f"Could not read AniList activity: {e}")
        print(f"Sync aborted, AniList is unavailable: {e}")
        return 1

    store.log_summary()
    print(report.summary())
    logging.info(f"Run finished: {report.as_dict()}")
    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(main())
