"""
Trakt client for the AniList sync: season metadata, id search and history writes.
Built on trakt.py with tenacity retries for transient failures.
"""

from typing import Dict, List, Optional

import json
import logging
import os.path
from threading import Condition
import time
from trakt import Trakt
import config
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)
from requests.exceptions import RequestException  # type: ignore[import]

from SyncErrors import SubmissionFailure, TransientNetworkError

SEARCH_ID_TYPES = ("tmdb", "imdb", "tvdb", "trakt")


def _status_of(response) -> Optional[int]:
    return getattr(response, "status_code", None)


def build_history_payload(episodes) -> dict:
    """
    Group translated episodes into the nested sync/history payload:
    shows -> seasons -> episodes, keeping first-seen order.
    """
    shows: Dict[object, dict] = {}
    for ep in episodes:
        show_entry = shows.get(ep.destination_show_id)
        if show_entry is None:
            show_entry = {"ids": {"trakt": ep.destination_show_id}, "seasons": []}
            shows[ep.destination_show_id] = show_entry

        season_entry = next((s for s in show_entry["seasons"] if s["number"] == ep.season), None)
        if season_entry is None:
            season_entry = {"number": ep.season, "episodes": []}
            show_entry["seasons"].append(season_entry)

        season_entry["episodes"].append({"number": ep.episode, "watched_at": ep.watched_at})
    return {"shows": list(shows.values())}


class TraktIO(object):
    """
    Trakt side of the sync: season metadata for episode maps, id lookups for
    show resolution and history writes.

    Only 429, 5xx and transport errors are retried; any other non-success
    response is a definitive answer. History writes go out in batches of
    page_size and need a user token (device flow, stored in auth_file and
    refreshed by trakt.py). With dry_run nothing is written.
    """

    MIN_WRITE_INTERVAL = 1.0
    MAX_RETRY_ATTEMPTS = getattr(config, "TRAKT_API_MAX_RETRIES", 3)

    def __init__(self, page_size=None, dry_run=None, auth_file=None):
        Trakt.configuration.defaults.client(id=config.TRAKT_API_CLIENT_ID, secret=config.TRAKT_API_CLIENT_SECRET)

        self.page_size = page_size if page_size is not None else config.TRAKT_API_SYNC_PAGE_SIZE
        self.dry_run = dry_run if dry_run is not None else config.TRAKT_API_DRY_RUN
        self.auth_file = auth_file or config.TRAKT_AUTH_FILE
        self.authorization = None
        self.device_auth_done = Condition()
        self._device_auth_running = False
        self._next_write_at = 0.0

        if not self.dry_run:
            Trakt.on("oauth.token_refreshed", self._token_refreshed)

    def _load_authorization(self):
        if self.authorization:
            return
        if os.path.isfile(self.auth_file):
            with open(self.auth_file) as infile:
                self.authorization = json.load(infile)
        else:
            self.authenticate()
        if not self.authorization:
            raise SubmissionFailure(f"Not authorized with Trakt, run the device flow again ({self.auth_file})")

    def _wait_for_write_slot(self):
        delay = self._next_write_at - time.monotonic()
        if delay > 0:
            logging.debug(f"Waiting {delay:.2f}s before the next Trakt write")
            time.sleep(delay)
        self._next_write_at = time.monotonic() + self.MIN_WRITE_INTERVAL

    @staticmethod
    def _raise_if_transient(response, what: str):
        if response is None:
            raise TransientNetworkError(f"No response from Trakt for {what}")
        status = _status_of(response)
        if status == 429:
            logging.warning(f"RATE LIMIT: 429 from Trakt for {what}")
            raise TransientNetworkError(f"Trakt rate limited {what}")
        if status is not None and status >= 500:
            logging.warning(f"SERVER ERROR: {status} from Trakt for {what}")
            raise TransientNetworkError(f"Trakt server error {status} for {what}")

    @retry(
        stop=stop_after_attempt(MAX_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=2, min=2, max=60),
        retry=retry_if_exception_type(TransientNetworkError),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
        reraise=True,
    )
    def _fetch_seasons(self, trakt_id):
        try:
            response = Trakt["shows"].seasons(trakt_id, extended="full,episodes", parse=False)
        except RequestException as e:
            raise TransientNetworkError(f"Trakt seasons request failed: {e}") from e
        self._raise_if_transient(response, f"seasons of {trakt_id}")
        return response

    def getSeasons(self, trakt_id) -> Optional[List[dict]]:
        """
        Return the raw season list (with episodes) for a Trakt show.

        None means Trakt gave a definitive non-success answer. Raises
        TransientNetworkError once retries are exhausted.
        """
        response = self._fetch_seasons(trakt_id)
        status = _status_of(response)
        if status != 200:
            logging.error(f"Trakt seasons for {trakt_id} returned HTTP {status}")
            return None
        try:
            seasons = response.json()
        except ValueError as e:
            logging.error(f"Trakt seasons for {trakt_id} returned invalid JSON: {e}")
            return None
        return seasons if isinstance(seasons, list) else None

    @retry(
        stop=stop_after_attempt(MAX_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=2, min=2, max=60),
        retry=retry_if_exception_type(TransientNetworkError),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
        reraise=True,
    )
    def _lookup(self, id_type: str, id_value):
        try:
            response = Trakt["search"].lookup(str(id_value), id_type, media="show", parse=False)
        except RequestException as e:
            raise TransientNetworkError(f"Trakt search request failed: {e}") from e
        self._raise_if_transient(response, f"{id_type} search {id_value}")
        return response

    def searchByExternalId(self, id_type: str, id_value) -> Optional[int]:
        """Exact-match a show on Trakt by an external id. Returns the Trakt id or None."""
        if id_type not in SEARCH_ID_TYPES:
            raise ValueError(f"Unsupported Trakt id type: {id_type}")
        if not id_value:
            return None

        response = self._lookup(id_type, id_value)
        if _status_of(response) != 200:
            logging.debug(f"Trakt {id_type} search for {id_value} returned HTTP {_status_of(response)}")
            return None
        try:
            results = response.json() or []
        except ValueError:
            return None
        for item in results:
            if item.get("type") != "show":
                continue
            trakt_id = ((item.get("show") or {}).get("ids") or {}).get("trakt")
            if trakt_id:
                logging.debug(f"Trakt {id_type} search for {id_value} -> {trakt_id}")
                return trakt_id
        return None

    @retry(
        stop=stop_after_attempt(MAX_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=2, min=5, max=60),
        retry=retry_if_exception_type(TransientNetworkError),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
        reraise=True,
    )
    def _sync_batch_with_retry(self, payload: dict, batch_num: int):
        """Post a single history batch. Retries transient failures only."""
        try:
            with Trakt.configuration.oauth.from_response(self.authorization, refresh=True):
                response = Trakt["sync/history"].add(payload, parse=False)
        except RequestException as e:
            raise TransientNetworkError(f"Trakt history batch {batch_num} failed: {e}") from e
        self._raise_if_transient(response, f"history batch {batch_num}")
        return response

    def submitHistory(self, episodes) -> dict:
        """
        Add translated episodes to the user's Trakt history.

        All batches must succeed. Any failure raises SubmissionFailure, so the
        caller can leave every watermark of the run uncommitted.

        Returns {"accepted": episodes added, "not_found": episodes Trakt did not
        recognise, "batches": number of requests sent}.
        """
        episodes = list(episodes)
        result = {"accepted": 0, "not_found": 0, "batches": 0}
        if not episodes:
            return result

        if self.dry_run:
            logging.info(f"Dry run enabled. Skipping Trakt sync of {len(episodes)} episodes.")
            result["accepted"] = len(episodes)
            return result

        self._load_authorization()

        total_batches = (len(episodes) - 1) // self.page_size + 1
        logging.info(f"Syncing {len(episodes)} episodes in {total_batches} batches of {self.page_size}")
        for i in range(0, len(episodes), self.page_size):
            batch = episodes[i : i + self.page_size]
            batch_num = i // self.page_size + 1
            self._wait_for_write_slot()

            try:
                response = self._sync_batch_with_retry(build_history_payload(batch), batch_num)
            except TransientNetworkError as e:
                raise SubmissionFailure(
                    f"Episode batch {batch_num}/{total_batches} failed permanently after all retries: {e}"
                ) from e

            status = _status_of(response)
            if status not in (200, 201):
                raise SubmissionFailure(
                    f"Episode batch {batch_num}/{total_batches} rejected by Trakt with HTTP {status}"
                )
            try:
                body = response.json() or {}
            except ValueError as e:
                raise SubmissionFailure(f"Episode batch {batch_num} returned invalid JSON: {e}") from e

            added = int((body.get("added") or {}).get("episodes") or 0)
            not_found = body.get("not_found") or {}
            missing = len(not_found.get("episodes") or []) + len(not_found.get("shows") or [])
            result["accepted"] += added
            result["not_found"] += missing
            result["batches"] += 1

            if added < len(batch):
                logging.warning(
                    f"Episode batch {batch_num}: Added {added}/{len(batch)} episodes, {missing} not found on Trakt"
                )
            else:
                logging.info(f"Episode batch {batch_num}: Added {added}/{len(batch)} episodes (100% success)")

        logging.info(f"Trakt accepted {result['accepted']}/{len(episodes)} episodes")
        return result

    def _store_authorization(self, authorization, reason: str):
        self.authorization = authorization
        with open(self.auth_file, "w") as f:
            json.dump(authorization, f)
        logging.info(f"Trakt token {reason}, saved to {self.auth_file}")

    def _token_refreshed(self, authorization):
        self._store_authorization(authorization, "refreshed")

    def authenticate(self) -> bool:
        """
        Run the OAuth device flow: print the user code, then block until Trakt
        reports the code as authorized, expired or aborted.
        """
        with self.device_auth_done:
            if self._device_auth_running:
                logging.warning("Trakt device authentication is already in progress")
                return False
            self._device_auth_running = True

        device_code = Trakt["oauth/device"].code()
        print(
            f'Open {device_code.get("verification_url")} and enter "{device_code.get("user_code")}" '
            f"to link anilist2trakt to your Trakt account"
        )

        (
            Trakt["oauth/device"]
            .poll(**device_code)
            .on("authenticated", lambda authorization: self._device_auth_finished("authorized", authorization))
            .on("expired", lambda: self._device_auth_finished("expired"))
            .on("aborted", lambda: self._device_auth_finished("aborted"))
            .on("poll", lambda callback: callback(True))
            .start(daemon=False)
        )

        with self.device_auth_done:
            while self._device_auth_running:
                self.device_auth_done.wait()
        return self.authorization is not None

    def _device_auth_finished(self, outcome: str, authorization=None):
        if authorization is not None:
            self._store_authorization(authorization, outcome)
        else:
            logging.warning(f"Trakt device authentication {outcome}")
        with self.device_auth_done:
            self._device_auth_running = False
            self.device_auth_done.notify_all()
