"""
Per-channel round tracking.

A round goes Idle → Active → Fingerprinted → Idle:

    RoundStarted    install a fresh RoundState (unless the same url is already
                    active), then fetch + fingerprint + match on the pool
    GuessSubmitted  record the author's latest text in the round's ledger
    RoundResolved   claim and drop the round; learn the winning answer if our
                    own guess was wrong
    RoundTimedOut   drop the round

Locking
-------
``_rounds`` is guarded by one ReadWriteLock, held only for in-memory updates.
Fetching, decoding, the DCT and the database scan all run with no round lock
held.  A result computed for a round that has since been replaced or resolved
is dropped: before anything is written back the coordinator checks that the
RoundState it started from is still the one installed for the channel.
"""

from __future__ import annotations

import functools
import logging
import re
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable

import numpy as np
import requests

import config as _config
from config import FINGERPRINT_WORKERS
from db.database import LevelDatabase, validate_name
from db.rwlock import ReadWriteLock
from identifier.matcher import confidence_label, identify_level
from levels.fingerprint import DCTPlan, DecodeError, extract_fingerprint
from levels.models import Difficulty, LevelRecord, normalize_name
from rounds.events import (
    GuessComputed,
    GuessSubmitted,
    Notice,
    ResolutionOutcome,
    RoundEvent,
    RoundExpired,
    RoundOpened,
    RoundResolved,
    RoundStarted,
    RoundTimedOut,
)
from rounds.fetcher import fetch_image_bytes

log = logging.getLogger(__name__)

MENTION_RE = re.compile(r"<@!?(\d+)>")


@dataclass
class RoundState:
    url: str
    difficulty: Difficulty
    raw_bytes: bytes | None = None
    fingerprint: np.ndarray | None = None
    best_guess: tuple[str, float] | None = None
    guesses: dict[int, str] = field(default_factory=dict)


class RoundCoordinator:
    """
    Tracks one in-flight round per channel and learns from resolved rounds.

    Parameters
    ----------
    database : LevelDatabase
        Loaded level database; wrong guesses are written back to it.
    plan : DCTPlan
        Shared transform plan, built once at startup.
    fetch : callable
        ``fetch(url) -> bytes``; defaults to an HTTP GET.
    listener : callable | None
        Receives every outbound notice (RoundOpened, GuessComputed,
        ResolutionOutcome, RoundExpired).
    executor : ThreadPoolExecutor | None
        Pool for fetch/fingerprint jobs.  One is created (and owned) when
        omitted.
    save_images / images_dir
        Archive the winning image of resolved rounds as
        ``<images_dir>/<difficulty>/<name>.png``.
    """

    def __init__(
        self,
        database: LevelDatabase,
        plan: DCTPlan,
        fetch: Callable[[str], bytes] = fetch_image_bytes,
        listener: Callable[[Notice], None] | None = None,
        executor: ThreadPoolExecutor | None = None,
        save_images: bool | None = None,
        images_dir: Path | None = None,
    ):
        self._database = database
        self._plan = plan
        self._fetch = fetch
        self._listener = listener
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=FINGERPRINT_WORKERS, thread_name_prefix="round"
        )
        self._save_images = _config.SAVE_IMAGES if save_images is None else save_images
        self._images_dir = Path(images_dir if images_dir is not None else _config.IMAGES_DIR)

        self._lock = ReadWriteLock()
        self._rounds: dict[int, RoundState] = {}

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def __enter__(self) -> "RoundCoordinator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    # ── Queries ──────────────────────────────────────────────────────────────

    def get_round(self, channel_id: int) -> RoundState | None:
        """Snapshot of the channel's round, or None when the channel is idle."""
        with self._lock.read_locked():
            state = self._rounds.get(channel_id)
            if state is None:
                return None
            return replace(state, guesses=dict(state.guesses))

    def active_channels(self) -> list[int]:
        with self._lock.read_locked():
            return list(self._rounds)

    # ── Inbound events ───────────────────────────────────────────────────────

    def handle(self, event: RoundEvent):
        if isinstance(event, RoundStarted):
            return self.round_started(event.channel_id, event.url, event.difficulty,
                                      image_bytes=event.image_bytes)
        if isinstance(event, GuessSubmitted):
            return self.guess_submitted(event.channel_id, event.author_id, event.text)
        if isinstance(event, RoundResolved):
            return self.round_resolved(event.channel_id, event.description)
        if isinstance(event, RoundTimedOut):
            return self.round_timed_out(event.channel_id)
        raise TypeError(f"unsupported round event: {event!r}")

    def round_started(self, channel_id: int, url: str, difficulty: Difficulty,
                      image_bytes: bytes | None = None) -> Future | None:
        """
        Install a new round and queue its fingerprinting.

        Returns the Future of the fingerprint job (resolving to the
        ``(name, distance)`` guess or None), or None when ``url`` is already
        the channel's active round.
        """
        with self._lock.write_locked():
            current = self._rounds.get(channel_id)
            if current is not None and current.url == url:
                return None
            state = RoundState(url=url, difficulty=difficulty)
            self._rounds[channel_id] = state

        log.info("[%s] new %s level", channel_id, difficulty.label)
        self._notify(RoundOpened(channel_id, difficulty))
        job = self._executor.submit(self._fingerprint_round, channel_id, state, image_bytes)
        job.add_done_callback(functools.partial(_log_failure, f"[{channel_id}] fingerprinting"))
        return job

    def fingerprint_ready(self, channel_id: int, url: str, fingerprint: np.ndarray,
                          raw_bytes: bytes | None = None) -> tuple[str, float] | None:
        """
        Record a fingerprint computed for ``url`` and match it.

        Dropped when the channel's round is no longer for ``url``.  Returns the
        recorded guess, if any.
        """
        with self._lock.read_locked():
            state = self._rounds.get(channel_id)
        if state is None or state.url != url:
            log.debug("[%s] dropping fingerprint for stale round %s", channel_id, url)
            return None
        return self._record_fingerprint(channel_id, state, fingerprint, raw_bytes)

    def guess_submitted(self, channel_id: int, author_id: int, text: str) -> bool:
        """Record ``text`` as the author's latest guess.  False when the channel is idle."""
        with self._lock.write_locked():
            state = self._rounds.get(channel_id)
            if state is None:
                return False
            state.guesses[author_id] = text
        return True

    def round_resolved(self, channel_id: int, description: str) -> ResolutionOutcome | None:
        """
        End the channel's round and learn from it.

        The winner is the first user mentioned in ``description``; their last
        guess is the answer.  If our own guess differs, the round's fingerprint
        is stored under the answer and the partition is saved.  Save errors
        propagate.
        """
        with self._lock.write_locked():
            state = self._rounds.pop(channel_id, None)
        if state is None:
            return None

        mention = MENTION_RE.search(description)
        if mention is None:
            log.info("[%s] round won but no winner mentioned", channel_id)
            return None
        winner = int(mention.group(1))
        submitted = state.guesses.get(winner)
        if submitted is None:
            log.info("[%s] no recorded guess from winner %s", channel_id, winner)
            return None

        answer = normalize_name(submitted)
        if state.raw_bytes is not None and self._save_images:
            job = self._executor.submit(self._archive_image, state.difficulty, answer,
                                        state.raw_bytes)
            job.add_done_callback(functools.partial(_log_failure, "image archive"))

        if state.best_guess is not None and normalize_name(state.best_guess[0]) == answer:
            log.info("[%s] I was right! my guess was correct: %s (dist %.2f)",
                     channel_id, answer, state.best_guess[1])
            outcome = ResolutionOutcome(channel_id, answer, correct=True, known_before=True)
            self._notify(outcome)
            return outcome

        log.info("[%s] I was wrong, winning guess: %s", channel_id, answer)
        known_before = self._learn(channel_id, state, answer)
        outcome = ResolutionOutcome(channel_id, answer, correct=False, known_before=known_before)
        self._notify(outcome)
        return outcome

    def round_timed_out(self, channel_id: int) -> bool:
        with self._lock.write_locked():
            state = self._rounds.pop(channel_id, None)
        if state is None:
            return False
        log.info("[%s] time is up", channel_id)
        self._notify(RoundExpired(channel_id))
        return True

    # ── Internals ────────────────────────────────────────────────────────────

    def _is_current(self, channel_id: int, state: RoundState) -> bool:
        """Caller holds ``_lock``."""
        return self._rounds.get(channel_id) is state

    def _fingerprint_round(self, channel_id: int, state: RoundState,
                           image_bytes: bytes | None) -> tuple[str, float] | None:
        """Pool job: fetch, fingerprint and match one round's image."""
        try:
            data = image_bytes if image_bytes is not None else self._fetch(state.url)
            fingerprint = extract_fingerprint(data, self._plan)
        except (requests.RequestException, DecodeError) as exc:
            log.warning("[%s] could not fingerprint %s: %s", channel_id, state.url, exc)
            return None
        return self._record_fingerprint(channel_id, state, fingerprint, data)

    def _record_fingerprint(self, channel_id: int, state: RoundState,
                            fingerprint: np.ndarray,
                            raw_bytes: bytes | None) -> tuple[str, float] | None:
        with self._lock.write_locked():
            if not self._is_current(channel_id, state):
                log.debug("[%s] round changed while fingerprinting, dropping result", channel_id)
                return None
            state.fingerprint = fingerprint
            state.raw_bytes = raw_bytes

        match = identify_level(self._database, state.difficulty, fingerprint)
        if match is None:
            log.info("[%s] no %s levels known yet", channel_id, state.difficulty.label)
            return None
        record, distance = match

        with self._lock.write_locked():
            if not self._is_current(channel_id, state):
                return None
            state.best_guess = (record.name, distance)

        log.info("[%s] my best guess is %s (dist %.2f, %s confidence)",
                 channel_id, record.name, distance, confidence_label(distance))
        self._notify(GuessComputed(channel_id, record.name, distance))
        return record.name, distance

    def _learn(self, channel_id: int, state: RoundState, answer: str) -> bool:
        """Store the round's fingerprint under ``answer``.  Returns whether it was known."""
        difficulty = state.difficulty
        try:
            answer = validate_name(answer)
        except ValueError as exc:
            log.warning("[%s] cannot store %r: %s", channel_id, answer, exc)
            return self._database.get(difficulty, answer) is not None

        if state.fingerprint is None:
            log.warning("[%s] no fingerprint for this round, not learning %r", channel_id, answer)
            return self._database.get(difficulty, answer) is not None

        return self._database.insert_or_overwrite(
            difficulty, LevelRecord(answer, difficulty, state.fingerprint)
        )

    def _archive_image(self, difficulty: Difficulty, name: str, data: bytes) -> None:
        if not name or Path(name).name != name or name in (".", ".."):
            log.warning("not archiving image under unsafe name %r", name)
            return
        path = self._images_dir / difficulty.directory / f"{name}.png"
        if path.exists():
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def _notify(self, notice: Notice) -> None:
        if self._listener is None:
            return
        try:
            self._listener(notice)
        except Exception:
            log.exception("round listener failed on %r", notice)


def _log_failure(what: str, future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        log.error("%s failed: %r", what, exc, exc_info=exc)
