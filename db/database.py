"""
Persisted level fingerprints, one binary file per difficulty.

File layout (all little-endian):
    u64                         record count
    record * count:
        u8                      name length (<= 255)
        u8 * name length        name, one byte per character
        u8                      difficulty tag (0 Easy, 1 Medium, 2 Hard, 3 Legendary)
        f32 * NUM_COEFFICIENTS  red coefficients
        f32 * NUM_COEFFICIENTS  green coefficients
        f32 * NUM_COEFFICIENTS  blue coefficients

Every mutation rewrites the whole partition file before it returns.  Each
difficulty has its own ReadWriteLock; mutations hold the write lock across the
save so the file always reflects the latest in-memory state.
"""

from __future__ import annotations

import logging
import os
import struct
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator

import numpy as np

import config as _config
from config import NUM_COEFFICIENTS
from db.rwlock import ReadWriteLock
from levels.models import Difficulty, LevelRecord, normalize_name

log = logging.getLogger(__name__)

_COUNT = struct.Struct("<Q")
_U8 = struct.Struct("<B")
_COEFF_DTYPE = np.dtype("<f4")
_FINGERPRINT_SHAPE = (3, NUM_COEFFICIENTS)
_FINGERPRINT_BYTES = 3 * NUM_COEFFICIENTS * _COEFF_DTYPE.itemsize
_MAX_NAME_LEN = 255


class NotFoundError(KeyError):
    """Raised when a rename/remove target is not in the partition."""


class LevelExistsError(ValueError):
    """Raised when a rename would clobber another record."""


class DatabaseFormatError(OSError):
    """Raised when a partition file is truncated or malformed."""


# ---------------------------------------------------------------------------
# File codec
# ---------------------------------------------------------------------------

def _encode_name(name: str) -> bytes:
    raw = name.encode("latin-1")
    if len(raw) > _MAX_NAME_LEN:
        raise ValueError(f"level name longer than {_MAX_NAME_LEN} characters: {name!r}")
    return raw


def validate_name(name: str) -> str:
    """Normalise a level name and check it fits the one-byte-per-character layout."""
    name = normalize_name(name)
    if not name:
        raise ValueError("level name is empty")
    if not name.isascii():
        raise ValueError(f"level name must be ASCII: {name!r}")
    _encode_name(name)
    return name


def encode_levels(records: Iterable[LevelRecord]) -> bytes:
    records = list(records)
    parts = [_COUNT.pack(len(records))]
    for record in records:
        name = _encode_name(record.name)
        fingerprint = np.asarray(record.fingerprint)
        if fingerprint.shape != _FINGERPRINT_SHAPE:
            raise ValueError(
                f"fingerprint for {record.name!r} has shape {fingerprint.shape}, "
                f"expected {_FINGERPRINT_SHAPE}"
            )
        parts.append(_U8.pack(len(name)))
        parts.append(name)
        parts.append(_U8.pack(int(record.difficulty)))
        parts.append(fingerprint.astype(_COEFF_DTYPE).tobytes())
    return b"".join(parts)


def decode_levels(data: bytes, source: str = "<bytes>") -> list[LevelRecord]:
    """Parse a partition file's bytes.  Raises DatabaseFormatError on truncation."""
    try:
        (count,) = _COUNT.unpack_from(data, 0)
        offset = _COUNT.size
        records = []
        for _ in range(count):
            (name_len,) = _U8.unpack_from(data, offset)
            offset += 1
            name_raw = data[offset:offset + name_len]
            if len(name_raw) != name_len:
                raise struct.error("name runs past end of file")
            offset += name_len
            (tag,) = _U8.unpack_from(data, offset)
            offset += 1
            if len(data) - offset < _FINGERPRINT_BYTES:
                raise struct.error("coefficients run past end of file")
            coefficients = np.frombuffer(
                data, dtype=_COEFF_DTYPE, count=3 * NUM_COEFFICIENTS, offset=offset
            )
            offset += _FINGERPRINT_BYTES
            records.append(LevelRecord(
                name=name_raw.decode("latin-1"),
                difficulty=Difficulty.from_tag(tag),
                fingerprint=coefficients.astype(np.float32).reshape(_FINGERPRINT_SHAPE),
            ))
    except struct.error as exc:
        raise DatabaseFormatError(f"{source}: malformed level file ({exc})") from exc
    if offset != len(data):
        log.warning("%s: %d trailing bytes after %d records", source, len(data) - offset, count)
    return records


def read_levels(path: Path) -> list[LevelRecord] | None:
    """Read a partition file.  Returns None when the file does not exist."""
    try:
        data = Path(path).read_bytes()
    except FileNotFoundError:
        return None
    return decode_levels(data, source=str(path))


def write_levels(path: Path, records: Iterable[LevelRecord]) -> None:
    """Serialise ``records`` and atomically replace ``path``."""
    path = Path(path)
    data = encode_levels(records)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


# ---------------------------------------------------------------------------
# Partitioned database
# ---------------------------------------------------------------------------

class LevelDatabase:
    """
    All known levels, partitioned by difficulty.

    Partitions are independent: each has its own file and its own lock, so a
    save of the Hard partition never blocks a lookup in Easy.
    """

    def __init__(self, levels_dir: Path | None = None):
        self.levels_dir = Path(levels_dir if levels_dir is not None else _config.LEVELS_DIR)
        self._partitions: dict[Difficulty, dict[str, LevelRecord]] = {d: {} for d in Difficulty}
        self._locks: dict[Difficulty, ReadWriteLock] = {d: ReadWriteLock() for d in Difficulty}

    def path_for(self, difficulty: Difficulty) -> Path:
        return self.levels_dir / f"{difficulty.directory}.bin"

    # ── Loading / saving ─────────────────────────────────────────────────────

    def load(self, difficulty: Difficulty) -> dict[str, LevelRecord]:
        """Load one partition from disk, replacing whatever was in memory.

        A missing file is an empty partition.  Any other I/O or format error
        propagates.
        """
        path = self.path_for(difficulty)
        records = read_levels(path)
        levels: dict[str, LevelRecord] = {}
        if records is None:
            log.info("no %s levels (%s does not exist)", difficulty.label, path)
        else:
            prefixes = tuple(_config.EXCLUDED_NAME_PREFIXES)
            for record in records:
                name = normalize_name(record.name)
                if prefixes and name.startswith(prefixes):
                    continue
                if name in levels:
                    log.warning("%s: %r collides with %r, keeping the later record",
                                path, record.name, levels[name].name)
                if name != record.name:
                    record = LevelRecord(name, record.difficulty, record.fingerprint)
                levels[name] = record
            log.info("read in %d %s levels", len(levels), difficulty.label)

        with self._locks[difficulty].write_locked():
            self._partitions[difficulty] = levels
        return dict(levels)

    def load_all(self) -> None:
        for difficulty in Difficulty:
            self.load(difficulty)

    def save(self, difficulty: Difficulty, records: Iterable[LevelRecord] | None = None) -> None:
        """Rewrite a partition file in full.

        With ``records`` the partition becomes exactly those records, in
        memory and on disk; without, the current in-memory partition is written.
        """
        if records is not None:
            self.replace_partition(difficulty, records)
            return
        with self._locks[difficulty].write_locked():
            write_levels(self.path_for(difficulty), self._partitions[difficulty].values())

    def replace_partition(self, difficulty: Difficulty, records: Iterable[LevelRecord]) -> None:
        """Swap a whole partition (used by rebuilds) and persist it."""
        levels = {record.name: record for record in records}
        with self._locks[difficulty].write_locked():
            self._commit(difficulty, levels)

    # ── Queries ──────────────────────────────────────────────────────────────

    @contextmanager
    def reading(self, difficulty: Difficulty) -> Iterator[dict[str, LevelRecord]]:
        """Yield the live partition under its read lock.  Do not mutate it."""
        with self._locks[difficulty].read_locked():
            yield self._partitions[difficulty]

    def get(self, difficulty: Difficulty, name: str) -> LevelRecord | None:
        with self.reading(difficulty) as levels:
            return levels.get(normalize_name(name))

    def names(self, difficulty: Difficulty) -> list[str]:
        with self.reading(difficulty) as levels:
            return list(levels)

    def count(self, difficulty: Difficulty) -> int:
        with self.reading(difficulty) as levels:
            return len(levels)

    # ── Mutations ────────────────────────────────────────────────────────────

    def _commit(self, difficulty: Difficulty, levels: dict[str, LevelRecord]) -> None:
        """Persist ``levels`` and make it the live partition.  Caller holds the write lock."""
        write_levels(self.path_for(difficulty), levels.values())
        self._partitions[difficulty] = levels

    def insert_or_overwrite(self, difficulty: Difficulty, record: LevelRecord) -> bool:
        """Insert ``record`` or overwrite the one with the same name, then save.

        Returns True if the name was already known.  Relearning a known level
        means an earlier guess went wrong against a stored fingerprint, so it
        is logged as a warning.
        """
        name = validate_name(record.name)
        record = LevelRecord(name, difficulty, np.asarray(record.fingerprint, dtype=np.float32))

        with self._locks[difficulty].write_locked():
            levels = dict(self._partitions[difficulty])
            known_before = name in levels
            if known_before:
                log.warning("already knew %s level %r, overwriting its fingerprint",
                            difficulty.label, name)
            levels[name] = record
            self._commit(difficulty, levels)
        return known_before

    def rename(self, difficulty: Difficulty, old_name: str, new_name: str) -> None:
        old_name = normalize_name(old_name)
        new_name = validate_name(new_name)

        with self._locks[difficulty].write_locked():
            current = self._partitions[difficulty]
            if old_name not in current:
                raise NotFoundError(f"no {difficulty.label} level named {old_name!r}")
            if new_name == old_name:
                return
            if new_name in current:
                raise LevelExistsError(f"{difficulty.label} level {new_name!r} already exists")

            # rebuild to keep the record's position in the file
            levels: dict[str, LevelRecord] = {}
            for name, record in current.items():
                if name == old_name:
                    record = LevelRecord(new_name, record.difficulty, record.fingerprint)
                    name = new_name
                levels[name] = record
            self._commit(difficulty, levels)
        log.info("renamed %s level %r -> %r", difficulty.label, old_name, new_name)

    def remove(self, difficulty: Difficulty, name: str) -> LevelRecord:
        name = normalize_name(name)

        with self._locks[difficulty].write_locked():
            levels = dict(self._partitions[difficulty])
            try:
                removed = levels.pop(name)
            except KeyError:
                raise NotFoundError(f"no {difficulty.label} level named {name!r}") from None
            self._commit(difficulty, levels)
        log.info("removed %s level %r", difficulty.label, name)
        return removed
