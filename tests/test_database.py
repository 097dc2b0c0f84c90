"""Tests for db/database.py — file codec and partitioned level database."""

from __future__ import annotations

import logging
import struct
import threading

import numpy as np
import pytest

import config
import db.database as database_module
from config import NUM_COEFFICIENTS
from db.database import (
    DatabaseFormatError,
    LevelDatabase,
    LevelExistsError,
    NotFoundError,
    decode_levels,
    encode_levels,
    read_levels,
    write_levels,
)
from identifier.matcher import identify_level
from levels.models import Difficulty, LevelRecord
from factories import make_fingerprint, make_record


def _bits(fingerprint: np.ndarray) -> np.ndarray:
    return np.asarray(fingerprint, dtype=np.float32).view(np.uint32)


class TestCodec:
    def test_record_layout(self):
        fp = np.arange(3 * NUM_COEFFICIENTS, dtype=np.float32).reshape(3, NUM_COEFFICIENTS)
        data = encode_levels([LevelRecord("ab", Difficulty.MEDIUM, fp)])

        expected = struct.pack("<Q", 1) + b"\x02ab\x01"
        expected += struct.pack(f"<{3 * NUM_COEFFICIENTS}f", *range(3 * NUM_COEFFICIENTS))
        assert data == expected

    def test_channels_written_in_rgb_order(self):
        fp = np.zeros((3, NUM_COEFFICIENTS), dtype=np.float32)
        fp[0, 0], fp[1, 0], fp[2, 0] = 1.0, 2.0, 3.0
        data = encode_levels([LevelRecord("x", Difficulty.EASY, fp)])
        floats = struct.unpack_from(f"<{3 * NUM_COEFFICIENTS}f", data, 8 + 1 + 1 + 1)
        assert floats[0] == 1.0
        assert floats[NUM_COEFFICIENTS] == 2.0
        assert floats[2 * NUM_COEFFICIENTS] == 3.0

    def test_round_trip_is_bit_exact(self, tmp_path):
        fp = make_fingerprint(1)
        fp[0, 0] = np.float32(1e-38)
        fp[1, 3] = np.float32(-0.0)
        fp[2, 9] = np.nextafter(np.float32(1.0), np.float32(2.0))
        records = [
            LevelRecord("sunrise", Difficulty.EASY, fp),
            make_record("sunset", 2),
            make_record("abyss", 3, Difficulty.LEGENDARY),
        ]
        path = tmp_path / "easy.bin"
        write_levels(path, records)
        loaded = read_levels(path)

        assert [(r.name, r.difficulty) for r in loaded] == [(r.name, r.difficulty) for r in records]
        for original, copy in zip(records, loaded):
            np.testing.assert_array_equal(_bits(copy.fingerprint), _bits(original.fingerprint))
        assert path.read_bytes() == encode_levels(loaded)

    def test_unknown_tag_reads_as_easy(self):
        data = bytearray(encode_levels([make_record("x", 1, Difficulty.HARD)]))
        data[8 + 1 + 1] = 9
        (record,) = decode_levels(bytes(data))
        assert record.difficulty is Difficulty.EASY

    @pytest.mark.parametrize("cut", [3, 9, 11, 20])
    def test_truncated_data_raises(self, cut):
        data = encode_levels([make_record("name", 1)])
        with pytest.raises(DatabaseFormatError):
            decode_levels(data[:cut])

    def test_format_error_is_an_os_error(self):
        assert issubclass(DatabaseFormatError, OSError)

    def test_missing_file_reads_as_none(self, tmp_path):
        assert read_levels(tmp_path / "missing.bin") is None

    def test_long_name_rejected(self):
        with pytest.raises(ValueError):
            encode_levels([make_record("x" * 256, 1)])

    def test_write_leaves_no_temp_files(self, tmp_path):
        write_levels(tmp_path / "easy.bin", [make_record("a", 1)])
        assert [p.name for p in tmp_path.iterdir()] == ["easy.bin"]


class TestLoad:
    def test_absent_file_is_empty(self, db):
        assert db.load(Difficulty.EASY) == {}
        assert db.count(Difficulty.EASY) == 0

    def test_excluded_prefix_is_skipped(self, levels_dir, monkeypatch):
        monkeypatch.setattr(config, "EXCLUDED_NAME_PREFIXES", ["s?"])
        db = LevelDatabase(levels_dir)
        db.save(Difficulty.EASY, [make_record("s?guess", 1), make_record("sunrise", 2)])
        assert list(db.load(Difficulty.EASY)) == ["sunrise"]

    def test_corrupt_file_is_fatal(self, levels_dir):
        db = LevelDatabase(levels_dir)
        levels_dir.mkdir(parents=True)
        db.path_for(Difficulty.HARD).write_bytes(b"\x05\x00\x00")
        with pytest.raises(DatabaseFormatError):
            db.load(Difficulty.HARD)

    def test_unreadable_path_is_fatal(self, levels_dir):
        db = LevelDatabase(levels_dir)
        db.path_for(Difficulty.EASY).mkdir(parents=True)
        with pytest.raises(OSError):
            db.load(Difficulty.EASY)

    def test_mixed_case_names_are_normalised(self, levels_dir):
        write_levels(LevelDatabase(levels_dir).path_for(Difficulty.EASY),
                     [make_record("SunRise", 1), make_record("dusk", 2)])
        db = LevelDatabase(levels_dir)
        db.load(Difficulty.EASY)

        assert db.names(Difficulty.EASY) == ["sunrise", "dusk"]
        assert db.get(Difficulty.EASY, "Sunrise").name == "sunrise"
        db.rename(Difficulty.EASY, "sunrise", "dawn")
        assert db.names(Difficulty.EASY) == ["dawn", "dusk"]

    def test_case_collision_keeps_later_record(self, levels_dir, caplog):
        write_levels(LevelDatabase(levels_dir).path_for(Difficulty.EASY),
                     [make_record("sunrise", 1), make_record("SUNRISE", 2)])
        db = LevelDatabase(levels_dir)
        with caplog.at_level(logging.WARNING, logger="db.database"):
            db.load(Difficulty.EASY)
        assert db.names(Difficulty.EASY) == ["sunrise"]
        np.testing.assert_array_equal(db.get(Difficulty.EASY, "sunrise").fingerprint,
                                      make_fingerprint(2))
        assert "collides" in caplog.text

    def test_load_all_reads_every_partition(self, levels_dir):
        writer = LevelDatabase(levels_dir)
        writer.save(Difficulty.EASY, [make_record("sunrise", 1)])
        writer.save(Difficulty.LEGENDARY, [make_record("sunrise", 2, Difficulty.LEGENDARY)])

        db = LevelDatabase(levels_dir)
        db.load_all()
        assert db.names(Difficulty.EASY) == ["sunrise"]
        assert db.names(Difficulty.LEGENDARY) == ["sunrise"]
        assert db.names(Difficulty.MEDIUM) == []
        assert not np.array_equal(db.get(Difficulty.EASY, "sunrise").fingerprint,
                                  db.get(Difficulty.LEGENDARY, "sunrise").fingerprint)


class TestInsertOrOverwrite:
    def test_insert_persists(self, db, levels_dir):
        known = db.insert_or_overwrite(Difficulty.EASY, make_record("Sunrise", 1))
        assert known is False
        assert db.get(Difficulty.EASY, "sunrise") is not None

        reloaded = LevelDatabase(levels_dir)
        assert list(reloaded.load(Difficulty.EASY)) == ["sunrise"]

    def test_insert_is_idempotent(self, db):
        record = make_record("sunrise", 1)
        db.insert_or_overwrite(Difficulty.EASY, record)
        once = db.path_for(Difficulty.EASY).read_bytes()
        db.insert_or_overwrite(Difficulty.EASY, record)
        assert db.path_for(Difficulty.EASY).read_bytes() == once

    def test_overwrite_is_flagged(self, db, caplog):
        db.insert_or_overwrite(Difficulty.EASY, make_record("sunrise", 1))
        with caplog.at_level(logging.WARNING, logger="db.database"):
            known = db.insert_or_overwrite(Difficulty.EASY, make_record("sunrise", 2))
        assert known is True
        assert "already knew" in caplog.text
        np.testing.assert_array_equal(db.get(Difficulty.EASY, "sunrise").fingerprint,
                                      make_fingerprint(2))

    def test_overwrite_keeps_position(self, db):
        for i, name in enumerate(["a", "b", "c"]):
            db.insert_or_overwrite(Difficulty.EASY, make_record(name, i))
        db.insert_or_overwrite(Difficulty.EASY, make_record("a", 9))
        assert db.names(Difficulty.EASY) == ["a", "b", "c"]

    def test_partitions_are_independent(self, db):
        db.insert_or_overwrite(Difficulty.EASY, make_record("sunrise", 1))
        db.insert_or_overwrite(Difficulty.HARD, make_record("sunrise", 2))
        assert db.count(Difficulty.EASY) == 1
        assert db.count(Difficulty.HARD) == 1
        assert not db.path_for(Difficulty.MEDIUM).exists()
        assert db.get(Difficulty.HARD, "sunrise").difficulty is Difficulty.HARD

    def test_non_ascii_name_rejected(self, db):
        with pytest.raises(ValueError):
            db.insert_or_overwrite(Difficulty.EASY, make_record("café", 1))
        assert db.count(Difficulty.EASY) == 0

    def test_failed_save_rolls_back(self, db, monkeypatch):
        db.insert_or_overwrite(Difficulty.EASY, make_record("sunrise", 1))
        before = db.path_for(Difficulty.EASY).read_bytes()

        def broken_write(path, records):
            raise PermissionError("read-only filesystem")

        monkeypatch.setattr(database_module, "write_levels", broken_write)
        with pytest.raises(OSError):
            db.insert_or_overwrite(Difficulty.EASY, make_record("sunset", 2))

        assert db.names(Difficulty.EASY) == ["sunrise"]
        assert db.path_for(Difficulty.EASY).read_bytes() == before


class TestRename:
    def test_missing_name_fails_and_leaves_file(self, db):
        db.insert_or_overwrite(Difficulty.EASY, make_record("dawn", 1))
        before = db.path_for(Difficulty.EASY).read_bytes()

        with pytest.raises(NotFoundError):
            db.rename(Difficulty.EASY, "sunrise", "sunset")
        assert db.path_for(Difficulty.EASY).read_bytes() == before

    def test_missing_name_on_empty_partition(self, db):
        with pytest.raises(NotFoundError):
            db.rename(Difficulty.EASY, "sunrise", "sunset")
        assert not db.path_for(Difficulty.EASY).exists()

    def test_rename_in_place(self, db, levels_dir):
        for i, name in enumerate(["a", "sunrise", "c"]):
            db.insert_or_overwrite(Difficulty.EASY, make_record(name, i))

        db.rename(Difficulty.EASY, "Sunrise", "Sunset")

        assert db.names(Difficulty.EASY) == ["a", "sunset", "c"]
        np.testing.assert_array_equal(db.get(Difficulty.EASY, "sunset").fingerprint,
                                      make_fingerprint(1))
        assert list(LevelDatabase(levels_dir).load(Difficulty.EASY)) == ["a", "sunset", "c"]

    def test_rename_onto_existing_name(self, db):
        db.insert_or_overwrite(Difficulty.EASY, make_record("a", 1))
        db.insert_or_overwrite(Difficulty.EASY, make_record("b", 2))
        with pytest.raises(LevelExistsError):
            db.rename(Difficulty.EASY, "a", "b")
        assert db.names(Difficulty.EASY) == ["a", "b"]

    def test_rename_only_touches_its_difficulty(self, db):
        db.insert_or_overwrite(Difficulty.EASY, make_record("sunrise", 1))
        db.insert_or_overwrite(Difficulty.HARD, make_record("sunrise", 2))
        db.rename(Difficulty.HARD, "sunrise", "sunset")
        assert db.names(Difficulty.EASY) == ["sunrise"]
        assert db.names(Difficulty.HARD) == ["sunset"]


class TestRemove:
    def test_missing_name_fails(self, db):
        with pytest.raises(NotFoundError):
            db.remove(Difficulty.MEDIUM, "nothing")

    def test_remove_persists(self, db, levels_dir):
        db.insert_or_overwrite(Difficulty.EASY, make_record("a", 1))
        db.insert_or_overwrite(Difficulty.EASY, make_record("b", 2))

        removed = db.remove(Difficulty.EASY, "A")

        assert removed.name == "a"
        assert db.names(Difficulty.EASY) == ["b"]
        assert list(LevelDatabase(levels_dir).load(Difficulty.EASY)) == ["b"]


class TestReplacePartition:
    def test_replace_partition(self, db, levels_dir):
        db.insert_or_overwrite(Difficulty.EASY, make_record("old", 1))
        db.replace_partition(Difficulty.EASY, [make_record("new", 2)])
        assert db.names(Difficulty.EASY) == ["new"]
        assert list(LevelDatabase(levels_dir).load(Difficulty.EASY)) == ["new"]

    def test_save_with_records_replaces_memory(self, db, levels_dir):
        db.insert_or_overwrite(Difficulty.EASY, make_record("a", 1))
        db.save(Difficulty.EASY, [make_record("a", 1), make_record("b", 2)])
        db.insert_or_overwrite(Difficulty.EASY, make_record("c", 3))

        assert db.names(Difficulty.EASY) == ["a", "b", "c"]
        assert list(LevelDatabase(levels_dir).load(Difficulty.EASY)) == ["a", "b", "c"]

    def test_save_with_records_waits_for_readers(self, db):
        finished = threading.Event()

        def save():
            db.save(Difficulty.EASY, [make_record("a", 1)])
            finished.set()

        with db.reading(Difficulty.EASY):
            t = threading.Thread(target=save)
            t.start()
            assert not finished.wait(0.2)
        assert finished.wait(5)
        t.join(timeout=5)
        assert db.names(Difficulty.EASY) == ["a"]


class TestPartitionIndependence:
    def test_locked_partition_does_not_block_others(self, db):
        fp = make_fingerprint(1)
        db.insert_or_overwrite(Difficulty.HARD, LevelRecord("abyss", Difficulty.HARD, fp))
        results = []

        def lookups():
            results.append(db.get(Difficulty.HARD, "abyss").name)
            results.append(identify_level(db, Difficulty.HARD, fp)[0].name)
            db.insert_or_overwrite(Difficulty.HARD, make_record("cavern", 2, Difficulty.HARD))
            results.append(db.count(Difficulty.HARD))

        with db._locks[Difficulty.EASY].write_locked():
            t = threading.Thread(target=lookups)
            t.start()
            t.join(timeout=5)
            assert not t.is_alive()
        assert results == ["abyss", "abyss", 2]
