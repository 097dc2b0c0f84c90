"""
Level Identifier — administrative entry point

Usage:
    python main.py --list [difficulty]                  List known levels
    python main.py --identify <path> [--difficulty d]   Identify a level image (default: easy)
    python main.py --rename <difficulty> <old> <new>    Rename a level
    python main.py --remove <difficulty> <name>         Remove a level
    python main.py --rebuild                            Replace every partition with fingerprints of the archived images
    python main.py --set-data-dir <path|default>        Store data under <path> from the next run on
    python main.py --save-images on|off                 Archive winning round images from the next run on
"""

import logging
import sys
from pathlib import Path

from config import LOG_LEVEL


def _open_database():
    from db.database import LevelDatabase
    db = LevelDatabase()
    db.load_all()
    return db


def _parse_difficulty(text: str):
    from levels.models import Difficulty
    try:
        return Difficulty.parse(text)
    except ValueError:
        names = ", ".join(d.directory for d in Difficulty)
        print(f"difficulty must be one of: {names}")
        sys.exit(1)


def run_list(difficulty=None):
    from levels.models import Difficulty

    db = _open_database()
    for d in ([difficulty] if difficulty is not None else list(Difficulty)):
        names = db.names(d)
        print(f"=== {d.label} ({len(names)} levels) ===")
        for name in sorted(names):
            print(f"  {name}")


def run_identify(image_path: str, difficulty):
    from identifier.matcher import confidence_label, identify_level
    from levels.fingerprint import DCTPlan, DecodeError, fingerprint_file

    db = _open_database()
    print(f"Identifying: {image_path}  [difficulty={difficulty.directory}]\n")

    try:
        fingerprint = fingerprint_file(image_path, DCTPlan())
    except (OSError, DecodeError) as exc:
        print(f"Cannot read image: {exc}")
        sys.exit(1)

    match = identify_level(db, difficulty, fingerprint)
    if match is None:
        print(f"No {difficulty.label} levels known yet.")
        return

    record, distance = match
    print(f">>> [{confidence_label(distance).upper():4s}] dist={distance:.4f}  {record.name}")


def run_rename(difficulty, old_name: str, new_name: str):
    from db.database import LevelExistsError, NotFoundError

    db = _open_database()
    try:
        db.rename(difficulty, old_name, new_name)
    except (NotFoundError, LevelExistsError, ValueError) as exc:
        print(f"error: {exc.args[0] if exc.args else exc}")
        sys.exit(1)
    print(f"Renamed {difficulty.label} level {old_name!r} -> {new_name!r}.")


def run_remove(difficulty, name: str):
    from db.database import NotFoundError

    db = _open_database()
    try:
        db.remove(difficulty, name)
    except NotFoundError as exc:
        print(f"error: {exc.args[0]}")
        sys.exit(1)
    print(f"Removed {difficulty.label} level {name!r}.")


def run_rebuild():
    from config import IMAGES_DIR
    from db.database import LevelDatabase
    from levels.fingerprint import DCTPlan, compute_all_fingerprints

    def log(msg):
        print(msg, flush=True)

    print("=== Level Identifier — Fingerprint Rebuild ===\n")
    records = compute_all_fingerprints(IMAGES_DIR, DCTPlan(), progress_callback=log)
    db = LevelDatabase()
    for difficulty, levels in records.items():
        db.replace_partition(difficulty, levels)
        print(f"Saved {len(levels):,} {difficulty.label} levels.")
    print("\nRebuild complete.")


def run_set_data_dir(value: str):
    from config import update_settings

    if value == "default":
        update_settings({"data_dir": None})
        print("Data directory reset to the default.")
        return
    data_dir = Path(value).expanduser().resolve()
    update_settings({"data_dir": str(data_dir)})
    print(f"Data directory set to {data_dir}.")


def run_set_save_images(value: str):
    from config import update_settings

    if value not in ("on", "off"):
        print("Usage: python main.py --save-images on|off")
        sys.exit(1)
    update_settings({"save_images": value == "on"})
    print(f"Image archiving turned {value}.")


def _value_after(args: list, flag: str, count: int, usage: str) -> list:
    idx = args.index(flag)
    values = args[idx + 1: idx + 1 + count]
    if len(values) < count:
        print(f"Usage: python main.py {usage}")
        sys.exit(1)
    return values


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s:%(name)s:%(message)s")
    args = sys.argv[1:]

    if "--list" in args:
        idx = args.index("--list")
        rest = args[idx + 1: idx + 2]
        run_list(_parse_difficulty(rest[0]) if rest else None)

    elif "--identify" in args:
        (path,) = _value_after(args, "--identify", 1,
                               "--identify <image_path> [--difficulty easy|medium|hard|legendary]")
        difficulty = _parse_difficulty("easy")
        if "--difficulty" in args:
            (text,) = _value_after(args, "--difficulty", 1,
                                   "--identify <image_path> --difficulty <difficulty>")
            difficulty = _parse_difficulty(text)
        run_identify(path, difficulty)

    elif "--rename" in args:
        d, old, new = _value_after(args, "--rename", 3, "--rename <difficulty> <old> <new>")
        run_rename(_parse_difficulty(d), old, new)

    elif "--remove" in args:
        d, name = _value_after(args, "--remove", 2, "--remove <difficulty> <name>")
        run_remove(_parse_difficulty(d), name)

    elif "--rebuild" in args:
        run_rebuild()

    elif "--set-data-dir" in args:
        (value,) = _value_after(args, "--set-data-dir", 1, "--set-data-dir <path|default>")
        run_set_data_dir(value)

    elif "--save-images" in args:
        (value,) = _value_after(args, "--save-images", 1, "--save-images on|off")
        run_set_save_images(value)

    else:
        print(__doc__)
