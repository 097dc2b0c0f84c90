import json
import os
from pathlib import Path

BASE_DIR = Path(__file__).parent

# Settings file lives next to this script and persists overrides such as the data directory.
_SETTINGS_FILE = BASE_DIR / "settings.json"

_DEFAULT_DATA_DIR = BASE_DIR / "data"


def _load_settings(path: Path = _SETTINGS_FILE) -> dict:
    if path.exists():
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            pass
    return {}


def update_settings(changes: dict, path: Path = None) -> dict:
    """Merge ``changes`` into settings.json and return the merged settings.

    A value of None drops the key so the built-in default applies again.
    Takes effect the next time the program starts.
    """
    path = Path(path) if path is not None else _SETTINGS_FILE
    current = _load_settings(path)
    for key, value in changes.items():
        if value is None:
            current.pop(key, None)
        else:
            current[key] = value
    path.write_text(json.dumps(current, indent=2, sort_keys=True), encoding="utf-8")
    return current


_settings = _load_settings()

DATA_DIR = Path(_settings.get("data_dir", _DEFAULT_DATA_DIR))
# One <difficulty>.bin file per difficulty partition
LEVELS_DIR = DATA_DIR / "levels"
# Archived winning images, laid out as <difficulty>/<name>.png
IMAGES_DIR = DATA_DIR / "images"

LOG_LEVEL = os.getenv("LOG_LEVEL", _settings.get("log_level", "INFO"))

# ── Fingerprinting ────────────────────────────────────────────────────────────
# Images are resized to IMAGE_DIM x IMAGE_DIM before the transform.
# Changing either value invalidates every stored fingerprint; run
# `python main.py --rebuild` afterwards.
IMAGE_DIM = 128

# DCT coefficients kept per colour channel (lowest frequencies first)
NUM_COEFFICIENTS = 10

# Level names starting with any of these prefixes are skipped on load.
# "s?" is the game bot's own command prefix; such names only end up in the
# database when a command message was mistaken for a guess.
EXCLUDED_NAME_PREFIXES: list[str] = ["s?"]

# Weighted distance below which a guess is considered confident.
CONFIDENT_DISTANCE = 500.0

# ── Rounds ────────────────────────────────────────────────────────────────────
DOWNLOAD_TIMEOUT = 15       # seconds per image request
FINGERPRINT_WORKERS = min(8, max(1, (os.cpu_count() or 4)))

# Archive the winning image of every learned round under IMAGES_DIR.
SAVE_IMAGES = bool(_settings.get("save_images", False))
