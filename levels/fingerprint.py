"""
Frequency-domain fingerprints for level images.

A fingerprint is the first NUM_COEFFICIENTS coefficients of an orthonormal
DCT-II taken over each colour plane of the image, after the image has been
resized to IMAGE_DIM x IMAGE_DIM and flattened row-major.  The transform is
1-D over the flattened plane, not a separable 2-D DCT; stored fingerprints
depend on that exact layout.

Only the kept coefficients are ever needed, so the "plan" is the matrix of
the first NUM_COEFFICIENTS DCT-II basis rows for the flattened length:
    basis : np.ndarray, shape (NUM_COEFFICIENTS, IMAGE_DIM**2), float64

Build it once with DCTPlan() at startup and pass it to every extraction:
    coefficients = planes @ basis.T       # (3, L) @ (L, N) -> (3, N)

Run via:  python main.py --rebuild   (recomputes every archived image)
or call:  extract_fingerprint(image_bytes, plan)
"""

from __future__ import annotations

import io
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

import numpy as np
from PIL import Image, UnidentifiedImageError
from tqdm import tqdm

from config import FINGERPRINT_WORKERS, IMAGE_DIM, NUM_COEFFICIENTS
from levels.models import Difficulty, LevelRecord, normalize_name

log = logging.getLogger(__name__)

_NUM_CHANNELS = 3


class DecodeError(ValueError):
    """Raised when image bytes cannot be decoded."""


class TransformLengthMismatch(RuntimeError):
    """Raised when the transform produced a coefficient block of the wrong shape."""


class DCTPlan:
    """
    Precomputed orthonormal DCT-II rows for a fixed signal length.

    X_k = s_k * sum_n x_n * cos(pi * (2n + 1) * k / (2L))
    with s_0 = sqrt(1/L) and s_k = sqrt(2/L) for k > 0.

    Building the basis costs O(N * L) cosines; construct one plan per process
    and share it.
    """

    def __init__(self, length: int = IMAGE_DIM * IMAGE_DIM,
                 n_coefficients: int = NUM_COEFFICIENTS):
        if n_coefficients < 1 or n_coefficients > length:
            raise ValueError(
                f"n_coefficients must be in [1, {length}], got {n_coefficients}"
            )
        self.length = length
        self.n_coefficients = n_coefficients

        k = np.arange(n_coefficients, dtype=np.float64)[:, None]
        n = np.arange(length, dtype=np.float64)[None, :]
        basis = np.cos(np.pi * (2.0 * n + 1.0) * k / (2.0 * length))
        basis[0] *= np.sqrt(1.0 / length)
        basis[1:] *= np.sqrt(2.0 / length)
        basis.setflags(write=False)
        self.basis = basis

    def apply(self, signals: np.ndarray) -> np.ndarray:
        """Transform each row of ``signals`` (shape (C, length)) → (C, n_coefficients)."""
        if signals.shape[-1] != self.length:
            raise TransformLengthMismatch(
                f"signal length {signals.shape[-1]} does not match plan length {self.length}"
            )
        return signals.astype(np.float64, copy=False) @ self.basis.T


def _decode(image_bytes: bytes) -> Image.Image:
    """Sniff the format from the content, decode, and normalise to RGB at IMAGE_DIM²."""
    if not image_bytes:
        raise DecodeError("empty image buffer")
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            rgb = img.convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise DecodeError(f"cannot decode image: {exc}") from exc
    # BILINEAR is Pillow's triangle filter; on downscale its support widens
    # with the scale factor, so it averages over the source area.
    return rgb.resize((IMAGE_DIM, IMAGE_DIM), Image.Resampling.BILINEAR)


def extract_fingerprint(image_bytes: bytes, plan: DCTPlan) -> np.ndarray:
    """Return the (3, NUM_COEFFICIENTS) float32 fingerprint of an encoded image."""
    img = _decode(image_bytes)

    # (H, W, 3) → (3, H*W), each plane row-major
    pixels = np.asarray(img, dtype=np.float32)
    planes = pixels.transpose(2, 0, 1).reshape(_NUM_CHANNELS, -1)

    coefficients = plan.apply(planes)
    if coefficients.shape != (_NUM_CHANNELS, NUM_COEFFICIENTS):
        raise TransformLengthMismatch(
            f"expected {(_NUM_CHANNELS, NUM_COEFFICIENTS)} coefficients, "
            f"got {coefficients.shape}"
        )
    return coefficients.astype(np.float32)


def fingerprint_file(image_path: str, plan: DCTPlan) -> np.ndarray:
    """Load an image file and return its fingerprint."""
    return extract_fingerprint(Path(image_path).read_bytes(), plan)


# ---------------------------------------------------------------------------
# Bulk rebuild from the image archive
# ---------------------------------------------------------------------------

def _archived_images(images_dir: Path) -> list[tuple[Difficulty, str, Path]]:
    """List (difficulty, name, path) for every <difficulty>/<name>.png in the archive."""
    found = []
    for difficulty in Difficulty:
        folder = images_dir / difficulty.directory
        if not folder.is_dir():
            continue
        for path in sorted(folder.glob("*.png")):
            found.append((difficulty, normalize_name(path.stem), path))
    return found


def _fingerprint_row(row, plan: DCTPlan) -> tuple[Difficulty, str, np.ndarray | None]:
    """Worker function: fingerprint one archived image. Returns (difficulty, name, fp | None)."""
    difficulty, name, path = row
    try:
        return difficulty, name, fingerprint_file(str(path), plan)
    except (OSError, DecodeError) as exc:
        log.warning("skipping %s: %s", path, exc)
        return difficulty, name, None


def compute_all_fingerprints(images_dir: Path, plan: DCTPlan,
                             progress_callback=None) -> dict[Difficulty, list[LevelRecord]]:
    """Recompute a fingerprint for every archived image.

    Returns the records grouped by difficulty, in file-name order within each
    difficulty so repeated rebuilds write identical partitions.
    """
    pending = _archived_images(Path(images_dir))
    results: dict[Difficulty, list[LevelRecord]] = {d: [] for d in Difficulty}

    if not pending:
        if progress_callback:
            progress_callback("No archived images found.")
        return results

    total = len(pending)
    if progress_callback:
        progress_callback(
            f"Fingerprinting {total:,} images ({FINGERPRINT_WORKERS} parallel workers)..."
        )

    fingerprints: dict[tuple[Difficulty, str], np.ndarray] = {}
    errors = 0

    with ThreadPoolExecutor(max_workers=FINGERPRINT_WORKERS) as executor:
        futures = [executor.submit(_fingerprint_row, row, plan) for row in pending]
        bar = tqdm(as_completed(futures), total=total, desc="Fingerprinting", unit="img")
        for future in bar:
            difficulty, name, fingerprint = future.result()
            if fingerprint is None:
                errors += 1
            else:
                fingerprints[(difficulty, name)] = fingerprint

    for difficulty, name, _ in pending:
        fingerprint = fingerprints.get((difficulty, name))
        if fingerprint is not None:
            results[difficulty].append(LevelRecord(name, difficulty, fingerprint))

    if progress_callback:
        progress_callback(
            f"Fingerprinting complete: {total - errors:,} ok, {errors} errors."
        )

    return results
