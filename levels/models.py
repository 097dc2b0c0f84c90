"""
Level catalogue types shared by the fingerprint database, the matcher and the
round coordinator.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

import numpy as np


class Difficulty(IntEnum):
    """Difficulty tier of a level.  The integer value is the on-disk tag."""

    EASY = 0
    MEDIUM = 1
    HARD = 2
    LEGENDARY = 3

    @classmethod
    def from_tag(cls, tag: int) -> "Difficulty":
        # Unknown tags read as Easy, matching files written by older builds.
        try:
            return cls(tag)
        except ValueError:
            return cls.EASY

    @classmethod
    def parse(cls, text: str) -> "Difficulty":
        """Parse "easy", "Medium", "HARD" ... into a Difficulty."""
        try:
            return cls[text.strip().upper()]
        except KeyError:
            raise ValueError(f"unknown difficulty: {text!r}") from None

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @property
    def directory(self) -> str:
        return self.name.lower()


def normalize_name(text: str) -> str:
    """Case-normalise a level name or a submitted guess."""
    return text.strip().lower()


@dataclass
class LevelRecord:
    name: str
    difficulty: Difficulty
    # shape (3, NUM_COEFFICIENTS), float32, channels in R, G, B order
    fingerprint: np.ndarray
