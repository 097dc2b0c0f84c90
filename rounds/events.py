"""
Events exchanged between the round coordinator and the chat transport.

Inbound events are decoded by the transport from whatever the game bot posts
(embeds, edits, plain messages).  Outbound notices are handed to the
coordinator's listener for relay to the console, a browser feed, etc.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from levels.models import Difficulty


# ── Inbound ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RoundStarted:
    channel_id: int
    url: str
    difficulty: Difficulty
    # Already-fetched image; when None the coordinator fetches ``url`` itself.
    image_bytes: bytes | None = None


@dataclass(frozen=True)
class GuessSubmitted:
    channel_id: int
    author_id: int
    text: str


@dataclass(frozen=True)
class RoundResolved:
    channel_id: int
    # Raw announcement text; it mentions the winner as <@id> or <@!id>.
    description: str


@dataclass(frozen=True)
class RoundTimedOut:
    channel_id: int


RoundEvent = Union[RoundStarted, GuessSubmitted, RoundResolved, RoundTimedOut]


# ── Outbound ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RoundOpened:
    channel_id: int
    difficulty: Difficulty


@dataclass(frozen=True)
class GuessComputed:
    channel_id: int
    name: str
    distance: float


@dataclass(frozen=True)
class ResolutionOutcome:
    channel_id: int
    answer: str
    correct: bool
    known_before: bool


@dataclass(frozen=True)
class RoundExpired:
    channel_id: int


Notice = Union[RoundOpened, GuessComputed, ResolutionOutcome, RoundExpired]
