"""Platform and relay direction constants."""

from __future__ import annotations

from typing import Literal

Platform = Literal["telegram", "discord"]
Direction = Literal["one-way", "two-way"]

# Platform A / platform B. One-way channels only relay A -> B.
TELEGRAM: Platform = "telegram"
DISCORD: Platform = "discord"
PLATFORMS: tuple[Platform, ...] = (TELEGRAM, DISCORD)

ONE_WAY: Direction = "one-way"
TWO_WAY: Direction = "two-way"
DIRECTIONS: tuple[Direction, ...] = (ONE_WAY, TWO_WAY)

# Accepted spellings in config / legacy rows
_DIRECTION_ALIASES: dict[str, Direction] = {
    "one-way": ONE_WAY,
    "oneway": ONE_WAY,
    "two-way": TWO_WAY,
    "two-ways": TWO_WAY,
    "twoway": TWO_WAY,
}

# Hard message length limits per destination
MAX_LENGTH: dict[Platform, int] = {TELEGRAM: 4096, DISCORD: 2000}


def other_platform(platform: Platform) -> Platform:
    """Return the opposite side of the bridge."""
    if platform == TELEGRAM:
        return DISCORD
    if platform == DISCORD:
        return TELEGRAM
    raise ValueError(f"Unknown platform: {platform!r}")


def parse_platform(value: object) -> Platform:
    """Validate a platform name; raises ValueError."""
    text = str(value).strip().lower()
    if text == TELEGRAM:
        return TELEGRAM
    if text == DISCORD:
        return DISCORD
    raise ValueError(f"Unknown platform: {value!r}")


def parse_direction(value: object) -> Direction:
    """Validate a direction; raises ValueError."""
    direction = _DIRECTION_ALIASES.get(str(value).strip().lower())
    if direction is None:
        raise ValueError(f"Unknown direction: {value!r}")
    return direction
