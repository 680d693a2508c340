"""Stage and schedule model for the ramp load generator.

A schedule is an ordered list of stages. Each stage linearly moves the number
of virtual users from the level the previous stage ended on to its own target
over its duration, the same way k6 ``stages`` behave.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Sequence, Tuple, Union

DurationLike = Union[int, float, str]

_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_DURATION_RE = re.compile(r"(?:\d+(?:\.\d+)?(?:ms|h|m|s))+")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")


class ConfigError(ValueError):
    """Raised when a load profile is invalid. Nothing runs after this."""


def parse_duration(value: DurationLike, field_name: str = "duration") -> float:
    """Return ``value`` in seconds.

    Numbers are taken as seconds. Strings may be a bare number or a k6 style
    duration such as ``"90s"``, ``"2m"``, ``"1h30m"`` or ``"500ms"``.
    """

    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be a number or duration string, got {value!r}")

    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        text = value.strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            if not _DURATION_RE.fullmatch(text):
                raise ConfigError(f"{field_name} {value!r} is not a valid duration") from None
            seconds = sum(
                float(amount) * _UNIT_SECONDS[unit] for amount, unit in _DURATION_PART_RE.findall(text)
            )
    else:
        raise ConfigError(f"{field_name} must be a number or duration string, got {type(value).__name__}")

    if not math.isfinite(seconds) or seconds <= 0:
        raise ConfigError(f"{field_name} must be positive, got {value!r}")
    return seconds


def _validate_concurrency(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{field_name} must be a non-negative integer, got {value!r}")
    if value < 0:
        raise ConfigError(f"{field_name} must be a non-negative integer, got {value!r}")
    return value


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class Stage:
    """One segment of a load profile."""

    duration: float
    target: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "duration", parse_duration(self.duration, "stage duration"))
        _validate_concurrency(self.target, "stage target")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Stage":
        """Build a stage from ``{duration_seconds|duration, target_concurrency|target}``."""

        if not isinstance(raw, dict):
            raise ConfigError(f"stage must be a mapping, got {raw!r}")

        duration = raw.get("duration_seconds", raw.get("duration"))
        target = raw.get("target_concurrency", raw.get("target"))
        if duration is None:
            raise ConfigError(f"stage {raw!r} is missing duration_seconds")
        if target is None:
            raise ConfigError(f"stage {raw!r} is missing target_concurrency")
        return cls(duration=duration, target=target)


@dataclass(frozen=True)
class _Segment:
    start: float
    end: float
    from_level: int
    to_level: int

    def level_at(self, elapsed: float) -> int:
        progress = (elapsed - self.start) / (self.end - self.start)
        return _round_half_up(self.from_level + (self.to_level - self.from_level) * progress)


class Schedule:
    """Concurrency levels over time for an ordered list of stages."""

    def __init__(self, stages: Sequence[Stage], start_concurrency: int = 0) -> None:
        if not stages:
            raise ConfigError("a schedule needs at least one stage")
        self.stages: Tuple[Stage, ...] = tuple(stages)
        self.start_concurrency = _validate_concurrency(start_concurrency, "start_concurrency")

        segments: List[_Segment] = []
        offset = 0.0
        level = self.start_concurrency
        for stage in self.stages:
            segments.append(_Segment(offset, offset + stage.duration, level, stage.target))
            offset += stage.duration
            level = stage.target
        self._segments = segments

    @property
    def total_duration(self) -> float:
        return self._segments[-1].end

    @property
    def max_concurrency(self) -> int:
        return max([self.start_concurrency] + [stage.target for stage in self.stages])

    @property
    def final_concurrency(self) -> int:
        return self.stages[-1].target

    def stage_at(self, elapsed: float) -> int:
        """Return the index of the stage running at ``elapsed`` seconds."""

        for index, segment in enumerate(self._segments):
            if elapsed < segment.end:
                return index
        return len(self._segments) - 1

    def concurrency_at(self, elapsed: float) -> int:
        """Return the scheduled number of virtual users at ``elapsed`` seconds."""

        if elapsed <= 0:
            return self.start_concurrency
        for segment in self._segments:
            if elapsed < segment.end:
                return segment.level_at(elapsed)
        return self.final_concurrency

    def checkpoints(self, tick_interval: float = 1.0) -> Iterator[Tuple[float, int]]:
        """Yield ``(elapsed, level)`` every ``tick_interval`` seconds.

        The last checkpoint is always ``(total_duration, final level)``.
        """

        if isinstance(tick_interval, bool) or not tick_interval > 0:
            raise ConfigError(f"tick_interval must be positive, got {tick_interval!r}")

        total = self.total_duration
        steps = math.ceil(total / tick_interval)
        for index in range(steps):
            elapsed = index * tick_interval
            if elapsed >= total:
                break
            yield elapsed, self.concurrency_at(elapsed)
        yield total, self.final_concurrency

    def describe(self) -> str:
        parts = [
            f"{segment.from_level} -> {segment.to_level} over {segment.end - segment.start:g}s"
            for segment in self._segments
        ]
        return ", ".join(parts)

    def __repr__(self) -> str:
        return f"Schedule({self.describe()})"
