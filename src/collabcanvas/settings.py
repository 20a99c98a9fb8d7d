"""Configuration helpers for running a canvas room."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, TypeVar

from .tools import DEFAULT_PROXIMITY_THRESHOLD
from .verification import DEFAULT_MAX_ITERATIONS, DEFAULT_SETTLE_DELAY

ENV_PREFIX = "COLLABCANVAS_"

N = TypeVar("N", int, float)


def _normalise_path(value: str | None) -> Path | None:
    if value is None:
        return None

    trimmed = value.strip()
    if not trimmed:
        return None

    return Path(trimmed).expanduser()


def _normalise_optional_string(value: str | None) -> str | None:
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def _parse_number(
    source: Mapping[str, str],
    name: str,
    *,
    parse: Callable[[str], N],
    default: N,
    minimum: N,
    inclusive: bool = True,
) -> N:
    raw = source.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default

    kind = "an integer" if parse is int else "a number"
    try:
        value = parse(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}{name} must be {kind}.") from exc

    if value < minimum or (not inclusive and value == minimum):
        bound = "at least" if inclusive else "greater than"
        raise ValueError(f"{ENV_PREFIX}{name} must be {bound} {minimum}.")
    return value


@dataclass(frozen=True)
class CanvasSettings:
    """Runtime settings for a canvas room.

    Values come from ``COLLABCANVAS_*`` environment variables so the CLI and
    the web service can be tuned without code changes. Blank variables are
    treated as unset.
    """

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    settle_delay: float = DEFAULT_SETTLE_DELAY
    removal_threshold: float = DEFAULT_PROXIMITY_THRESHOLD
    snapshot_size: int = 1024
    llm_provider: str | None = None
    llm_model: str | None = None
    llm_config_path: Path | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "CanvasSettings":
        """Return settings populated from ``environ`` (defaults to :data:`os.environ`)."""

        source = environ if environ is not None else os.environ

        return cls(
            max_iterations=_parse_number(
                source,
                "MAX_ITERATIONS",
                parse=int,
                default=DEFAULT_MAX_ITERATIONS,
                minimum=1,
            ),
            settle_delay=_parse_number(
                source,
                "SETTLE_DELAY",
                parse=float,
                default=DEFAULT_SETTLE_DELAY,
                minimum=0.0,
            ),
            removal_threshold=_parse_number(
                source,
                "REMOVAL_THRESHOLD",
                parse=float,
                default=DEFAULT_PROXIMITY_THRESHOLD,
                minimum=0.0,
                inclusive=False,
            ),
            snapshot_size=_parse_number(
                source, "SNAPSHOT_SIZE", parse=int, default=1024, minimum=1
            ),
            llm_provider=_normalise_optional_string(
                source.get(ENV_PREFIX + "LLM_PROVIDER")
            ),
            llm_model=_normalise_optional_string(source.get(ENV_PREFIX + "LLM_MODEL")),
            llm_config_path=_normalise_path(source.get(ENV_PREFIX + "LLM_CONFIG")),
        )


__all__ = ["CanvasSettings", "ENV_PREFIX"]
