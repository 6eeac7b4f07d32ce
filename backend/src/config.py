"""Runtime configuration — tunable pipeline constants with env overrides.

The intensity ceiling and the pass count have no hard derivation; they are
kept here as named parameters rather than baked into the pipeline.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIMENSION = 2160
DEFAULT_BLUR_PASSES = 2
DEFAULT_MAX_INTENSITY = 150
DEFAULT_DEBOUNCE_MS = 200


def _default_pictures_dir() -> Path:
    return Path.home() / "Pictures" / "Blurwall"


@dataclass(frozen=True)
class BlurConfig:
    """Pipeline parameters shared by scheduler, coordinator and exporter."""

    max_dimension: int = DEFAULT_MAX_DIMENSION
    blur_passes: int = DEFAULT_BLUR_PASSES
    max_intensity: int = DEFAULT_MAX_INTENSITY
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    pictures_dir: Path = field(default_factory=_default_pictures_dir)

    @property
    def debounce_s(self) -> float:
        return self.debounce_ms / 1000.0

    @classmethod
    def from_env(cls, environ: dict | None = None) -> "BlurConfig":
        """Build a config from BLURWALL_* environment variables.

        Invalid values are logged and replaced by the default.
        """
        env = os.environ if environ is None else environ
        pictures = env.get("BLURWALL_PICTURES_DIR", "")
        return cls(
            max_dimension=_int_env(
                env, "BLURWALL_MAX_DIMENSION", DEFAULT_MAX_DIMENSION, minimum=1
            ),
            blur_passes=_int_env(
                env, "BLURWALL_BLUR_PASSES", DEFAULT_BLUR_PASSES, minimum=0
            ),
            max_intensity=_int_env(
                env, "BLURWALL_MAX_INTENSITY", DEFAULT_MAX_INTENSITY, minimum=0
            ),
            debounce_ms=_int_env(
                env, "BLURWALL_DEBOUNCE_MS", DEFAULT_DEBOUNCE_MS, minimum=0
            ),
            pictures_dir=Path(pictures).expanduser()
            if pictures
            else _default_pictures_dir(),
        )


def _int_env(env, name: str, default: int, *, minimum: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("%s=%r is not an integer, using %d", name, raw, default)
        return default
    if value < minimum:
        logger.warning("%s=%d below minimum %d, using %d", name, value, minimum, default)
        return default
    return value
