"""Session state — the selected source and the last published result."""

from dataclasses import dataclass

from imaging.buffer import NormalizedBuffer
from imaging.source import ImageSource


@dataclass(frozen=True)
class Session:
    """Immutable snapshot; replaced wholesale, never edited in place.

    ``buffer`` and ``radius`` are either both set (a run published) or
    both None (nothing published for ``source`` yet).
    """

    source: ImageSource | None = None
    buffer: NormalizedBuffer | None = None
    radius: int | None = None

    def __post_init__(self):
        if (self.buffer is None) != (self.radius is None):
            raise ValueError("buffer and radius must be set together")
        if self.buffer is not None and self.source is None:
            raise ValueError("a published buffer requires a source")

    @property
    def has_source(self) -> bool:
        return self.source is not None

    @property
    def has_result(self) -> bool:
        return self.buffer is not None

    def with_source(self, source: ImageSource | None) -> "Session":
        """New session for a fresh pick; derived state is dropped."""
        return Session(source=source)

    def with_result(self, buffer: NormalizedBuffer, radius: int) -> "Session":
        return Session(source=self.source, buffer=buffer, radius=radius)

    def describe(self) -> dict:
        """JSON-safe summary for status replies."""
        return {
            "source": self.source.name if self.source else None,
            "radius": self.radius,
            "width": self.buffer.width if self.buffer else None,
            "height": self.buffer.height if self.buffer else None,
        }
