"""Captured screen frames handed from the capture pipeline to inference."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum

import structlog

logger = structlog.get_logger()


class PixelFormat(str, Enum):
    BGRA32 = "bgra32"
    RGB24 = "rgb24"
    GRAYSCALE8 = "grayscale8"

    @property
    def bytes_per_pixel(self) -> int:
        return _BYTES_PER_PIXEL[self]


_BYTES_PER_PIXEL = {
    PixelFormat.BGRA32: 4,
    PixelFormat.RGB24: 3,
    PixelFormat.GRAYSCALE8: 1,
}


@dataclass(frozen=True)
class ScreenFrame:
    """Raw pixel buffer plus its geometry."""

    data: bytes
    width: int
    height: int
    timestamp_ticks: int = 0
    format: PixelFormat = PixelFormat.BGRA32
    frame_id: int = 0

    @property
    def stride(self) -> int:
        return self.width * self.format.bytes_per_pixel

    @property
    def expected_length(self) -> int:
        return self.width * self.height * self.format.bytes_per_pixel

    @property
    def is_valid(self) -> bool:
        """True iff the buffer length matches width * height * bytes per pixel."""
        return len(self.data) == self.expected_length


def forwardable_frames(frames: Iterable[ScreenFrame]) -> Iterator[ScreenFrame]:
    """Yield only frames that may be passed on to inference."""
    for frame in frames:
        if frame.is_valid:
            yield frame
        else:
            logger.warning(
                "invalid_frame_dropped",
                frame_id=frame.frame_id,
                width=frame.width,
                height=frame.height,
                format=frame.format.value,
                length=len(frame.data),
                expected=frame.expected_length,
            )
