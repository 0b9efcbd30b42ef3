from __future__ import annotations

"""Error taxonomy shared by the tracking core."""


class DepthTrackError(Exception):
    """Base class for tracker errors."""


class ConfigurationError(DepthTrackError, ValueError):
    """Dimensional or structural mismatch in session configuration."""


class DecodeError(DepthTrackError, ValueError):
    """A depth frame could not be converted into a metric depth matrix."""

    def __init__(
        self,
        message: str,
        *,
        frame_index: int | None = None,
        timestamp_s: float | None = None,
    ) -> None:
        super().__init__(message)
        self.frame_index = frame_index
        self.timestamp_s = timestamp_s

    def with_frame(self, frame_index: int | None, timestamp_s: float | None) -> "DecodeError":
        return DecodeError(self.args[0], frame_index=frame_index, timestamp_s=timestamp_s)

    def __str__(self) -> str:
        message = super().__str__()
        if self.frame_index is None and self.timestamp_s is None:
            return message
        return f"{message} (frame={self.frame_index}, stamp={self.timestamp_s})"


class ResourceUnavailable(DepthTrackError, FileNotFoundError):
    """A required external asset (mesh, shader, dataset file) is missing."""
