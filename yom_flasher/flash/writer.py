"""Writer module for raw image flashing.

This module handles the actual write operation:
- Write an image to a whole device with dd (synchronous, fsync'd writes)
- Parse dd's status=progress output into FlashProgress events
- Keep reported progress monotonic and finish with a terminal 100% event

The write is a byte-for-byte copy; no content verification is performed
after dd exits successfully. Cancelling the consumer kills dd and leaves
the device with a partial write that must be reflashed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

from yom_flasher.errors import (
    FLASH_FAILED,
    FLASH_SPAWN_FAILED,
    IMAGE_NOT_FOUND,
    INVALID_IMAGE_SIZE,
    FlasherError,
)
from yom_flasher.system.executor import (
    CommandFailedError,
    CommandSpawnError,
    PrivilegedExecutor,
    PrivilegeDeniedError,
)

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_SIZE = "4M"

# "2147483648 bytes (2.1 GB, 2.0 GiB) copied, 12 s, 179 MB/s"
_BYTES_PATTERN = re.compile(r"(\d+)\s+bytes")
_SPEED_PATTERN = re.compile(r",\s*([\d.,]+\s*[kKMGTP]?i?B/s)\s*$")

DONE_SPEED = "Done"


@dataclass(frozen=True)
class FlashProgress:
    """One progress observation during a flash.

    Attributes:
        percent: Integer percentage (0-100), non-decreasing within a flash.
        bytes_copied: Bytes written so far, as reported by dd.
        total_bytes: Size of the image being written.
        speed: Transfer rate text from dd (informational), or 'Done'.
        raw_line: The dd output segment this event was parsed from.
    """

    percent: int
    bytes_copied: int
    total_bytes: int
    speed: str = ""
    raw_line: str = ""

    @property
    def done(self) -> bool:
        return self.speed == DONE_SPEED

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        return {
            "percent": self.percent,
            "bytesCopied": self.bytes_copied,
            "totalBytes": self.total_bytes,
            "speed": self.speed,
        }


class ImageNotFoundError(FlasherError):
    """Image file does not exist."""

    def __init__(self, image_path: str) -> None:
        super().__init__(f"Image file not found: {image_path}", error_code=IMAGE_NOT_FOUND)
        self.image_path = image_path


class InvalidImageSizeError(FlasherError):
    """Image size is unknown or zero, so progress cannot be computed."""

    def __init__(self, total_bytes: int | None) -> None:
        super().__init__(
            f"Invalid image size ({total_bytes}). Select a valid image file "
            "before flashing.",
            error_code=INVALID_IMAGE_SIZE,
        )
        self.total_bytes = total_bytes


class FlashSpawnError(FlasherError):
    """dd could not be started."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            f"Failed to start flash process (dd): {reason}",
            error_code=FLASH_SPAWN_FAILED,
        )


class FlashProcessError(FlasherError):
    """dd exited with a non-zero status."""

    def __init__(self, exit_code: int, stderr: str) -> None:
        super().__init__(
            f"Flash process (dd) exited with code {exit_code}. "
            f"Stderr: {stderr.strip() or 'N/A'}",
            error_code=FLASH_FAILED,
        )
        self.exit_code = exit_code
        self.stderr = stderr


def get_image_size(image_path: str | Path) -> int:
    """Get the size of an image file in bytes.

    Raises:
        ImageNotFoundError: Path does not exist or is not a regular file.
    """
    path = Path(image_path)
    if not path.is_file():
        raise ImageNotFoundError(str(path))
    return path.stat().st_size


def build_dd_args(
    image_path: str | Path, device_path: str, block_size: str = DEFAULT_BLOCK_SIZE
) -> list[str]:
    """Build the dd argument list (without the dd path itself)."""
    return [
        f"if={image_path}",
        f"of={device_path}",
        f"bs={block_size}",
        "status=progress",
        "conv=fsync",
    ]


def parse_bytes_copied(line: str) -> int | None:
    """Extract the byte count from a dd progress segment, if any."""
    match = _BYTES_PATTERN.search(line)
    if match is None:
        return None
    return int(match.group(1))


def parse_speed(line: str) -> str:
    """Extract the trailing transfer rate (e.g., '179 MB/s'), or ''."""
    match = _SPEED_PATTERN.search(line)
    return match.group(1) if match else ""


def compute_percent(bytes_copied: int, total_bytes: int) -> int:
    """Percentage of total_bytes copied, rounded half up and capped at 100."""
    if bytes_copied >= total_bytes:
        return 100
    # Integer arithmetic keeps half-up rounding exact
    return min(100, (bytes_copied * 200 + total_bytes) // (total_bytes * 2))


class ProgressTracker:
    """Turns dd output segments into monotonic FlashProgress events."""

    def __init__(self, total_bytes: int) -> None:
        self.total_bytes = total_bytes
        self.percent = 0
        self.bytes_copied = 0

    def feed(self, line: str) -> FlashProgress | None:
        """Parse one segment; return an event, or None if it has no byte count."""
        copied = parse_bytes_copied(line)
        if copied is None:
            return None
        self.bytes_copied = max(self.bytes_copied, copied)
        self.percent = max(self.percent, compute_percent(copied, self.total_bytes))
        return FlashProgress(
            percent=self.percent,
            bytes_copied=copied,
            total_bytes=self.total_bytes,
            speed=parse_speed(line),
            raw_line=line,
        )

    def finish(self) -> FlashProgress:
        self.percent = 100
        return FlashProgress(
            percent=100,
            bytes_copied=max(self.bytes_copied, self.total_bytes),
            total_bytes=self.total_bytes,
            speed=DONE_SPEED,
        )


async def flash_image(
    executor: PrivilegedExecutor,
    image_path: str | Path,
    device_path: str,
    total_bytes: int | None,
    block_size: str = DEFAULT_BLOCK_SIZE,
) -> AsyncIterator[FlashProgress]:
    """Write an image to a device, yielding progress events.

    Args:
        executor: Executor with 'dd' located.
        image_path: Image file to write.
        device_path: Whole target device.
        total_bytes: Image size in bytes (drives the percentage).
        block_size: dd block size.

    Yields:
        FlashProgress per parsed dd segment, then one final 100% event.

    Raises:
        InvalidImageSizeError: total_bytes is None or not positive.
        ImageNotFoundError: Image file does not exist.
        CommandNotFoundError: dd was not located.
        FlashSpawnError: dd could not be started.
        PrivilegeDeniedError: dd lacked permission to open the device.
        FlashProcessError: dd exited non-zero.
    """
    if total_bytes is None or total_bytes <= 0:
        raise InvalidImageSizeError(total_bytes)
    if not Path(image_path).is_file():
        raise ImageNotFoundError(str(image_path))

    logger.info(
        "Flashing %s (%d bytes) to %s with bs=%s",
        image_path,
        total_bytes,
        device_path,
        block_size,
    )

    tracker = ProgressTracker(total_bytes)
    args = build_dd_args(image_path, device_path, block_size)
    try:
        async for line in executor.stream_stderr("dd", args):
            event = tracker.feed(line)
            if event is not None:
                yield event
            else:
                logger.debug("dd: %s", line)
    except PrivilegeDeniedError:
        logger.error("Insufficient privileges to write %s", device_path)
        raise
    except CommandSpawnError as e:
        logger.error("Failed to start dd: %s", e.message)
        raise FlashSpawnError(e.message) from e
    except CommandFailedError as e:
        logger.error("dd exited with code %d", e.exit_code)
        raise FlashProcessError(e.exit_code, e.stderr) from e

    logger.info("Flash of %s completed", device_path)
    yield tracker.finish()


__all__ = [
    "DEFAULT_BLOCK_SIZE",
    "FlashProcessError",
    "FlashProgress",
    "FlashSpawnError",
    "ImageNotFoundError",
    "InvalidImageSizeError",
    "ProgressTracker",
    "build_dd_args",
    "compute_percent",
    "flash_image",
    "get_image_size",
    "parse_bytes_copied",
    "parse_speed",
]
