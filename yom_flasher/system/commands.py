"""Discovery of the privileged system tools the flasher depends on.

Commands are resolved by probing a short, fixed list of absolute install
locations instead of searching PATH, so a privileged process can never be
tricked into running a binary planted earlier in a user-controlled PATH.

The result is an immutable CommandPathCache that is built once at startup
and handed to every component that runs a tool.
"""

import logging
import os
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from types import MappingProxyType

from yom_flasher.errors import COMMAND_NOT_FOUND, FlasherError

logger = logging.getLogger(__name__)

# Ordered candidate locations per logical command name
COMMAND_LOCATIONS: dict[str, tuple[str, ...]] = {
    "dd": ("/bin/dd", "/usr/bin/dd"),
    "lsblk": ("/bin/lsblk", "/usr/bin/lsblk"),
    "parted": ("/sbin/parted", "/usr/sbin/parted"),
    "resize2fs": ("/sbin/resize2fs", "/usr/sbin/resize2fs"),
    "e2fsck": ("/sbin/e2fsck", "/usr/sbin/e2fsck"),
    "udisksctl": ("/bin/udisksctl", "/usr/bin/udisksctl"),
    "sgdisk": ("/sbin/sgdisk", "/usr/sbin/sgdisk", "/usr/bin/sgdisk"),
    "partprobe": ("/sbin/partprobe", "/usr/sbin/partprobe"),
}

REQUIRED_COMMANDS: frozenset[str] = frozenset(
    {"dd", "lsblk", "parted", "e2fsck", "resize2fs", "udisksctl"}
)
# GPT repair helpers; partition extension falls back to parted without them
OPTIONAL_COMMANDS: frozenset[str] = frozenset({"sgdisk", "partprobe"})

# Distribution packages providing each command (Debian/Fedora naming agrees)
COMMAND_PACKAGES: dict[str, str] = {
    "dd": "coreutils",
    "lsblk": "util-linux",
    "parted": "parted",
    "resize2fs": "e2fsprogs",
    "e2fsck": "e2fsprogs",
    "udisksctl": "udisks2",
    "sgdisk": "gdisk",
    "partprobe": "parted",
}


class CommandNotFoundError(FlasherError):
    """A required command is not present in the command cache."""

    def __init__(self, names: Iterable[str]) -> None:
        self.names = sorted(set(names))
        super().__init__(
            f"Required command(s) not found: {', '.join(self.names)}. "
            f"Install: {' '.join(missing_packages_hint(self.names))}",
            error_code=COMMAND_NOT_FOUND,
        )


class CommandPathCache(Mapping[str, str]):
    """Read-only mapping of logical command name to absolute path."""

    def __init__(self, paths: Mapping[str, str] | None = None) -> None:
        self._paths = MappingProxyType(dict(paths or {}))

    def __getitem__(self, name: str) -> str:
        return self._paths[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._paths)

    def __len__(self) -> int:
        return len(self._paths)

    def __repr__(self) -> str:
        return f"CommandPathCache({dict(self._paths)!r})"

    def require(self, name: str) -> str:
        """Return the path for a command or fail before anything runs.

        Raises:
            CommandNotFoundError: The command was not located.
        """
        try:
            return self._paths[name]
        except KeyError:
            raise CommandNotFoundError([name]) from None

    def require_all(self, names: Iterable[str]) -> None:
        """Check that every command in names is available.

        Raises:
            CommandNotFoundError: Listing every missing name at once.
        """
        missing = [name for name in names if name not in self._paths]
        if missing:
            raise CommandNotFoundError(missing)


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def candidate_locations(
    name: str, extra_dirs: Iterable[Path | str] = ()
) -> list[str]:
    """Return the ordered candidate paths for a command name."""
    candidates = [str(Path(d) / name) for d in extra_dirs]
    candidates.extend(COMMAND_LOCATIONS.get(name, ()))
    return candidates


def find_command(name: str, extra_dirs: Iterable[Path | str] = ()) -> str | None:
    """Find the first executable location of a command.

    Args:
        name: Logical command name (e.g., 'parted').
        extra_dirs: Directories checked before the built-in locations.

    Returns:
        Absolute path, or None if no candidate is executable.
    """
    for candidate in candidate_locations(name, extra_dirs):
        if _is_executable(candidate):
            logger.debug("Command '%s' found at %s", name, candidate)
            return candidate
    logger.debug("Command '%s' not found in known locations", name)
    return None


def locate_commands(
    names: Iterable[str], extra_dirs: Iterable[Path | str] = ()
) -> tuple[CommandPathCache, set[str]]:
    """Locate a set of commands.

    Never raises: unresolved names are returned so the caller can report
    one aggregate "missing prerequisites" condition.

    Args:
        names: Logical command names to resolve.
        extra_dirs: Directories checked before the built-in locations.

    Returns:
        Tuple of (cache of resolved paths, set of unresolved names).
    """
    extra_dirs = list(extra_dirs)
    found: dict[str, str] = {}
    missing: set[str] = set()

    for name in sorted(set(names)):
        path = find_command(name, extra_dirs)
        if path is None:
            missing.add(name)
        else:
            found[name] = path

    if missing:
        logger.warning("Missing commands: %s", ", ".join(sorted(missing)))
    else:
        logger.info("All %d commands located", len(found))

    return CommandPathCache(found), missing


def missing_packages_hint(missing: Iterable[str]) -> list[str]:
    """Map missing command names to the packages that provide them."""
    packages: list[str] = []
    for name in sorted(set(missing)):
        package = COMMAND_PACKAGES.get(name, name)
        if package not in packages:
            packages.append(package)
    return packages


__all__ = [
    "COMMAND_LOCATIONS",
    "COMMAND_PACKAGES",
    "OPTIONAL_COMMANDS",
    "REQUIRED_COMMANDS",
    "CommandNotFoundError",
    "CommandPathCache",
    "find_command",
    "locate_commands",
    "missing_packages_hint",
    "candidate_locations",
]
