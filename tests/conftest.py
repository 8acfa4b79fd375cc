"""Shared fixtures for yom_flasher tests.

The device operations only talk to the system through an executor, so
tests script a FakeExecutor with canned command results instead of
touching real block devices.
"""

import json
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

import pytest

from yom_flasher.config import Settings
from yom_flasher.flash.device import LSBLK_COLUMNS
from yom_flasher.system.commands import (
    OPTIONAL_COMMANDS,
    REQUIRED_COMMANDS,
    CommandPathCache,
)
from yom_flasher.system.context import FlasherContext
from yom_flasher.system.executor import CommandResult

ALL_COMMANDS = REQUIRED_COMMANDS | OPTIONAL_COMMANDS


@dataclass
class Rule:
    """Canned outcome for commands whose arguments start with a prefix."""

    name: str
    prefix: tuple[str, ...]
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    lines: tuple[str, ...] = ()
    raises: Exception | None = None


@dataclass
class FakeExecutor:
    """Scripted stand-in for PrivilegedExecutor.

    Rules registered later take precedence. Unscripted commands succeed
    with empty output. Every call is recorded as (name, *args).
    """

    commands: CommandPathCache = field(
        default_factory=lambda: fake_commands(ALL_COMMANDS)
    )
    rules: list[Rule] = field(default_factory=list)
    calls: list[tuple[str, ...]] = field(default_factory=list)

    def on(
        self,
        name: str,
        *prefix: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = 0,
        lines: Sequence[str] = (),
        raises: Exception | None = None,
    ) -> "FakeExecutor":
        self.rules.append(
            Rule(name, tuple(prefix), stdout, stderr, exit_code, tuple(lines), raises)
        )
        return self

    def _match(self, name: str, args: Sequence[str]) -> Rule:
        for rule in reversed(self.rules):
            if rule.name == name and tuple(args[: len(rule.prefix)]) == rule.prefix:
                return rule
        return Rule(name, ())

    def _result(self, name: str, args: Sequence[str], rule: Rule) -> CommandResult:
        return CommandResult(
            argv=(self.commands[name], *args),
            stdout=rule.stdout,
            stderr=rule.stderr,
            exit_code=rule.exit_code,
        )

    def called(self, name: str) -> list[tuple[str, ...]]:
        return [call for call in self.calls if call[0] == name]

    async def run(
        self,
        name: str,
        args: Sequence[str] = (),
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> CommandResult:
        self.commands.require(name)
        self.calls.append((name, *args))
        rule = self._match(name, args)
        if rule.raises is not None:
            raise rule.raises
        result = self._result(name, args, rule)
        if check:
            result.raise_for_status()
        return result

    async def stream_stderr(
        self, name: str, args: Sequence[str] = ()
    ) -> AsyncIterator[str]:
        self.commands.require(name)
        self.calls.append((name, *args))
        rule = self._match(name, args)
        if rule.raises is not None:
            raise rule.raises
        for line in rule.lines:
            yield line
        self._result(name, args, rule).raise_for_status()


def fake_commands(names) -> CommandPathCache:
    return CommandPathCache({name: f"/usr/sbin/{name}" for name in names})


def make_context(executor: FakeExecutor, **settings: Any) -> FlasherContext:
    """Context whose executor is the given fake."""
    context = FlasherContext(
        settings=Settings(**settings), commands=executor.commands
    )
    context.executor = executor  # type: ignore[assignment]
    return context


def lsblk_json(*nodes: dict[str, Any]) -> str:
    return json.dumps({"blockdevices": list(nodes)})


def disk(
    name: str,
    size: int,
    *,
    model: str | None = None,
    rm: bool = False,
    children: Sequence[dict[str, Any]] = (),
    mountpoint: str | None = None,
) -> dict[str, Any]:
    node: dict[str, Any] = {
        "path": f"/dev/{name}",
        "name": name,
        "size": size,
        "model": model,
        "fstype": None,
        "mountpoint": mountpoint,
        "pkname": None,
        "type": "disk",
        "rm": rm,
    }
    if children:
        node["children"] = list(children)
    return node


def part(
    name: str,
    parent: str,
    *,
    mountpoint: str | None = None,
    fstype: str | None = "ext4",
    children: Sequence[dict[str, Any]] = (),
) -> dict[str, Any]:
    node: dict[str, Any] = {
        "path": f"/dev/{name}",
        "name": name,
        "size": 1024**3,
        "model": None,
        "fstype": fstype,
        "mountpoint": mountpoint,
        "pkname": parent,
        "type": "part",
        "rm": False,
    }
    if children:
        node["children"] = list(children)
    return node


# Host with the OS on /dev/sda2 and a 512 GB removable card reader on /dev/sdb
SYSTEM_LSBLK = lsblk_json(
    disk(
        "sda",
        256_060_514_304,
        model="Samsung SSD 860",
        children=[
            part("sda1", "sda", mountpoint="/boot/efi", fstype="vfat"),
            part("sda2", "sda", mountpoint="/"),
        ],
    ),
    disk(
        "sdb",
        512_110_190_592,
        model="SD Card Reader",
        rm=True,
        children=[
            part("sdb1", "sdb", mountpoint="/media/user/boot", fstype="vfat"),
            part("sdb2", "sdb"),
        ],
    ),
)

# lsblk -J -b -o PATH,TYPE,MOUNTPOINT /dev/sdb after a fresh flash
EJECT_LSBLK = json.dumps(
    {
        "blockdevices": [
            {
                "path": "/dev/sdb",
                "type": "disk",
                "mountpoint": None,
                "children": [
                    {"path": "/dev/sdb1", "type": "part", "mountpoint": "/media/boot"},
                    {"path": "/dev/sdb2", "type": "part", "mountpoint": None},
                    {"path": "/dev/sdb3", "type": "part", "mountpoint": None},
                ],
            }
        ]
    }
)

PARTED_PRINT = """\
Model: Generic SD Card Reader (scsi)
Disk /dev/sdb: 512GB
Sector size (logical/physical): 512B/512B
Partition Table: gpt
Disk Flags:

Number  Start   End     Size    File system  Name     Flags
 1      1049kB  269MB   268MB   fat32        boot     boot, esp
 2      269MB   1343MB  1074MB  ext4         rootfs
 3      1343MB  2147MB  804MB   ext4         data

"""


@pytest.fixture
def fake_executor() -> FakeExecutor:
    """Executor with every command located and nothing scripted."""
    return FakeExecutor()


@pytest.fixture
def system_executor() -> FakeExecutor:
    """Executor whose lsblk reports the OS disk and a removable target."""
    executor = FakeExecutor()
    executor.on("lsblk", "-J", "-b", "-o", LSBLK_COLUMNS, stdout=SYSTEM_LSBLK)
    return executor


@pytest.fixture
def image_file(tmp_path):
    """A 2 GiB sparse image file."""
    path = tmp_path / "yom-node.img"
    with open(path, "wb") as f:
        f.truncate(2 * 1024**3)
    return path
