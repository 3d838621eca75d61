from __future__ import annotations

from .scheduler import (
    ConfigChanged,
    ControlEvent,
    ManualTrigger,
    ReloadTargets,
    SetAveraging,
)

HELP = (
    "commands: refresh | reload | average [on|off] | "
    "interval SECONDS | timeout SECONDS | payload tiny|small|medium|large|huge|giant"
)

_SETTINGS = {
    "interval": "refresh_interval",
    "timeout": "timeout",
    "payload": "payload_size",
}

_SWITCH = {"on": True, "off": False, "toggle": None}


class CommandError(ValueError):
    pass


def parse_command(line: str) -> ControlEvent:
    """Turn one line of operator input into a control loop event.

    Setting values are passed through unvalidated so that a bad value is
    rejected by the config port and reported like any other rejection.
    """
    words = line.split()
    if not words:
        raise CommandError("empty command")
    cmd, args = words[0].lower(), words[1:]

    if cmd in ("r", "refresh"):
        _expect_args(cmd, args, 0)
        return ManualTrigger()
    if cmd in ("l", "reload"):
        _expect_args(cmd, args, 0)
        return ReloadTargets()
    if cmd in ("a", "average"):
        if not args:
            return SetAveraging(None)
        _expect_args(cmd, args, 1)
        try:
            return SetAveraging(_SWITCH[args[0].lower()])
        except KeyError:
            raise CommandError(f"average: expected on, off or toggle, got {args[0]!r}") from None
    if cmd in _SETTINGS:
        _expect_args(cmd, args, 1)
        return ConfigChanged(_SETTINGS[cmd], args[0])
    raise CommandError(f"unknown command {cmd!r}; {HELP}")


def _expect_args(cmd: str, args, count: int) -> None:
    if len(args) != count:
        raise CommandError(f"{cmd}: expected {count} argument(s), got {len(args)}")
