from __future__ import annotations

import ipaddress
import json
import logging
from dataclasses import dataclass
from typing import Dict, Union

from . import config

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class LoadError(Exception):
    """The target list could not be read or parsed."""


@dataclass(frozen=True)
class Target:
    name: str
    address: IPAddress

    @property
    def version(self) -> int:
        return self.address.version


def _pairs_last_wins(pairs):
    seen: Dict[str, object] = {}
    for key, value in pairs:
        if key in seen:
            logger.warning("duplicate target name %r, keeping the later entry", key)
        seen[key] = value
    return seen


def parse_targets(text: str) -> Dict[str, Target]:
    """Parse a JSON object of ``name -> IP literal`` into targets, sorted by name."""
    try:
        raw = json.loads(text, object_pairs_hook=_pairs_last_wins)
    except json.JSONDecodeError as exc:
        raise LoadError(f"invalid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise LoadError(
            f"expected an object of name -> address, got {type(raw).__name__}"
        )

    targets: Dict[str, Target] = {}
    for name in sorted(raw):
        value = raw[name]
        if not isinstance(value, str):
            raise LoadError(f"{name}: address must be a string, got {value!r}")
        try:
            address = ipaddress.ip_address(value.strip())
        except ValueError as exc:
            raise LoadError(f"{name}: {exc}") from exc
        targets[name] = Target(name, address)
    return targets


class TargetRegistry:
    def __init__(self, path: str = config.SITES_FILE):
        self.path = path

    def load(self) -> Dict[str, Target]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as exc:
            raise LoadError(f"cannot read {self.path}: {exc}") from exc
        targets = parse_targets(text)
        logger.debug("loaded %d targets from %s", len(targets), self.path)
        return targets
