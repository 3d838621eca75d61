from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Union

from icmplib import AsyncSocket, ICMPRequest, ICMPv4Socket, ICMPv6Socket
from icmplib.exceptions import ICMPLibError, SocketPermissionError, TimeoutExceeded

from .config import PayloadSize
from .registry import Target

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Success:
    rtt_ms: float
    ok = True


@dataclass(frozen=True)
class Timeout:
    ok = False


@dataclass(frozen=True)
class TransportError:
    message: str
    ok = False


ProbeOutcome = Union[Success, Timeout, TransportError]
OUTCOME_TYPES = (Success, Timeout, TransportError)

TIMEOUT = Timeout()


class FacilityError(Exception):
    """No ICMP socket could be opened for an IP version."""


class ProbeFacility:
    """Shared, read-only handle for one IP version.

    Holds the socket flavour that worked at startup; each probe opens its own
    socket from it so concurrent probes never read each other's replies.
    """

    _SOCKETS = {4: ICMPv4Socket, 6: ICMPv6Socket}

    def __init__(self, version: int, privileged: bool):
        self.version = version
        self.privileged = privileged

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"ProbeFacility(version={self.version}, privileged={self.privileged})"

    def open(self) -> AsyncSocket:
        return AsyncSocket(self._SOCKETS[self.version](privileged=self.privileged))

    @classmethod
    def acquire(cls, version: int) -> "ProbeFacility":
        """Find a working socket flavour: raw sockets first, then ICMP datagram sockets."""
        errors = []
        for privileged in (True, False):
            try:
                sock = cls._SOCKETS[version](privileged=privileged)
            except (ICMPLibError, OSError) as exc:
                errors.append(f"privileged={privileged}: {exc}")
                continue
            sock.close()
            logger.debug("IPv%d probing via %s sockets", version,
                         "raw" if privileged else "datagram")
            return cls(version, privileged)
        raise FacilityError(
            f"cannot open an ICMP socket for IPv{version} ({'; '.join(errors)})"
        )


def acquire_facilities(
    required: Iterable[int], optional: Iterable[int] = ()
) -> Dict[int, ProbeFacility]:
    """Acquire facilities; failures for ``required`` versions are fatal."""
    required = set(required)
    facilities: Dict[int, ProbeFacility] = {}
    for version in sorted(required | set(optional)):
        try:
            facilities[version] = ProbeFacility.acquire(version)
        except FacilityError as exc:
            if version in required:
                raise
            logger.warning("%s; IPv%d targets will report errors", exc, version)
    return facilities


def random_identifier() -> int:
    return random.randint(0, 0xFFFF)


class Prober:
    def __init__(self, facilities: Dict[int, ProbeFacility]):
        self.facilities = facilities

    def facility_for(self, target: Target) -> Optional[ProbeFacility]:
        return self.facilities.get(target.version)

    async def probe(
        self, target: Target, timeout: float, payload_size: PayloadSize
    ) -> ProbeOutcome:
        """Send one echo request to ``target`` and wait up to ``timeout`` seconds.

        Never raises for network conditions: timeouts and transport failures
        come back as ``Timeout`` and ``TransportError``.
        """
        facility = self.facility_for(target)
        if facility is None:
            return TransportError(f"no IPv{target.version} probing facility")

        request = ICMPRequest(
            destination=str(target.address),
            id=random_identifier(),
            sequence=random_identifier(),
            payload_size=payload_size.nbytes,
        )
        try:
            with facility.open() as sock:
                sock.send(request)
                # replies are matched on id and sequence; other traffic on
                # the socket is skipped inside receive()
                reply = await sock.receive(request, timeout)
                reply.raise_for_status()
                return Success(round((reply.time - request.time) * 1000, 3))
        except TimeoutExceeded:
            return TIMEOUT
        except SocketPermissionError as exc:
            return TransportError(f"permission denied: {exc}")
        except ICMPLibError as exc:
            return TransportError(str(exc) or type(exc).__name__)
        except OSError as exc:
            return TransportError(exc.strerror or str(exc))
