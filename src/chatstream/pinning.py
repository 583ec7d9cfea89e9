"""Certificate pinning for the TLS handshake with the chat endpoint.

The validator trusts a connection when any certificate in the presented chain
(leaf, intermediate or root) is byte-for-byte one of the pinned DER
certificates. Matching the whole chain keeps working across leaf rotation as
long as the pinned root or intermediate is still served.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from importlib import resources
from collections.abc import Iterable

from .errors import PinningConfigError

logger = logging.getLogger(__name__)

DEFAULT_PIN_NAMES = ("g1sr",)
DEFAULT_PIN_PACKAGE = "chatstream.certs"
PIN_SUFFIX = ".der"


@dataclass(frozen=True)
class TrustDecision:
    trusted: bool
    identity: frozenset[bytes] = field(default_factory=frozenset)

    @classmethod
    def trust(cls, identity: Iterable[bytes]) -> TrustDecision:
        return cls(True, frozenset(identity))

    @classmethod
    def reject(cls) -> TrustDecision:
        return cls(False)

    def __bool__(self) -> bool:
        return self.trusted


def load_resource_pins(
    names: Iterable[str] = DEFAULT_PIN_NAMES, package: str = DEFAULT_PIN_PACKAGE
) -> list[bytes]:
    """Read ``<name>.der`` for each name from a package's resources.

    Missing or unreadable pins are skipped with a warning.
    """
    pins: list[bytes] = []
    root = resources.files(package)
    for name in names:
        try:
            pins.append((root / f"{name}{PIN_SUFFIX}").read_bytes())
        except OSError:
            logger.warning(
                "Pinned certificate %s%s missing from %s, pin skipped",
                name,
                PIN_SUFFIX,
                package,
            )
    return pins


def load_file_pins(paths: Iterable[str | os.PathLike[str]]) -> list[bytes]:
    pins: list[bytes] = []
    for path in paths:
        try:
            with open(path, "rb") as fh:
                pins.append(fh.read())
        except OSError:
            logger.warning("Pinned certificate %s unreadable, pin skipped", path)
    return pins


class TrustValidator:
    """Decides whether a presented certificate chain is trusted.

    Usage:
        validator = TrustValidator.from_resources()
        decision = validator(chain)  # chain: sequence of DER bytes
    """

    def __init__(self, pinned: Iterable[bytes]) -> None:
        self._pinned = frozenset(bytes(cert) for cert in pinned)
        if not self._pinned:
            raise PinningConfigError(
                "No pinned certificates loaded; refusing to build a validator "
                "that would reject every connection"
            )
        logger.debug("Trust validator holds %d pinned certificates", len(self._pinned))

    @classmethod
    def from_resources(
        cls,
        names: Iterable[str] = DEFAULT_PIN_NAMES,
        package: str = DEFAULT_PIN_PACKAGE,
    ) -> TrustValidator:
        return cls(load_resource_pins(names, package))

    @classmethod
    def from_paths(cls, paths: Iterable[str | os.PathLike[str]]) -> TrustValidator:
        return cls(load_file_pins(paths))

    @property
    def pinned(self) -> frozenset[bytes]:
        return self._pinned

    def evaluate(self, chain: Iterable[bytes]) -> TrustDecision:
        presented = frozenset(bytes(cert) for cert in chain)
        matched = presented & self._pinned
        if matched:
            return TrustDecision.trust(matched)
        logger.warning(
            "Rejected certificate chain of %d certificates: no pinned match",
            len(presented),
        )
        return TrustDecision.reject()

    __call__ = evaluate
