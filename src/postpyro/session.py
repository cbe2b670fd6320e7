"""Per-connection server session state established by the handshake."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field


class TransactionStatus(enum.Enum):
    """Transaction status reported by every ReadyForQuery."""

    IDLE = "I"
    IN_TRANSACTION = "T"
    IN_FAILED_TRANSACTION = "E"

    @classmethod
    def from_byte(cls, value: int) -> "TransactionStatus":
        return cls(chr(value))


_VERSION_RE = re.compile(r"(\d+)(?:\.(\d+))?(?:\.(\d+))?")


@dataclass
class Session:
    """Negotiated state of one server session.

    Owned by exactly one connection. ``parameters`` is kept current with
    every ParameterStatus message, including ones sent mid-session after a
    ``SET``.
    """

    protocol_version: tuple[int, int] = (3, 0)
    parameters: dict[str, str] = field(default_factory=dict)
    backend_pid: int = 0
    backend_secret: int = 0
    transaction_status: TransactionStatus = TransactionStatus.IDLE

    @property
    def server_version(self) -> str | None:
        return self.parameters.get("server_version")

    @property
    def server_version_info(self) -> tuple[int, ...]:
        """``server_version`` as an integer tuple, e.g. ``(16, 2)``."""
        match = _VERSION_RE.match(self.server_version or "")
        if match is None:
            return ()
        return tuple(int(part) for part in match.groups() if part is not None)

    @property
    def timezone(self) -> str | None:
        return self.parameters.get("TimeZone")

    @property
    def in_transaction(self) -> bool:
        return self.transaction_status is not TransactionStatus.IDLE

    @property
    def in_failed_transaction(self) -> bool:
        return self.transaction_status is TransactionStatus.IN_FAILED_TRANSACTION
