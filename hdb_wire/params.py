"""
HANA Connection Parameters
==========================

The canonical set of options a connection is opened with.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from .protocol.constants import DEFAULT_MAX_MESSAGE_SIZE


class BusyPolicy(Enum):
    """What a second caller gets while a request is in flight"""
    WAIT = "wait"       # Queue behind the running request
    FAIL = "fail"       # Raise ConnectionBusy immediately


@dataclass(frozen=True)
class ConnectParams:
    """Configuration for a HANA server connection"""
    host: str
    port: int
    user: str
    password: Optional[str] = None
    token: Optional[str] = None
    use_tls: bool = False
    tls_verify: bool = True
    tls_ca_cert: Optional[str] = None
    client_locale: Optional[str] = None
    autocommit: bool = True
    session_options: Dict[str, str] = field(default_factory=dict)

    # Engine tuning
    connect_timeout: float = 30.0
    read_timeout: float = 300.0
    fetch_size: int = 32
    lob_read_length: int = 1024 * 1024
    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE
    busy_policy: BusyPolicy = BusyPolicy.WAIT

    def __post_init__(self):
        if not self.host:
            raise ValueError("host is required")
        if not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise ValueError(f"port must be in 1..65535, got {self.port!r}")
        if not self.user and self.token is None:
            raise ValueError("user is required")
        if (self.password is None) == (self.token is None):
            raise ValueError("exactly one of password or token is required")
        for name in ('fetch_size', 'lob_read_length', 'max_message_size'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.connect_timeout <= 0 or self.read_timeout <= 0:
            raise ValueError("timeouts must be positive")
        for key, value in self.session_options.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise ValueError(f"session option {key!r} must map a string to a string")
        if not isinstance(self.busy_policy, BusyPolicy):
            object.__setattr__(self, 'busy_policy', BusyPolicy(self.busy_policy))

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def __repr__(self):
        secret = 'password=***' if self.password is not None else 'token=***'
        return (f"ConnectParams(host={self.host!r}, port={self.port}, user={self.user!r}, "
                f"{secret}, use_tls={self.use_tls})")
