"""Authorization for privileged power actions.

The agent only sees a function ``authorize(caller, action) -> bool``; how the
policy is sourced is up to whoever builds it.
"""

import logging
from typing import Callable, Iterable, Optional

from bootherd.protocol import PowerAction

logger = logging.getLogger(__name__)

Authorizer = Callable[[str, PowerAction], bool]


def caller_host(peer: str) -> str:
    """Extract the host from a gRPC peer string.

    "ipv4:10.0.0.5:51234" -> "10.0.0.5", "ipv6:[::1]:51234" -> "::1",
    "unix:/run/agent.sock" -> "/run/agent.sock".
    """
    kind, _, rest = peer.partition(":")
    if kind == "ipv6" and rest.startswith("["):
        return rest[1:rest.index("]")] if "]" in rest else rest[1:]
    if kind == "ipv4":
        return rest.rpartition(":")[0] or rest
    return rest or peer


def allow_all(caller: str, action: PowerAction) -> bool:
    return True


class AllowListPolicy:
    """Allow configured actions for configured caller hosts.

    An empty caller list means any caller may request the allowed actions.
    """

    def __init__(self, allowed_actions: Iterable[PowerAction], allowed_callers: Optional[Iterable[str]] = None):
        self.allowed_actions = frozenset(PowerAction(a) for a in allowed_actions)
        self.allowed_callers = frozenset(allowed_callers or ())

    def __call__(self, caller: str, action: PowerAction) -> bool:
        if action not in self.allowed_actions:
            logger.warning(f"Denied {action.value} for {caller}: action not allowed")
            return False
        if self.allowed_callers and caller_host(caller) not in self.allowed_callers:
            logger.warning(f"Denied {action.value} for {caller}: caller not allowed")
            return False
        return True
