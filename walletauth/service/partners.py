from __future__ import annotations

from typing import Iterable, Protocol

from walletauth.service.errors import ForbiddenError


class PartnerRegistry(Protocol):
    def exists(self, audience: str) -> bool: ...

    def assert_exists(self, audience: str) -> None: ...


class AllowListPartnerRegistry:
    """Partner audiences from configuration; an empty list admits any audience."""

    def __init__(self, audiences: Iterable[str] = ()) -> None:
        self.audiences = frozenset(a for a in audiences if a)

    def exists(self, audience: str) -> bool:
        if not audience:
            return False
        return not self.audiences or audience in self.audiences

    def assert_exists(self, audience: str) -> None:
        if not self.exists(audience):
            raise ForbiddenError("unknown partner", detail={"audience": audience})
