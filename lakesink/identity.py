from __future__ import annotations
import uuid
from typing import Optional, Protocol

class IdentitySource(Protocol):
    def new_identity(self) -> str: ...

class RandomIdentitySource:
    """Random commit-user tokens, optionally prefixed by the table's commit.user-prefix."""

    def __init__(self, prefix: Optional[str] = None):
        self.prefix = prefix

    def new_identity(self) -> str:
        token = str(uuid.uuid4())
        if self.prefix:
            return f"{self.prefix}_{token}"
        return token
