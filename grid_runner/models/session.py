"""Models for remote browser sessions."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from grid_runner.models.unit import Capability

type SessionStatus = Literal["idle", "busy", "draining", "dead"]


@dataclass(frozen=True, kw_only=True)
class SessionHandle:
    """Reference to one remote browser session on a grid node.

    The handle itself is immutable; its status lives in the session pool.
    """

    session_id: str
    capability: Capability
    node_url: str | None = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc), compare=False
    )
