"""Acting organization and user, supplied by the host's auth layer."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ActorContext:
    org_id: str
    user_id: str | None = None
