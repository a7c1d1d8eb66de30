"""Session user representation resolved by the session provider."""
from dataclasses import dataclass


@dataclass(frozen=True)
class SessionUser:
    """
    Identity of the signed-in user.

    `id` is the opaque subject supplied by the OAuth broker. It is the owner
    value for every bookmark read and write; nothing else about the user is
    stored locally.
    """

    id: str
    email: str | None = None
