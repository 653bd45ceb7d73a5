"""
Credential capability.

Credentials are passed explicitly to the components that need them (the
HTTP artifact store, the host-automation action). They are never stored
in module globals or environment variables by this package, and their
``repr`` never shows secret material, so they are safe to log.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Credentials:
    """Basic or token credentials for an external collaborator.

    A token takes precedence over username/password when both are set.
    """

    username: str | None = None
    password: str | None = field(default=None, repr=False)
    token: str | None = field(default=None, repr=False)

    @property
    def is_empty(self) -> bool:
        return not (self.token or self.username)

    def auth_header(self) -> dict[str, str]:
        """Bearer header for token auth; empty for basic auth or none."""
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def basic_auth(self) -> tuple[str, str] | None:
        if self.token or not self.username:
            return None
        return (self.username, self.password or "")

    def as_variables(self) -> dict[str, str]:
        """Flatten for host-automation extra vars."""
        out: dict[str, str] = {}
        if self.username:
            out["username"] = self.username
        if self.password:
            out["password"] = self.password
        if self.token:
            out["token"] = self.token
        return out

    def __repr__(self) -> str:
        kind = "token" if self.token else "basic" if self.username else "none"
        return f"Credentials(kind={kind!r}, username={self.username!r})"


NO_CREDENTIALS = Credentials()
