"""Session token storage for one client instance."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class SessionStore:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.access_token)

    def set_tokens(self, access_token: str, refresh_token: Optional[str]) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None
