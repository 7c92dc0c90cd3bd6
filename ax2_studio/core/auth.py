from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

SIGNED_IN_POOL = "signed_in"
ANONYMOUS_POOL = "anonymous"


class AccountContext(BaseModel):
    account_id: str
    is_logged_in: bool = False
    email: Optional[str] = None

    @property
    def pool(self) -> str:
        return SIGNED_IN_POOL if self.is_logged_in else ANONYMOUS_POOL


def session_from_headers(device_id: str | None, email: str | None) -> AccountContext:
    account_id = (device_id or "local").strip() or "local"
    clean = (email or "").strip().lower()
    if clean:
        return AccountContext(account_id=account_id, is_logged_in=True, email=clean)
    return AccountContext(account_id=account_id)
