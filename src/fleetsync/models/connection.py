"""Per-user delegated authorization to the upstream platform."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from fleetsync.models.sync import utc_now


class RiseXConnection(SQLModel, table=True):
    """
    One row per user. Tokens are only ever stored as vault ciphertext.

    Written exclusively by TokenManager.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(unique=True, index=True)

    upstream_user_id: Optional[str] = None  # "sub" claim from userinfo
    upstream_email: Optional[str] = None

    access_token_encrypted: str
    refresh_token_encrypted: Optional[str] = None
    token_expires_at: datetime
    token_type: Optional[str] = None
    scopes: str = ""  # space-delimited, as issued

    is_active: bool = Field(default=True, index=True)
    deactivated_reason: Optional[str] = None
    deactivated_at: Optional[datetime] = None

    connected_at: datetime = Field(default_factory=utc_now)
    last_token_refresh_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def scope_list(self) -> list:
        return self.scopes.split() if self.scopes else []
