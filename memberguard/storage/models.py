from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

ANONYMOUS = "Anonymous"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    normalized_email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    mobile_no: str = ""
    billing_address: str = ""
    shipping_address: str = ""
    credit_card_encrypted: Optional[str] = None
    current_session_id: Optional[str] = None
    last_login_at: Optional[datetime] = None
    last_password_changed_at: Optional[datetime] = None
    password_expiry_at: Optional[datetime] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    failed_access_count: int = 0
    lockout_end_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        normalized_email: str,
        password_hash: str,
        **profile: str,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            normalized_email=normalized_email,
            password_hash=password_hash,
            **profile,
        )


@dataclass
class PasswordHistoryEntry:
    account_id: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class RecoveryCode:
    """A single-use 2FA backup code, stored as a digest of its normalised form."""

    account_id: str
    code_hash: str
    created_at: datetime = field(default_factory=utcnow)
    consumed_at: Optional[datetime] = None


@dataclass
class PasswordResetToken:
    token_hash: str
    account_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    consumed_at: Optional[datetime] = None


@dataclass
class AuditLogEntry:
    action: str
    details: str
    is_successful: bool
    user_id: str = ANONYMOUS
    user_email: str = ANONYMOUS
    ip_address: str = "Unknown"
    user_agent: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    hash_prev: Optional[str] = None
    hash_current: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
