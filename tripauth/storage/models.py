from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from tripauth.service.errors import InvalidProfile


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


PROFILE_VISIBILITY_CHOICES = ("public", "friends", "private")


@dataclass
class Account:
    id: str
    external_id: str
    email: str
    username: str
    first_name: str
    last_name: str = ""
    phone: Optional[str] = None
    bio: str = ""
    location: str = ""
    website: str = ""
    languages: List[str] = field(default_factory=list)
    interests: List[str] = field(default_factory=list)
    travel_style: Optional[str] = None
    profile_visibility: str = "public"
    email_notifications: bool = True
    push_notifications: bool = True
    profile_photo_url: Optional[str] = None
    external_photo_url: Optional[str] = None
    is_active: bool = True
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @staticmethod
    def generate_username(first_name: str, last_name: str) -> str:
        """Concatenate the names with a random suffix.

        Uniqueness is probabilistic; the stores reject the rare collision.
        """
        return f"{first_name}{last_name}{uuid.uuid4().hex[:8]}"

    @classmethod
    def new(
        cls,
        external_id: str,
        email: str,
        first_name: str,
        last_name: str = "",
        photo_url: str | None = None,
        *,
        now: datetime | None = None,
    ) -> "Account":
        missing = [
            name
            for name, value in (
                ("external_id", external_id),
                ("email", email),
                ("first_name", first_name),
            )
            if not value
        ]
        if missing:
            raise InvalidProfile(
                "external identity is missing required fields",
                detail={"missing": missing},
            )
        stamp = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            external_id=external_id,
            email=email,
            username=cls.generate_username(first_name, last_name or ""),
            first_name=first_name,
            last_name=last_name or "",
            profile_photo_url=photo_url or None,
            external_photo_url=photo_url or None,
            created_at=stamp,
            updated_at=stamp,
        )

    def record_login(self, now: datetime) -> None:
        self.last_login = now
        self.updated_at = now

    def deactivate(self, now: datetime) -> None:
        self.is_active = False
        self.updated_at = now

    def activate(self, now: datetime) -> None:
        self.is_active = True
        self.updated_at = now


@dataclass
class Session:
    """One authenticated device or browser.

    ``expires_at`` is the access token's expiry and is the only expiry the
    session tracks; both validation and refresh judge validity against it.
    """

    id: str
    account_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    external_access_token: Optional[str] = None
    external_refresh_token: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        account_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        *,
        external_access_token: str | None = None,
        external_refresh_token: str | None = None,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        if not account_id:
            raise ValueError("account_id is required")
        if not access_token or not refresh_token:
            raise ValueError("access and refresh tokens are required")
        stamp = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            external_access_token=external_access_token,
            external_refresh_token=external_refresh_token,
            ip_addr=ip_addr,
            user_agent=user_agent,
            is_active=True,
            created_at=stamp,
            last_used_at=stamp,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return self.is_active and not self.is_expired(now)

    def rotate_tokens(
        self, access_token: str, refresh_token: str, expires_at: datetime, now: datetime
    ) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.expires_at = expires_at
        self.last_used_at = now

    def update_external_tokens(
        self, access_token: str, refresh_token: str | None, now: datetime
    ) -> None:
        self.external_access_token = access_token
        if refresh_token:
            self.external_refresh_token = refresh_token
        self.last_used_at = now

    def touch(self, now: datetime) -> None:
        self.last_used_at = now

    def deactivate(self, now: datetime) -> None:
        self.is_active = False
        self.last_used_at = now
