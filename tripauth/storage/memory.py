from __future__ import annotations

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from tripauth.logging import get_logger
from tripauth.service.profile import ProfileMutation, apply_profile_mutations
from tripauth.storage.errors import ConstraintViolation, RecordNotFound, StaleRecord
from tripauth.storage.models import Account, Session
from tripauth.storage.sealing import TokenSealer


class MemoryStore:
    """In-process account and session store with JSON snapshot persistence.

    Records are copied on the way in and on the way out so callers can never
    mutate stored state without going through an update call.
    """

    def __init__(
        self, fs_root: str = "/tmp/tripauth", *, sealer: TokenSealer | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.sealer = sealer

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    # -- accounts -----------------------------------------------------------

    def _check_account_unique(self, account: Account) -> None:
        for other in self.accounts.values():
            if other.id == account.id:
                continue
            if other.username == account.username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if not (other.is_active and account.is_active):
                continue
            if other.external_id == account.external_id:
                raise ConstraintViolation(
                    "external identity already linked", {"field": "external_id"}
                )
            if other.email.lower() == account.email.lower():
                raise ConstraintViolation("email already exists", {"field": "email"})

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.id in self.accounts:
                raise ConstraintViolation("account id already exists", {"field": "id"})
            self._check_account_unique(account)
            self.accounts[account.id] = copy.deepcopy(account)
            self._persist_state()
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or not account.is_active:
                return None
            return copy.deepcopy(account)

    def get_account_by_external_id(self, external_id: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.external_id == external_id and a.is_active
                ),
                None,
            )
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.email.lower() == email.lower() and a.is_active
                ),
                None,
            )
            return copy.deepcopy(account) if account else None

    def update_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.id not in self.accounts:
                raise RecordNotFound("account not found", {"account_id": account.id})
            self._check_account_unique(account)
            self.accounts[account.id] = copy.deepcopy(account)
            self._persist_state()
            return copy.deepcopy(account)

    def deactivate_account(self, account_id: str, now: datetime) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.deactivate(now)
            self._persist_state()
            return True

    def apply_profile_mutations(
        self, account_id: str, mutations: Sequence[ProfileMutation], now: datetime
    ) -> Optional[Account]:
        """Atomic partial update; the whole read-modify-write runs under the lock."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or not account.is_active:
                return None
            updated = apply_profile_mutations(account, mutations, now)
            if updated is not account:
                self.accounts[account_id] = copy.deepcopy(updated)
                self._persist_state()
            return copy.deepcopy(updated)

    # -- sessions -----------------------------------------------------------

    def _check_session_unique(self, session: Session) -> None:
        for other in self.sessions.values():
            if other.id == session.id:
                continue
            if other.access_token == session.access_token:
                raise ConstraintViolation(
                    "access token already in use", {"field": "access_token"}
                )
            if other.refresh_token == session.refresh_token:
                raise ConstraintViolation(
                    "refresh token already in use", {"field": "refresh_token"}
                )

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"field": "id"})
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": session.account_id}
                )
            self._check_session_unique(session)
            self.sessions[session.id] = copy.deepcopy(session)
            self._persist_state()
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def get_session_by_access_token(self, access_token: str) -> Optional[Session]:
        with self._data_lock:
            session = next(
                (s for s in self.sessions.values() if s.access_token == access_token),
                None,
            )
            return copy.deepcopy(session) if session else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            session = next(
                (s for s in self.sessions.values() if s.refresh_token == refresh_token),
                None,
            )
            return copy.deepcopy(session) if session else None

    def list_active_sessions(self, account_id: str) -> List[Session]:
        with self._data_lock:
            active = [
                s
                for s in self.sessions.values()
                if s.account_id == account_id and s.is_active
            ]
            active.sort(key=lambda s: (s.created_at, s.id))
            return [copy.deepcopy(s) for s in active]

    def count_active_sessions(self, account_id: str, now: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for s in self.sessions.values()
                if s.account_id == account_id and s.is_valid(now)
            )

    def update_session(
        self, session: Session, *, expected_refresh_token: str | None = None
    ) -> Session:
        with self._data_lock:
            current = self.sessions.get(session.id)
            if current is None:
                raise RecordNotFound("session not found", {"session_id": session.id})
            if (
                expected_refresh_token is not None
                and current.refresh_token != expected_refresh_token
            ):
                raise StaleRecord(
                    "session was modified concurrently", {"session_id": session.id}
                )
            self._check_session_unique(session)
            self.sessions[session.id] = copy.deepcopy(session)
            self._persist_state()
            return copy.deepcopy(session)

    def rotate_session_tokens(
        self,
        session_id: str,
        expected_refresh_token: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        now: datetime,
    ) -> None:
        """Swap in a new token pair if the session is active and unrotated."""
        with self._data_lock:
            current = self.sessions.get(session_id)
            if current is None:
                raise RecordNotFound("session not found", {"session_id": session_id})
            if current.refresh_token != expected_refresh_token or not current.is_active:
                raise StaleRecord(
                    "session was modified concurrently", {"session_id": session_id}
                )
            candidate = copy.deepcopy(current)
            candidate.rotate_tokens(access_token, refresh_token, expires_at, now)
            self._check_session_unique(candidate)
            self.sessions[session_id] = candidate
            self._persist_state()

    def touch_session(self, session_id: str, access_token: str, now: datetime) -> bool:
        with self._data_lock:
            current = self.sessions.get(session_id)
            if current is None or not current.is_active or current.access_token != access_token:
                return False
            current.touch(now)
            self._persist_state()
            return True

    def deactivate_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            current = self.sessions.get(session_id)
            if current is None:
                return False
            if current.is_active:
                current.deactivate(now)
                self._persist_state()
            return True

    def set_external_tokens(
        self,
        session_id: str,
        access_token: str,
        external_access_token: str,
        external_refresh_token: str | None,
        now: datetime,
    ) -> bool:
        with self._data_lock:
            current = self.sessions.get(session_id)
            if current is None or not current.is_active or current.access_token != access_token:
                return False
            current.update_external_tokens(external_access_token, external_refresh_token, now)
            self._persist_state()
            return True

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is None:
                raise RecordNotFound("session not found", {"session_id": session_id})
            self._persist_state()

    def delete_account_sessions(self, account_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.account_id == account_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def deactivate_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                s for s in self.sessions.values() if s.is_active and s.is_expired(now)
            ]
            for session in expired:
                session.deactivate(now)
            if expired:
                self._persist_state()
            return len(expired)

    # -- persistence --------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "auth_store_loaded", accounts=len(self.accounts), sessions=len(self.sessions)
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _seal(self, value: Optional[str]) -> Optional[str]:
        return self.sealer.seal(value) if self.sealer else value

    def _unseal(self, value: Optional[str]) -> Optional[str]:
        return self.sealer.unseal(value) if self.sealer else value

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "external_id": account.external_id,
            "email": account.email,
            "username": account.username,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "phone": account.phone,
            "bio": account.bio,
            "location": account.location,
            "website": account.website,
            "languages": list(account.languages),
            "interests": list(account.interests),
            "travel_style": account.travel_style,
            "profile_visibility": account.profile_visibility,
            "email_notifications": account.email_notifications,
            "push_notifications": account.push_notifications,
            "profile_photo_url": account.profile_photo_url,
            "external_photo_url": account.external_photo_url,
            "is_active": account.is_active,
            "last_login": self._serialize_datetime(account.last_login),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            external_id=data["external_id"],
            email=data["email"],
            username=data["username"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            phone=data.get("phone"),
            bio=data.get("bio", ""),
            location=data.get("location", ""),
            website=data.get("website", ""),
            languages=list(data.get("languages") or []),
            interests=list(data.get("interests") or []),
            travel_style=data.get("travel_style"),
            profile_visibility=data.get("profile_visibility", "public"),
            email_notifications=data.get("email_notifications", True),
            push_notifications=data.get("push_notifications", True),
            profile_photo_url=data.get("profile_photo_url"),
            external_photo_url=data.get("external_photo_url"),
            is_active=data.get("is_active", True),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "account_id": session.account_id,
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
            "external_access_token": self._seal(session.external_access_token),
            "external_refresh_token": self._seal(session.external_refresh_token),
            "expires_at": self._serialize_datetime(session.expires_at),
            "ip_addr": session.ip_addr,
            "user_agent": session.user_agent,
            "is_active": session.is_active,
            "created_at": self._serialize_datetime(session.created_at),
            "last_used_at": self._serialize_datetime(session.last_used_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            account_id=data["account_id"],
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            external_access_token=self._unseal(data.get("external_access_token")),
            external_refresh_token=self._unseal(data.get("external_refresh_token")),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_used_at=self._deserialize_datetime(data["last_used_at"]),
        )
