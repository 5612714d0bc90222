from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    TypeVar,
    Union,
)

from tripauth.config import Settings
from tripauth.logging import get_logger
from tripauth.service.errors import (
    AccountNotFound,
    AuthenticationFailed,
    DuplicateIdentity,
    EmailNotVerified,
    ExchangeFailed,
    OperationTimeout,
    SessionInvalid,
    SessionNotFound,
    SubjectMismatch,
)
from tripauth.service.identity import ExternalProfile, IdentityExchange, new_oauth_state
from tripauth.service.profile import (
    ProfileMutation,
    ProfileUpdater,
    UnknownFieldPolicy,
    parse_profile_updates,
)
from tripauth.service.tokens import TokenCodec, TokenType
from tripauth.storage.errors import ConstraintViolation, RecordNotFound, StaleRecord
from tripauth.storage.models import Account, Session

logger = get_logger(__name__)

T = TypeVar("T")


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_access_token(self, access_token: str) -> Optional[Session]: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def list_active_sessions(self, account_id: str) -> List[Session]: ...

    def count_active_sessions(self, account_id: str, now: datetime) -> int: ...

    def update_session(
        self, session: Session, *, expected_refresh_token: str | None = None
    ) -> Session: ...

    def rotate_session_tokens(
        self,
        session_id: str,
        expected_refresh_token: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        now: datetime,
    ) -> None: ...

    def touch_session(self, session_id: str, access_token: str, now: datetime) -> bool: ...

    def deactivate_session(self, session_id: str, now: datetime) -> bool: ...

    def set_external_tokens(
        self,
        session_id: str,
        access_token: str,
        external_access_token: str,
        external_refresh_token: str | None,
        now: datetime,
    ) -> bool: ...

    def delete_session(self, session_id: str) -> None: ...

    def delete_account_sessions(self, account_id: str) -> int: ...

    def deactivate_expired_sessions(self, now: datetime) -> int: ...


class AccountStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_external_id(self, external_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def create_account(self, account: Account) -> Account: ...

    def update_account(self, account: Account) -> Account: ...

    def deactivate_account(self, account_id: str, now: datetime) -> bool: ...


@dataclass
class LoginResult:
    account: Account
    session_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime

    def as_credentials(self) -> dict[str, Any]:
        return {
            "account_id": self.account.id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
        }


@dataclass
class RefreshResult:
    session_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime

    def as_credentials(self) -> dict[str, Any]:
        return {"access_token": self.access_token, "expires_at": self.expires_at}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Login, refresh, logout and token validation over pluggable stores.

    Store calls are synchronous and run on worker threads; every store and
    identity-provider call is bounded by a timeout and surfaces
    ``OperationTimeout`` instead of hanging the caller.
    """

    def __init__(
        self,
        accounts: AccountStore,
        sessions: SessionStore,
        identity: IdentityExchange,
        codec: TokenCodec,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.accounts = accounts
        self.sessions = sessions
        self.identity = identity
        self.codec = codec
        self.settings = settings
        self.max_sessions = settings.max_sessions_per_user
        self.store_timeout = settings.store_timeout_seconds
        self.identity_timeout = settings.identity_timeout_seconds
        self.profiles = ProfileUpdater(accounts)
        self.logger = logger
        self._clock = clock or _utcnow
        self._pending_undo: set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return self._clock()

    async def _store(
        self,
        func: Callable[..., T],
        *args: Any,
        timeout: float | None = None,
        undo: Callable[[], Any] | None = None,
        **kwargs: Any,
    ) -> T:
        """Run a blocking store call on a worker thread, bounded by ``timeout``.

        The worker thread cannot be interrupted, so a write may still land
        after the caller has been told it timed out. When ``undo`` is given it
        runs once such a late write completes, including after the caller
        is cancelled.
        """
        limit = self.store_timeout if timeout is None else timeout
        operation = getattr(func, "__name__", "store_call")
        call = asyncio.create_task(asyncio.to_thread(func, *args, **kwargs))
        try:
            return await asyncio.wait_for(
                asyncio.shield(call) if undo is not None else call, limit
            )
        except asyncio.CancelledError:
            if undo is not None:
                self._undo_late_write(call, undo, operation)
            raise
        except asyncio.TimeoutError as exc:
            self.logger.error("auth_store_timeout", operation=operation, timeout=limit)
            if undo is not None:
                self._undo_late_write(call, undo, operation)
            raise OperationTimeout(
                "store call timed out", detail={"operation": operation}
            ) from exc

    def _undo_late_write(
        self, call: asyncio.Task, undo: Callable[[], Any], operation: str
    ) -> None:
        async def revert() -> None:
            try:
                await call
            except Exception as exc:
                # nothing was written
                self.logger.warning(
                    "auth_store_late_write_failed", operation=operation, error=str(exc)
                )
                return
            try:
                await asyncio.to_thread(undo)
            except Exception as exc:
                self.logger.error(
                    "auth_store_undo_failed", operation=operation, error=str(exc)
                )
                return
            self.logger.warning("auth_store_late_write_reverted", operation=operation)

        task = asyncio.create_task(revert())
        self._pending_undo.add(task)
        task.add_done_callback(self._pending_undo.discard)

    async def settle(self) -> None:
        """Wait until every late write from a timed-out call has been reverted."""
        while self._pending_undo:
            await asyncio.gather(*list(self._pending_undo))

    async def _upstream(
        self, awaitable: Awaitable[T], operation: str, timeout: float | None = None
    ) -> T:
        limit = self.identity_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(awaitable, limit)
        except asyncio.TimeoutError as exc:
            self.logger.error("auth_identity_timeout", operation=operation, timeout=limit)
            raise OperationTimeout(
                "identity provider call timed out", detail={"operation": operation}
            ) from exc

    def authorization_url(self, state: str | None = None) -> tuple[str, str]:
        """Return the provider consent URL and the state it embeds."""
        state = state or new_oauth_state()
        return self.identity.authorization_url(state), state

    async def login(
        self,
        code: str,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        *,
        timeout: float | None = None,
    ) -> LoginResult:
        try:
            external_tokens = await self._upstream(
                self.identity.exchange_code(code), "exchange_code", timeout
            )
            profile = await self._upstream(
                self.identity.fetch_profile(external_tokens.access_token),
                "fetch_profile",
                timeout,
            )
        except AuthenticationFailed as exc:
            self.logger.warning(
                "auth_login_upstream_failed",
                error_code=exc.error_code,
                reason=type(exc).__name__,
                cause=repr(exc.__cause__) if exc.__cause__ else None,
            )
            raise
        if not profile.email_verified:
            self.logger.warning("auth_login_email_unverified", external_id=profile.external_id)
            raise EmailNotVerified(
                "email address is not verified with the identity provider"
            )

        now = self._now()
        account = await self._resolve_account(profile, now, timeout)

        pair = self.codec.issue(account.id)
        await self._enforce_session_quota(account.id, now, timeout)
        session = Session.new(
            account.id,
            pair.access_token,
            pair.refresh_token,
            pair.access_expires_at,
            external_access_token=external_tokens.access_token,
            external_refresh_token=external_tokens.refresh_token,
            ip_addr=ip_addr,
            user_agent=user_agent,
            now=now,
        )
        await self._store(
            self.sessions.create_session,
            session,
            timeout=timeout,
            undo=functools.partial(self.sessions.delete_session, session.id),
        )
        self.logger.info(
            "auth_login_succeeded", account_id=account.id, session_id=session.id
        )
        return LoginResult(
            account=account,
            session_id=session.id,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_at=pair.access_expires_at,
        )

    async def _resolve_account(
        self, profile: ExternalProfile, now: datetime, timeout: float | None
    ) -> Account:
        account = await self._store(
            self.accounts.get_account_by_external_id, profile.external_id, timeout=timeout
        )
        if account is not None:
            account.record_login(now)
            return await self._store(self.accounts.update_account, account, timeout=timeout)

        account = Account.new(
            profile.external_id,
            profile.email,
            profile.given_name,
            profile.family_name,
            profile.picture_url,
            now=now,
        )
        account.record_login(now)
        try:
            created = await self._store(self.accounts.create_account, account, timeout=timeout)
        except ConstraintViolation as exc:
            self.logger.warning(
                "auth_account_create_conflict",
                external_id=profile.external_id,
                field=exc.detail.get("field"),
            )
            raise DuplicateIdentity(
                "an account already exists for this identity", detail=exc.detail
            ) from exc
        self.logger.info("auth_account_created", account_id=created.id)
        return created

    async def _enforce_session_quota(
        self, account_id: str, now: datetime, timeout: float | None = None
    ) -> int:
        """Deactivate the oldest sessions so one more fits under the quota.

        Count-then-evict is not serialized; concurrent logins may briefly
        overshoot the maximum.
        """
        count = await self._store(
            self.sessions.count_active_sessions, account_id, now, timeout=timeout
        )
        if count < self.max_sessions:
            return 0
        active = await self._store(
            self.sessions.list_active_sessions, account_id, timeout=timeout
        )
        excess = max(0, len(active) - (self.max_sessions - 1))
        for session in active[:excess]:
            await self._store(
                self.sessions.deactivate_session, session.id, now, timeout=timeout
            )
            self.logger.info(
                "auth_session_evicted", account_id=account_id, session_id=session.id
            )
        return excess

    async def refresh_token(self, token: str, *, timeout: float | None = None) -> RefreshResult:
        claims = self.codec.verify(token, TokenType.REFRESH)
        session = await self._store(
            self.sessions.get_session_by_refresh_token, token, timeout=timeout
        )
        if session is None:
            self.logger.warning("auth_refresh_failed", reason="session_not_found")
            raise SessionNotFound("session not found")
        now = self._now()
        if not session.is_valid(now):
            self.logger.warning(
                "auth_refresh_failed", reason="session_invalid", session_id=session.id
            )
            raise SessionInvalid("session is no longer valid")
        if session.account_id != claims.subject:
            self.logger.warning(
                "auth_refresh_failed", reason="subject_mismatch", session_id=session.id
            )
            raise SubjectMismatch("token subject does not own this session")

        pair = self.codec.issue(session.account_id)
        try:
            await self._store(
                self.sessions.rotate_session_tokens,
                session.id,
                token,
                pair.access_token,
                pair.refresh_token,
                pair.access_expires_at,
                now,
                timeout=timeout,
            )
        except RecordNotFound as exc:
            reason = "stale" if isinstance(exc, StaleRecord) else "session_not_found"
            self.logger.warning("auth_refresh_failed", reason=reason, session_id=session.id)
            raise SessionNotFound("session not found") from exc
        self.logger.info(
            "auth_refresh_succeeded", account_id=session.account_id, session_id=session.id
        )
        return RefreshResult(
            session_id=session.id,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_at=pair.access_expires_at,
        )

    async def logout(self, access_token: str, *, timeout: float | None = None) -> None:
        session = await self._store(
            self.sessions.get_session_by_access_token, access_token, timeout=timeout
        )
        if session is None:
            raise SessionNotFound("session not found")
        deactivated = await self._store(
            self.sessions.deactivate_session, session.id, self._now(), timeout=timeout
        )
        if not deactivated:
            raise SessionNotFound("session not found")
        self.logger.info(
            "auth_logout", account_id=session.account_id, session_id=session.id
        )

    async def logout_all(self, account_id: str, *, timeout: float | None = None) -> int:
        removed = await self._store(
            self.sessions.delete_account_sessions, account_id, timeout=timeout
        )
        self.logger.info("auth_logout_all", account_id=account_id, removed=removed)
        return removed

    async def validate_token(
        self, access_token: str, *, timeout: float | None = None
    ) -> Account:
        claims = self.codec.verify(access_token, TokenType.ACCESS)
        session = await self._store(
            self.sessions.get_session_by_access_token, access_token, timeout=timeout
        )
        if session is None:
            raise SessionNotFound("session not found")
        now = self._now()
        if not session.is_valid(now):
            raise SessionInvalid("session is no longer valid")
        if session.account_id != claims.subject:
            self.logger.warning("auth_validate_subject_mismatch", session_id=session.id)
            raise SubjectMismatch("token subject does not own this session")

        try:
            touched = await self._store(
                self.sessions.touch_session, session.id, access_token, now, timeout=timeout
            )
        except Exception as exc:
            # last-used is bookkeeping only; validation stands without it
            self.logger.warning(
                "auth_session_touch_failed", session_id=session.id, error=str(exc)
            )
        else:
            if not touched:
                # rotated or logged out since the lookup
                self.logger.info("auth_session_touch_skipped", session_id=session.id)

        account = await self._store(self.accounts.get_account, claims.subject, timeout=timeout)
        if account is None:
            raise AccountNotFound("account not found", detail={"account_id": claims.subject})
        return account

    async def refresh_external_tokens(
        self, access_token: str, *, timeout: float | None = None
    ) -> str:
        """Renew the Google access token held by the caller's session.

        Returns the new provider access token; the session keeps its own JWTs.
        """
        claims = self.codec.verify(access_token, TokenType.ACCESS)
        session = await self._store(
            self.sessions.get_session_by_access_token, access_token, timeout=timeout
        )
        if session is None:
            raise SessionNotFound("session not found")
        now = self._now()
        if not session.is_valid(now):
            raise SessionInvalid("session is no longer valid")
        if session.account_id != claims.subject:
            raise SubjectMismatch("token subject does not own this session")
        if not session.external_refresh_token:
            raise ExchangeFailed("session holds no provider refresh token")

        tokens = await self._upstream(
            self.identity.refresh_external_token(session.external_refresh_token),
            "refresh_external_token",
            timeout,
        )
        stored = await self._store(
            self.sessions.set_external_tokens,
            session.id,
            access_token,
            tokens.access_token,
            tokens.refresh_token,
            now,
            timeout=timeout,
        )
        if not stored:
            raise SessionNotFound("session not found")
        self.logger.info("auth_external_token_refreshed", session_id=session.id)
        return tokens.access_token

    async def update_profile(
        self,
        account_id: str,
        updates: Union[Mapping[str, Any], Sequence[ProfileMutation]],
        *,
        unknown: UnknownFieldPolicy = UnknownFieldPolicy.IGNORE,
        timeout: float | None = None,
    ) -> Account:
        if isinstance(updates, Mapping):
            mutations = parse_profile_updates(updates, unknown=unknown)
        else:
            mutations = list(updates)
        account = await self._store(
            self.profiles.update, account_id, mutations, self._now(), timeout=timeout
        )
        self.logger.info(
            "auth_profile_updated",
            account_id=account_id,
            fields=[m.field.value for m in mutations],
            atomic=self.profiles.atomic,
        )
        return account

    async def deactivate_expired_sessions(self, *, timeout: float | None = None) -> int:
        count = await self._store(
            self.sessions.deactivate_expired_sessions, self._now(), timeout=timeout
        )
        self.logger.info("auth_expired_sessions_reaped", count=count)
        return count
