from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tripauth.logging import get_logger
from tripauth.service.profile import ProfileMutation
from tripauth.storage.errors import ConstraintViolation, RecordNotFound, StaleRecord
from tripauth.storage.models import Account, Session
from tripauth.storage.sealing import TokenSealer


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_account (
        id UUID PRIMARY KEY,
        external_id TEXT NOT NULL,
        email TEXT NOT NULL,
        username TEXT NOT NULL UNIQUE,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL DEFAULT '',
        phone TEXT,
        bio TEXT NOT NULL DEFAULT '',
        location TEXT NOT NULL DEFAULT '',
        website TEXT NOT NULL DEFAULT '',
        languages TEXT[] NOT NULL DEFAULT '{}',
        interests TEXT[] NOT NULL DEFAULT '{}',
        travel_style TEXT,
        profile_visibility TEXT NOT NULL DEFAULT 'public',
        email_notifications BOOLEAN NOT NULL DEFAULT TRUE,
        push_notifications BOOLEAN NOT NULL DEFAULT TRUE,
        profile_photo_url TEXT,
        external_photo_url TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_account_active_external_id
        ON app_account (external_id) WHERE is_active
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_account_active_email
        ON app_account (lower(email)) WHERE is_active
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES app_account(id),
        access_token TEXT NOT NULL UNIQUE,
        refresh_token TEXT NOT NULL UNIQUE,
        external_access_token TEXT,
        external_refresh_token TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        ip_addr TEXT,
        user_agent TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS auth_session_account_active
        ON auth_session (account_id, created_at) WHERE is_active
    """,
)

_ACCOUNT_COLUMNS = (
    "id",
    "external_id",
    "email",
    "username",
    "first_name",
    "last_name",
    "phone",
    "bio",
    "location",
    "website",
    "languages",
    "interests",
    "travel_style",
    "profile_visibility",
    "email_notifications",
    "push_notifications",
    "profile_photo_url",
    "external_photo_url",
    "is_active",
    "last_login",
    "created_at",
    "updated_at",
)

_SESSION_COLUMNS = (
    "id",
    "account_id",
    "access_token",
    "refresh_token",
    "external_access_token",
    "external_refresh_token",
    "expires_at",
    "ip_addr",
    "user_agent",
    "is_active",
    "created_at",
    "last_used_at",
)

# Which unique index a violation came from, keyed by constraint name fragment
_ACCOUNT_CONSTRAINT_FIELDS = {
    "external_id": "external_id",
    "email": "email",
    "username": "username",
    "pkey": "id",
}


class PostgresStore:
    """Account and session store backed by Postgres through a psycopg pool."""

    def __init__(
        self,
        dsn: str,
        *,
        sealer: TokenSealer | None = None,
        ensure_schema: bool = True,
        statement_timeout: float | None = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.sealer = sealer
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs=self._connection_kwargs(statement_timeout),
            timeout=statement_timeout or 30.0,
        )
        if ensure_schema:
            self.ensure_schema()

    @staticmethod
    def _connection_kwargs(statement_timeout: float | None) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"row_factory": dict_row, "autocommit": False}
        if statement_timeout:
            # The server cancels and rolls back statements that overrun
            kwargs["options"] = f"-c statement_timeout={int(statement_timeout * 1000)}"
        return kwargs

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the account and session tables if they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def _seal(self, value: Optional[str]) -> Optional[str]:
        return self.sealer.seal(value) if self.sealer else value

    def _unseal(self, value: Optional[str]) -> Optional[str]:
        return self.sealer.unseal(value) if self.sealer else value

    @staticmethod
    def _constraint_field(exc: errors.UniqueViolation, default: str) -> str:
        diag = getattr(exc, "diag", None)
        name = getattr(diag, "constraint_name", None) or ""
        for fragment, field in _ACCOUNT_CONSTRAINT_FIELDS.items():
            if fragment in name:
                return field
        for field in ("access_token", "refresh_token"):
            if field in name:
                return field
        return default

    # accounts
    def _account_from_row(self, row: dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            external_id=row["external_id"],
            email=row["email"],
            username=row["username"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            phone=row.get("phone"),
            bio=row.get("bio") or "",
            location=row.get("location") or "",
            website=row.get("website") or "",
            languages=list(row.get("languages") or []),
            interests=list(row.get("interests") or []),
            travel_style=row.get("travel_style"),
            profile_visibility=row.get("profile_visibility") or "public",
            email_notifications=bool(row.get("email_notifications", True)),
            push_notifications=bool(row.get("push_notifications", True)),
            profile_photo_url=row.get("profile_photo_url"),
            external_photo_url=row.get("external_photo_url"),
            is_active=bool(row.get("is_active", True)),
            last_login=row.get("last_login"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _account_params(self, account: Account) -> tuple:
        return tuple(getattr(account, column) for column in _ACCOUNT_COLUMNS)

    def create_account(self, account: Account) -> Account:
        columns = ", ".join(_ACCOUNT_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_ACCOUNT_COLUMNS))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO app_account ({columns}) VALUES ({placeholders})",
                    self._account_params(account),
                )
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc, "external_id")
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return account

    def _fetch_account(self, where: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_account WHERE {where} AND is_active", params
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id = %s", (account_id,))

    def get_account_by_external_id(self, external_id: str) -> Optional[Account]:
        return self._fetch_account("external_id = %s", (external_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("lower(email) = lower(%s)", (email,))

    def update_account(self, account: Account) -> Account:
        assignments = ", ".join(f"{column} = %s" for column in _ACCOUNT_COLUMNS[1:])
        params = self._account_params(account)[1:] + (account.id,)
        try:
            with self._connect() as conn:
                result = conn.execute(
                    f"UPDATE app_account SET {assignments} WHERE id = %s", params
                )
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc, "email")
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        if result.rowcount == 0:
            raise RecordNotFound("account not found", {"account_id": account.id})
        return account

    def deactivate_account(self, account_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_account SET is_active = FALSE, updated_at = %s WHERE id = %s",
                (now, account_id),
            )
        return result.rowcount > 0

    def apply_profile_mutations(
        self, account_id: str, mutations: Sequence[ProfileMutation], now: datetime
    ) -> Optional[Account]:
        """Single-statement partial update of the recognized profile columns."""
        if not mutations:
            return self.get_account(account_id)
        # Column names come from the ProfileField enum, never from caller input
        assignments = [f"{m.field.value} = %s" for m in mutations]
        params: list[Any] = [m.value for m in mutations]
        assignments.append("updated_at = %s")
        params.extend([now, account_id])
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_account SET {', '.join(assignments)} "
                "WHERE id = %s AND is_active RETURNING *",
                tuple(params),
            ).fetchone()
        return self._account_from_row(row) if row else None

    # sessions
    def _session_from_row(self, row: dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            external_access_token=self._unseal(row.get("external_access_token")),
            external_refresh_token=self._unseal(row.get("external_refresh_token")),
            expires_at=row["expires_at"],
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            is_active=bool(row.get("is_active", True)),
            created_at=row["created_at"],
            last_used_at=row["last_used_at"],
        )

    def _session_params(self, session: Session) -> tuple:
        values = []
        for column in _SESSION_COLUMNS:
            value = getattr(session, column)
            if column.startswith("external_"):
                value = self._seal(value)
            values.append(value)
        return tuple(values)

    def create_session(self, session: Session) -> Session:
        columns = ", ".join(_SESSION_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_SESSION_COLUMNS))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO auth_session ({columns}) VALUES ({placeholders})",
                    self._session_params(session),
                )
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc, "access_token")
            raise ConstraintViolation(f"{field} already in use", {"field": field}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session account missing", {"account_id": session.account_id}
            ) from exc
        return session

    def _fetch_session(self, where: str, params: tuple) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM auth_session WHERE {where}", params
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._fetch_session("id = %s", (session_id,))

    def get_session_by_access_token(self, access_token: str) -> Optional[Session]:
        return self._fetch_session("access_token = %s", (access_token,))

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        return self._fetch_session("refresh_token = %s", (refresh_token,))

    def list_active_sessions(self, account_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE account_id = %s AND is_active
                ORDER BY created_at ASC, id ASC
                """,
                (account_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def count_active_sessions(self, account_id: str, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS active FROM auth_session
                WHERE account_id = %s AND is_active AND expires_at > %s
                """,
                (account_id, now),
            ).fetchone()
        return int(row["active"]) if row else 0

    def update_session(
        self, session: Session, *, expected_refresh_token: str | None = None
    ) -> Session:
        assignments = ", ".join(f"{column} = %s" for column in _SESSION_COLUMNS[1:])
        params = list(self._session_params(session)[1:])
        where = "id = %s"
        params.append(session.id)
        if expected_refresh_token is not None:
            where += " AND refresh_token = %s"
            params.append(expected_refresh_token)
        try:
            with self._connect() as conn:
                result = conn.execute(
                    f"UPDATE auth_session SET {assignments} WHERE {where}", tuple(params)
                )
                if result.rowcount == 0:
                    exists = conn.execute(
                        "SELECT 1 FROM auth_session WHERE id = %s", (session.id,)
                    ).fetchone()
                    if exists and expected_refresh_token is not None:
                        raise StaleRecord(
                            "session was modified concurrently", {"session_id": session.id}
                        )
                    raise RecordNotFound("session not found", {"session_id": session.id})
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc, "access_token")
            raise ConstraintViolation(f"{field} already in use", {"field": field}) from exc
        return session

    def rotate_session_tokens(
        self,
        session_id: str,
        expected_refresh_token: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        now: datetime,
    ) -> None:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    UPDATE auth_session
                    SET access_token = %s, refresh_token = %s, expires_at = %s, last_used_at = %s
                    WHERE id = %s AND refresh_token = %s AND is_active
                    """,
                    (
                        access_token,
                        refresh_token,
                        expires_at,
                        now,
                        session_id,
                        expected_refresh_token,
                    ),
                )
                if result.rowcount == 0:
                    exists = conn.execute(
                        "SELECT 1 FROM auth_session WHERE id = %s", (session_id,)
                    ).fetchone()
                    if exists:
                        raise StaleRecord(
                            "session was modified concurrently", {"session_id": session_id}
                        )
                    raise RecordNotFound("session not found", {"session_id": session_id})
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc, "access_token")
            raise ConstraintViolation(f"{field} already in use", {"field": field}) from exc

    def touch_session(self, session_id: str, access_token: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET last_used_at = %s
                WHERE id = %s AND access_token = %s AND is_active
                """,
                (now, session_id, access_token),
            )
        return result.rowcount > 0

    def deactivate_session(self, session_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET is_active = FALSE,
                    last_used_at = CASE WHEN is_active THEN %s ELSE last_used_at END
                WHERE id = %s
                """,
                (now, session_id),
            )
        return result.rowcount > 0

    def set_external_tokens(
        self,
        session_id: str,
        access_token: str,
        external_access_token: str,
        external_refresh_token: str | None,
        now: datetime,
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET external_access_token = %s,
                    external_refresh_token = COALESCE(%s, external_refresh_token),
                    last_used_at = %s
                WHERE id = %s AND access_token = %s AND is_active
                """,
                (
                    self._seal(external_access_token),
                    self._seal(external_refresh_token),
                    now,
                    session_id,
                    access_token,
                ),
            )
        return result.rowcount > 0

    def delete_session(self, session_id: str) -> None:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
        if result.rowcount == 0:
            raise RecordNotFound("session not found", {"session_id": session_id})

    def delete_account_sessions(self, account_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE account_id = %s", (account_id,)
            )
        return result.rowcount

    def deactivate_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, last_used_at = %s
                WHERE is_active AND expires_at <= %s
                """,
                (now, now),
            )
        deactivated = result.rowcount
        if deactivated:
            self.logger.info("expired_sessions_deactivated", count=deactivated)
        return deactivated
