"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_account / _row_to_history / _row_to_verification_token are the
mappers. Services never touch SQL directly. Accounts are never written back
whole: each state change (lock, enable, verify, provider link, login
bookkeeping) is an UPDATE of its own columns keyed by email or id, so a
change never overwrites a concurrent one to a different column.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  record_failed_login() increments the counter with a single
  UPDATE ... SET n = n + 1 and applies the lock in the same transaction, so
  concurrent failed attempts against one account never lose an increment.

Timestamps are stored as ISO 8601 UTC strings and mapped back to aware
datetimes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Account, AuthProvider, PasswordHistoryEntry, Role, VerificationToken

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password", Text),  # NULL for OAuth-only users
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("phone_number", String(30)),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("account_locked", Integer, nullable=False, server_default="0"),
    Column("enabled", Integer, nullable=False, server_default="1"),
    Column("provider", String(20), nullable=False, server_default="LOCAL"),
    Column("provider_id", Text),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(30), nullable=False, unique=True),
    Column("description", Text),
    Column("created_at", String(32), nullable=False),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
)

_password_history = Table(
    "password_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("password_hash", String(100), nullable=False),
    Column("created_at", String(32), nullable=False, index=True),
    Column("ip_address", String(45)),
    Column("user_agent", String(255)),
)

_verification_tokens = Table(
    "verification_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for accounts, roles, password history and verification tokens.

    Usage:
        store = UserStore("sqlite:///localbite_auth.db")
        account_id = store.create_user(Account(email="a@x.com", roles=["BUYER"]))
        account = store.get_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by exact email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
            return self._load(conn, row)

    def get_by_id(self, user_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            return self._load(conn, row)

    def exists_by_email(self, email: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.email == email)).fetchone()
        return row is not None

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    def create_user(self, account: Account) -> int:
        """Insert a new account with its role links and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Role rows must already exist (see get_role / create_role).
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    **self._account_values(account),
                    created_at=_iso(account.created_at) or now,
                    updated_at=_iso(account.updated_at) or now,
                )
            )
            user_id = result.inserted_primary_key[0]
            self._link_roles(conn, user_id, account.roles)
        return user_id

    def set_locked(self, email: str, locked: bool, when: datetime) -> bool:
        """Lock or unlock the account; unlocking also zeroes the counter.

        Returns False when the email is unknown or the account is already
        in the requested state.
        """
        values: dict = {"account_locked": 1 if locked else 0}
        if not locked:
            values["failed_login_attempts"] = 0
        return self._update_by_email(
            email, _users.c.account_locked == (0 if locked else 1), updated_at=_iso(when), **values
        )

    def set_enabled(self, email: str, enabled: bool, when: datetime) -> bool:
        """Enable or disable the account. False if unchanged or unknown."""
        return self._update_by_email(
            email,
            _users.c.enabled == (0 if enabled else 1),
            enabled=1 if enabled else 0,
            updated_at=_iso(when),
        )

    def reset_failed_attempts(self, email: str, when: datetime) -> int:
        """Zero failed_login_attempts and return the value it replaced."""
        with self.engine.begin() as conn:
            previous = conn.execute(
                select(_users.c.failed_login_attempts).where(_users.c.email == email)
            ).scalar()
            conn.execute(
                _users.update()
                .where(_users.c.email == email)
                .values(failed_login_attempts=0, updated_at=_iso(when))
            )
        return previous or 0

    def mark_email_verified(self, user_id: int, when: datetime) -> bool:
        """Set email_verified. Returns False if it was already set."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.email_verified == 0))
                .values(email_verified=1, updated_at=_iso(when))
            )
        return result.rowcount > 0

    def link_provider(
        self,
        user_id: int,
        provider: AuthProvider,
        provider_id: Optional[str],
        first_name: Optional[str],
        last_name: Optional[str],
        when: datetime,
    ) -> None:
        """Record a provider identity on an account and mark its email verified.

        Only provider, provider_id, names and email_verified are written; the
        lock and failed-attempt columns are left to their own updates.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    provider=provider.value,
                    provider_id=provider_id,
                    first_name=first_name,
                    last_name=last_name,
                    email_verified=1,
                    updated_at=_iso(when),
                )
            )

    def record_failed_login(self, email: str, lock_threshold: int) -> int:
        """Atomically increment failed_login_attempts; lock at the threshold.

        Returns the new attempt count (0 if the email does not exist).
        """
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.email == email)
                .values(failed_login_attempts=_users.c.failed_login_attempts + 1)
            )
            conn.execute(
                _users.update()
                .where((_users.c.email == email) & (_users.c.failed_login_attempts >= lock_threshold))
                .values(account_locked=1)
            )
            attempts = conn.execute(
                select(_users.c.failed_login_attempts).where(_users.c.email == email)
            ).scalar()
        return attempts or 0

    def record_successful_login(self, user_id: int, when: datetime) -> None:
        """Reset the failed-attempt counter and stamp last_login."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=0, last_login=_iso(when))
            )

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def get_role(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        if row is None:
            return None
        return Role(id=row.id, name=row.name, description=row.description, created_at=_parse(row.created_at))

    def create_role(self, role: Role) -> Role:
        """Insert a role, or return the existing one if another request won the race."""
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _roles.insert().values(name=role.name, description=role.description, created_at=_now_iso())
                )
                role.id = result.inserted_primary_key[0]
            return role
        except IntegrityError:
            existing = self.get_role(role.name)
            if existing is None:
                raise
            return existing

    # ------------------------------------------------------------------
    # Password history
    # ------------------------------------------------------------------

    def list_history(self, user_id: int) -> list[PasswordHistoryEntry]:
        """Return the user's history entries, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _password_history.select()
                .where(_password_history.c.user_id == user_id)
                .order_by(_password_history.c.created_at.desc(), _password_history.c.id.desc())
            ).fetchall()
        return [_row_to_history(r) for r in rows]

    def add_history(self, entry: PasswordHistoryEntry) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_history.insert().values(
                    user_id=entry.user_id,
                    password_hash=entry.password_hash,
                    ip_address=entry.ip_address,
                    user_agent=(entry.user_agent or "")[:255] or None,
                    created_at=_iso(entry.created_at) or _now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def prune_history(self, user_id: int, keep: int) -> int:
        """Delete all but the `keep` newest entries. Returns rows removed."""
        stale = [entry.id for entry in self.list_history(user_id)[keep:]]
        if not stale:
            return 0
        with self.engine.begin() as conn:
            result = conn.execute(_password_history.delete().where(_password_history.c.id.in_(stale)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def create_verification_token(self, token: VerificationToken) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _verification_tokens.insert().values(
                    user_id=token.user_id,
                    token=token.token,
                    expires_at=_iso(token.expires_at),
                    used=1 if token.used else 0,
                    created_at=_iso(token.created_at) or _now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_verification_token(self, token: str) -> VerificationToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _verification_tokens.select().where(_verification_tokens.c.token == token)
            ).fetchone()
        return _row_to_verification_token(row) if row is not None else None

    def mark_verification_token_used(self, token_id: int) -> bool:
        """Flip used 0 -> 1. Returns False if the token was already used."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _verification_tokens.update()
                .where((_verification_tokens.c.id == token_id) & (_verification_tokens.c.used == 0))
                .values(used=1)
            )
        return result.rowcount > 0

    def invalidate_verification_tokens(self, user_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _verification_tokens.update()
                .where((_verification_tokens.c.user_id == user_id) & (_verification_tokens.c.used == 0))
                .values(used=1)
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _account_values(account: Account) -> dict:
        return {
            "email": account.email,
            "password": account.hashed_password,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "phone_number": account.phone_number,
            "email_verified": 1 if account.email_verified else 0,
            "account_locked": 1 if account.account_locked else 0,
            "enabled": 1 if account.enabled else 0,
            "provider": account.provider.value,
            "provider_id": account.provider_id,
            "failed_login_attempts": account.failed_login_attempts,
            "last_login": _iso(account.last_login),
        }

    def _update_by_email(self, email: str, condition, **values) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where((_users.c.email == email) & condition).values(**values)
            )
        return result.rowcount > 0

    @staticmethod
    def _link_roles(conn: Connection, user_id: int, role_names: list[str]) -> None:
        for name in role_names:
            role_id = conn.execute(select(_roles.c.id).where(_roles.c.name == name)).scalar()
            if role_id is None:
                raise ValueError(f"Unknown role: {name!r}")
            conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))

    @staticmethod
    def _load(conn: Connection, row) -> Account | None:
        if row is None:
            return None
        roles = conn.execute(
            select(_roles.c.name)
            .select_from(_user_roles.join(_roles, _user_roles.c.role_id == _roles.c.id))
            .where(_user_roles.c.user_id == row.id)
            .order_by(_roles.c.name)
        ).scalars()
        return _row_to_account(row, list(roles))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row, roles: list[str]) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        hashed_password=row.password,
        first_name=row.first_name,
        last_name=row.last_name,
        phone_number=row.phone_number,
        email_verified=bool(row.email_verified),
        account_locked=bool(row.account_locked),
        enabled=bool(row.enabled),
        provider=AuthProvider(row.provider),
        provider_id=row.provider_id,
        failed_login_attempts=row.failed_login_attempts or 0,
        last_login=_parse(row.last_login),
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
        roles=roles,
    )


def _row_to_history(row) -> PasswordHistoryEntry:
    return PasswordHistoryEntry(
        id=row.id,
        user_id=row.user_id,
        password_hash=row.password_hash,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=_parse(row.created_at),
    )


def _row_to_verification_token(row) -> VerificationToken:
    return VerificationToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=_parse(row.expires_at),
        used=bool(row.used),
        created_at=_parse(row.created_at),
    )
