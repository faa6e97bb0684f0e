"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. PrincipalStore is the repository;
_row_to_user / _row_to_admin / _row_to_otp are the mappers. Service and route
code never touches SQL directly.

This is the datastore collaborator of the lifecycle core. Every method is a
single statement or a single transaction, which gives the per-row atomic
update the OTP overwrite semantics rely on.

Security:
  All queries use bound parameters. No f-strings in SQL.

  hashed_password and the admin token column are deliberately NOT writable
  through update_user() / update_admin(). The only way to change a hash is
  set_password_hash(), called by CredentialStore.set_password(); the only way
  to change the admin token is set_admin_token(), called by SessionIssuer.
  A profile update can therefore never rehash (or clobber) a stored hash.

  Emails are normalized (strip + lower) on every write and lookup, so the
  UNIQUE(email) constraint is effectively case-insensitive.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    create_engine,
    event,
    or_,
    select,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Admin, AppConfig, OtpPurpose, OtpRecord, PrincipalKind, User
from core.config import get_settings

logger = logging.getLogger("gatekeeper.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),  # normalized lower-case
    Column("phone", String(32), unique=True),  # NULLs are distinct in SQLite UNIQUE
    Column("hashed_password", Text, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
)

_admins = Table(
    "admins",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login", String(32)),
    Column("token", Text),  # current-session pointer, not a revocation list
    Column("created_at", String(32), nullable=False),
)

# One row per (kind, principal, purpose). Re-issuing an OTP is an upsert on
# the primary key, so two live codes for the same pair cannot coexist.
_otp_codes = Table(
    "otp_codes",
    _metadata,
    Column("principal_kind", String(10), nullable=False),
    Column("principal_id", Integer, nullable=False),
    Column("purpose", String(20), nullable=False),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
    PrimaryKeyConstraint("principal_kind", "principal_id", "purpose"),
)

_app_config = Table(
    "app_config",
    _metadata,
    Column("id", Integer, primary_key=True),
    Column("company_name", String(255), nullable=False, server_default=""),
    Column("company_email", String(255), nullable=False, server_default=""),
    Column("smtp_host", String(255), nullable=False, server_default=""),
    Column("smtp_port", Integer, nullable=False, server_default="0"),
    Column("smtp_user", String(255), nullable=False, server_default=""),
    Column("smtp_password", Text, nullable=False, server_default=""),
    CheckConstraint("id = 1", name="app_config_single_row"),
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


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for User, Admin, OtpRecord and AppConfig.

    Usage:
        store = PrincipalStore()
        uid = store.create_user(User(name="Ann", email="a@x.com", hashed_password=hash_password("secret1")))
        user = store.get_user_by_email("A@X.com")
        store.close()
    """

    # Columns that generic update_* calls may never touch. See module docstring.
    _PROTECTED_COLUMNS: frozenset = frozenset({"id", "hashed_password", "token", "created_at"})

    # Known keys for app_config -- validated before any SQL write.
    _APP_CONFIG_KEYS: frozenset = frozenset(
        {"company_name", "company_email", "smtp_host", "smtp_port", "smtp_user", "smtp_password"}
    )

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._ensure_app_config()

    def _ensure_app_config(self) -> None:
        """Seed the single app_config row (id=1) if it does not exist yet.

        ON CONFLICT DO NOTHING makes this idempotent -- safe on every startup.
        """
        with self.engine.connect() as conn:
            conn.execute(sqlite_insert(_app_config).values(id=1).on_conflict_do_nothing(index_elements=["id"]))
            conn.commit()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError on a duplicate email or phone.
        Callers check find_user_by_email_or_phone() first; the constraint is
        the backstop for two registrations racing each other.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    name=user.name,
                    email=normalize_email(user.email),
                    phone=user.phone or None,
                    hashed_password=user.hashed_password,
                    is_active=1 if user.is_active else 0,
                    is_verified=1 if user.is_verified else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_email_or_phone(self, email: str, phone: str | None) -> User | None:
        """Return any user holding this email or (when given) this phone."""
        clause = _users.c.email == normalize_email(email)
        if phone:
            clause = or_(clause, _users.c.phone == phone)
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(clause)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_phone(self, phone: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.phone == phone.strip())).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.created_at.desc(), _users.c.id.desc())).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update plain fields on an existing user.

        Accepted fields: name, email, phone, is_active, is_verified. Booleans
        are converted to int for SQLite. Protected columns raise ValueError.

        Returns True if a row was updated, False if user_id was not found.
        """
        self._reject_protected(fields)
        for flag in ("is_active", "is_verified"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Delete a user and every OTP record it owns. Returns True if the user existed."""
        with self.engine.begin() as conn:
            conn.execute(
                _otp_codes.delete().where(
                    (_otp_codes.c.principal_kind == PrincipalKind.user.value) & (_otp_codes.c.principal_id == user_id)
                )
            )
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Admins
    # ------------------------------------------------------------------

    def has_admins(self) -> bool:
        """Return True if at least one admin record exists."""
        with self.engine.connect() as conn:
            row = conn.execute(_admins.select().limit(1)).fetchone()
        return row is not None

    def create_admin(self, admin: Admin) -> int:
        """Insert a new admin and return its ID. IntegrityError on duplicate email/username."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _admins.insert().values(
                    username=admin.username.strip(),
                    email=normalize_email(admin.email),
                    hashed_password=admin.hashed_password,
                    is_active=1 if admin.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_admin_by_id(self, admin_id: int) -> Admin | None:
        with self.engine.connect() as conn:
            row = conn.execute(_admins.select().where(_admins.c.id == admin_id)).fetchone()
        return _row_to_admin(row) if row is not None else None

    def get_admin_by_email(self, email: str) -> Admin | None:
        with self.engine.connect() as conn:
            row = conn.execute(_admins.select().where(_admins.c.email == normalize_email(email))).fetchone()
        return _row_to_admin(row) if row is not None else None

    def get_admin_by_username(self, username: str) -> Admin | None:
        with self.engine.connect() as conn:
            row = conn.execute(_admins.select().where(_admins.c.username == username.strip())).fetchone()
        return _row_to_admin(row) if row is not None else None

    def list_admins(self) -> list[Admin]:
        """Return all admins, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(_admins.select().order_by(_admins.c.created_at.desc(), _admins.c.id.desc())).fetchall()
        return [_row_to_admin(r) for r in rows]

    def find_admin_by_email_or_username(self, email: str, username: str) -> Admin | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _admins.select().where(
                    or_(_admins.c.email == normalize_email(email), _admins.c.username == username.strip())
                )
            ).fetchone()
        return _row_to_admin(row) if row is not None else None

    def update_admin(self, admin_id: int, **fields) -> bool:
        """Update plain fields on an admin (username, email, is_active)."""
        self._reject_protected(fields)
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        with self.engine.connect() as conn:
            result = conn.execute(_admins.update().where(_admins.c.id == admin_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_admin(self, admin_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_admins.delete().where(_admins.c.id == admin_id))
            conn.commit()
        return result.rowcount > 0

    def set_admin_token(self, admin_id: int, token: str | None) -> bool:
        """Replace (or clear, with None) the admin's current-session pointer."""
        with self.engine.connect() as conn:
            result = conn.execute(_admins.update().where(_admins.c.id == admin_id).values(token=token))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Kind-generic principal operations
    # ------------------------------------------------------------------

    def get_principal(self, kind: PrincipalKind, principal_id: int) -> User | Admin | None:
        if kind == PrincipalKind.admin:
            return self.get_admin_by_id(principal_id)
        return self.get_user_by_id(principal_id)

    def set_password_hash(self, kind: PrincipalKind, principal_id: int, hashed_password: str) -> bool:
        """Overwrite the stored hash. The single write path for hashed_password."""
        table = _admins if kind == PrincipalKind.admin else _users
        with self.engine.connect() as conn:
            result = conn.execute(
                table.update().where(table.c.id == principal_id).values(hashed_password=hashed_password)
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, kind: PrincipalKind, principal_id: int) -> None:
        """Stamp the current UTC timestamp as last_login."""
        table = _admins if kind == PrincipalKind.admin else _users
        with self.engine.connect() as conn:
            conn.execute(table.update().where(table.c.id == principal_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # OTP records
    # ------------------------------------------------------------------

    def upsert_otp(self, record: OtpRecord) -> None:
        """Insert or overwrite the OTP row for (kind, principal, purpose).

        A single INSERT ... ON CONFLICT DO UPDATE statement: the previous code,
        live or not, is gone the moment this commits (last-issued-wins).
        """
        values = {
            "principal_kind": record.principal_kind.value,
            "principal_id": record.principal_id,
            "purpose": record.purpose.value,
            "code_hash": record.code_hash,
            "issued_at": record.issued_at,
            "expires_at": record.expires_at,
            "consumed_at": record.consumed_at,
        }
        stmt = sqlite_insert(_otp_codes).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["principal_kind", "principal_id", "purpose"],
            set_={
                "code_hash": stmt.excluded.code_hash,
                "issued_at": stmt.excluded.issued_at,
                "expires_at": stmt.excluded.expires_at,
                "consumed_at": stmt.excluded.consumed_at,
            },
        )
        with self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()

    def get_otp(self, kind: PrincipalKind, principal_id: int, purpose: OtpPurpose) -> OtpRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_otp_codes.select().where(_otp_key(kind, principal_id, purpose))).fetchone()
        return _row_to_otp(row) if row is not None else None

    def consume_otp(self, kind: PrincipalKind, principal_id: int, purpose: OtpPurpose, consumed_at: str) -> bool:
        """Mark the record consumed. Returns False if there was no unconsumed record."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _otp_codes.update()
                .where(_otp_key(kind, principal_id, purpose) & _otp_codes.c.consumed_at.is_(None))
                .values(consumed_at=consumed_at)
            )
            conn.commit()
        return result.rowcount > 0

    def consume_otp_and_set_password(
        self,
        kind: PrincipalKind,
        principal_id: int,
        purpose: OtpPurpose,
        consumed_at: str,
        hashed_password: str,
    ) -> bool:
        """Consume the OTP and replace the password hash in one transaction.

        Returns False, writing nothing, if there was no unconsumed record. If
        the hash write fails the consume is rolled back with it, so the code
        stays usable.
        """
        table = _admins if kind == PrincipalKind.admin else _users
        with self.engine.begin() as conn:
            consumed = conn.execute(
                _otp_codes.update()
                .where(_otp_key(kind, principal_id, purpose) & _otp_codes.c.consumed_at.is_(None))
                .values(consumed_at=consumed_at)
            )
            if consumed.rowcount == 0:
                return False
            conn.execute(table.update().where(table.c.id == principal_id).values(hashed_password=hashed_password))
        return True

    def purge_otps(self, now_iso: str) -> int:
        """Delete consumed records and records that expired before now_iso.

        ISO 8601 UTC strings with the same offset sort lexicographically in
        time order, so the comparison can run in SQL.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _otp_codes.delete().where(
                    or_(_otp_codes.c.consumed_at.is_not(None), _otp_codes.c.expires_at < now_iso)
                )
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # App config (configuration provider)
    # ------------------------------------------------------------------

    def get_app_config(self) -> AppConfig:
        """Return the single app_config row. Implements the ConfigProvider interface."""
        with self.engine.connect() as conn:
            row = conn.execute(_app_config.select().where(_app_config.c.id == 1)).fetchone()
        if row is None:
            # Should never happen; _ensure_app_config() seeds this row.
            return AppConfig()
        return AppConfig(
            company_name=row.company_name,
            company_email=row.company_email,
            smtp_host=row.smtp_host,
            smtp_port=row.smtp_port,
            smtp_user=row.smtp_user,
            smtp_password=row.smtp_password,
        )

    def update_app_config(self, **kwargs) -> None:
        """Update one or more app_config fields. Unknown keys raise ValueError."""
        unknown = set(kwargs) - self._APP_CONFIG_KEYS
        if unknown:
            raise ValueError(f"Unknown app_config keys: {unknown!r}")
        if not kwargs:
            return
        with self.engine.connect() as conn:
            conn.execute(_app_config.update().where(_app_config.c.id == 1).values(**kwargs))
            conn.commit()

    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            logger.exception("Datastore ping failed")
            return False
        return True

    def _reject_protected(self, fields: dict) -> None:
        protected = set(fields) & self._PROTECTED_COLUMNS
        if protected:
            raise ValueError(f"Fields cannot be updated directly: {sorted(protected)!r}")

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _otp_key(kind: PrincipalKind, principal_id: int, purpose: OtpPurpose):
    return (
        (_otp_codes.c.principal_kind == kind.value)
        & (_otp_codes.c.principal_id == principal_id)
        & (_otp_codes.c.purpose == purpose.value)
    )


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        hashed_password=row.hashed_password,
        is_active=bool(row.is_active),
        is_verified=bool(row.is_verified),
        last_login=row.last_login,
        created_at=row.created_at,
    )


def _row_to_admin(row) -> Admin:
    return Admin(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        is_active=bool(row.is_active),
        last_login=row.last_login,
        token=row.token,
        created_at=row.created_at,
    )


def _row_to_otp(row) -> OtpRecord:
    return OtpRecord(
        principal_kind=PrincipalKind(row.principal_kind),
        principal_id=row.principal_id,
        purpose=OtpPurpose(row.purpose),
        code_hash=row.code_hash,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        consumed_at=row.consumed_at,
    )
