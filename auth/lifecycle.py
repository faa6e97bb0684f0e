"""
auth/lifecycle.py -- Lifecycle Orchestrator for credentials and sessions.

Composes CredentialStore, OtpService, ResendThrottle and SessionIssuer into
the flows the HTTP layer exposes:

  register -> verify_registration_otp           (Unverified -> Verified)
  resend_registration_otp
  login
  forgot_password -> verify_reset_otp -> reset_password   (two-phase reset)
  resend_reset_otp
  change_password                               (authenticated, no OTP)
  admin_login / admin_logout / create_admin
  update_profile                                (authenticated, never rehashes)
  list/get/update/delete users, list/update/delete admins   (admin only)
  authenticate                                  (bearer token -> principal)

Error boundary:
  Every public operation either returns its payload or raises a
  CredentialError subclass. Datastore exceptions never escape: @_boundary
  maps a unique-constraint violation to Conflict and anything else from
  SQLAlchemy to Unavailable, after logging the internals server-side.
  Email transport failures become Unavailable; at registration they first
  trigger a compensating delete of the just-created user so a failed
  delivery never leaves an orphaned, unverifiable account. Nothing here
  retries.

Configuration is injected (ConfigProvider) rather than looked up globally;
the orchestrator holds no module-level mutable state.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.credentials import CredentialStore
from auth.errors import Conflict, Invalid, Mismatch, NotFound, Unauthorized, Unavailable
from auth.mailer import ConfigProvider, EmailTransport, render_otp_email
from auth.models import Admin, OtpPurpose, PrincipalKind, User
from auth.otp import Clock, OtpService, to_iso, utc_now
from auth.sessions import SessionIssuer
from auth.store import PrincipalStore, normalize_email
from auth.throttle import ResendThrottle
from auth.tokens import MAX_PASSWORD_BYTES
from core.config import Settings, get_settings

logger = logging.getLogger("gatekeeper.auth.lifecycle")


@dataclass
class AuthResult:
    """A principal together with the bearer token just minted for it."""

    principal: User | Admin
    token: str


def _boundary(func):
    """Translate datastore exceptions into typed lifecycle errors."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except IntegrityError as exc:
            logger.warning("Unique constraint violated in %s", func.__name__)
            raise Conflict("An account with these details already exists.") from exc
        except SQLAlchemyError as exc:
            logger.exception("Datastore failure in %s", func.__name__)
            raise Unavailable() from exc

    return wrapper


class CredentialLifecycle:
    """Orchestrates registration, login, password reset and admin sessions.

    Usage:
        lifecycle = CredentialLifecycle(store, SmtpEmailTransport(store))
        lifecycle.register("Ann", "a@x.com", "secret1", phone="555")
        result = lifecycle.verify_registration_otp("a@x.com", "1234")
        result.token  # bearer token for the now-verified user
    """

    def __init__(
        self,
        store: PrincipalStore,
        mailer: EmailTransport,
        config_provider: ConfigProvider | None = None,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock
        self._store = store
        self._mailer = mailer
        self._config = config_provider or store
        self.credentials = CredentialStore(store)
        self.otp = OtpService(store, ttl_minutes=self._settings.otp_ttl_minutes, clock=clock)
        self.throttle = ResendThrottle(store, cooldown_seconds=self._settings.otp_resend_cooldown_seconds, clock=clock)
        self.sessions = SessionIssuer(store, expire_days=self._settings.token_expire_days)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @_boundary
    def register(self, name: str, email: str, password: str, phone: str | None = None) -> User:
        """Create an unverified user and email a registration code.

        Raises Invalid (short password), Conflict (email or phone taken) or
        Unavailable (delivery failed -- the user has been deleted again).
        """
        self._check_password(password)
        email = normalize_email(email)
        phone = phone.strip() if phone else None
        if self._store.find_user_by_email_or_phone(email, phone) is not None:
            raise Conflict("A user with this email or phone already exists.")

        user_id = self._store.create_user(
            User(
                name=name.strip(),
                email=email,
                phone=phone,
                hashed_password=self.credentials.hash_new_password(password),
            )
        )
        try:
            code = self.otp.issue(PrincipalKind.user, user_id, OtpPurpose.registration)
            delivered = self._deliver(email, OtpPurpose.registration, code)
        except Exception:
            self._rollback_registration(user_id)
            raise
        if not delivered:
            self._rollback_registration(user_id)
            raise Unavailable("Registration failed: the verification email could not be sent. Please try again.")

        logger.info("Registered user id=%s, awaiting verification", user_id)
        return self._store.get_user_by_id(user_id)

    @_boundary
    def verify_registration_otp(self, email: str, code: str) -> AuthResult:
        """Verify and consume the registration code, mark the user verified, mint a token."""
        user = self._require_user(email)
        self.otp.verify_and_consume(PrincipalKind.user, user.id, OtpPurpose.registration, code)
        self._store.update_user(user.id, is_verified=True)
        token = self.sessions.mint(user.id, PrincipalKind.user)
        logger.info("User id=%s verified", user.id)
        return AuthResult(principal=self._store.get_user_by_id(user.id), token=token)

    @_boundary
    def resend_registration_otp(self, email: str) -> None:
        user = self._require_user(email)
        if user.is_verified:
            raise Conflict("Email is already verified.")
        self.throttle.check(PrincipalKind.user, user.id, OtpPurpose.registration)
        code = self.otp.issue(PrincipalKind.user, user.id, OtpPurpose.registration)
        if not self._deliver(user.email, OtpPurpose.registration, code, resend=True):
            raise Unavailable("Failed to send the verification code.")

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    @_boundary
    def login(self, email: str, password: str) -> AuthResult:
        """Authenticate a user by email and password.

        Unknown email and wrong password raise the same Mismatch after the
        same bcrypt work, so the response does not reveal which one it was.
        """
        user = self._store.get_user_by_email(email)
        if not self.credentials.verify_password(user, password):
            raise Mismatch("Invalid email or password.")
        if not user.is_verified:
            raise Unauthorized("Please verify your email before logging in.")
        if not user.is_active:
            raise Unauthorized("Your account has been deactivated.")
        token = self.sessions.mint(user.id, PrincipalKind.user)
        self._store.update_last_login(PrincipalKind.user, user.id)
        return AuthResult(principal=self._store.get_user_by_id(user.id), token=token)

    # ------------------------------------------------------------------
    # Password reset (two-phase: verify, then act)
    # ------------------------------------------------------------------

    @_boundary
    def forgot_password(self, email: str) -> None:
        self._send_reset_code(email, resend=False)

    @_boundary
    def resend_reset_otp(self, email: str) -> None:
        self._send_reset_code(email, resend=True)

    @_boundary
    def verify_reset_otp(self, email: str, code: str) -> None:
        """Confirm a reset code WITHOUT consuming it.

        The code stays live so reset_password() can check it again when the
        new password arrives. Raises NotFound, Expired or Mismatch.
        """
        user = self._require_user(email)
        self.otp.verify(PrincipalKind.user, user.id, OtpPurpose.password_reset, code)

    @_boundary
    def reset_password(self, email: str, code: str, new_password: str) -> None:
        """Re-verify the reset code, then consume it and set the new password.

        Re-verification is mandatory even after verify_reset_otp(): that step
        does not consume, so this is the only check a client cannot skip.
        The consume and the hash write share one transaction: a code changes
        the password at most once, and a failed write leaves the code live
        for a retry.
        """
        self._check_password(new_password)
        user = self._require_user(email)
        self.otp.verify(PrincipalKind.user, user.id, OtpPurpose.password_reset, code)
        if not self.credentials.set_password_with_otp(
            PrincipalKind.user, user.id, OtpPurpose.password_reset, new_password, to_iso(self._clock())
        ):
            raise NotFound("No active code. Request a new one.")
        logger.info("Password reset completed for user id=%s", user.id)

    # ------------------------------------------------------------------
    # Change password (authenticated)
    # ------------------------------------------------------------------

    @_boundary
    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        user = self._store.get_user_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        if not self.credentials.verify_password(user, current_password):
            raise Mismatch("Current password is incorrect.")
        self._check_password(new_password)
        self.credentials.set_password(PrincipalKind.user, user.id, new_password)

    # ------------------------------------------------------------------
    # Admins
    # ------------------------------------------------------------------

    @_boundary
    def create_admin(self, username: str, email: str, password: str) -> Admin:
        self._check_password(password)
        if self._store.find_admin_by_email_or_username(email, username) is not None:
            raise Conflict("Admin with this email or username already exists.")
        admin_id = self._store.create_admin(
            Admin(username=username, email=email, hashed_password=self.credentials.hash_new_password(password))
        )
        logger.info("Created admin id=%s", admin_id)
        return self._store.get_admin_by_id(admin_id)

    @_boundary
    def admin_login(self, email: str, password: str) -> AuthResult:
        """Authenticate an admin and replace its persisted current-session token.

        A deactivated admin is refused even with the correct password.
        """
        admin = self._store.get_admin_by_email(email)
        if not self.credentials.verify_password(admin, password):
            raise Mismatch("Invalid email or password.")
        if not admin.is_active:
            raise Unauthorized("Your account has been deactivated.")
        token = self.sessions.mint(admin.id, PrincipalKind.admin)
        self._store.update_last_login(PrincipalKind.admin, admin.id)
        return AuthResult(principal=self._store.get_admin_by_id(admin.id), token=token)

    @_boundary
    def admin_logout(self, admin_id: int) -> None:
        self.sessions.invalidate(admin_id, PrincipalKind.admin)

    # ------------------------------------------------------------------
    # Account management
    #
    # Every update below goes through PrincipalStore.update_user() /
    # update_admin(), which refuse hashed_password. Editing a profile can
    # therefore never touch the stored hash.
    # ------------------------------------------------------------------

    @_boundary
    def update_profile(self, user_id: int, name: str | None = None, phone: str | None = None) -> User:
        """Self-service profile edit. Empty values leave the field unchanged."""
        return self._update_user(user_id, name=name, phone=phone)

    @_boundary
    def list_users(self) -> list[User]:
        return self._store.list_users()

    @_boundary
    def get_user(self, user_id: int) -> User:
        user = self._store.get_user_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    @_boundary
    def update_user(
        self,
        user_id: int,
        name: str | None = None,
        phone: str | None = None,
        is_active: bool | None = None,
        is_verified: bool | None = None,
    ) -> User:
        """Admin edit of a user, including activation and verification flags."""
        return self._update_user(user_id, name=name, phone=phone, is_active=is_active, is_verified=is_verified)

    @_boundary
    def delete_user(self, user_id: int) -> None:
        if not self._store.delete_user(user_id):
            raise NotFound("User not found.")
        logger.info("Deleted user id=%s", user_id)

    @_boundary
    def list_admins(self) -> list[Admin]:
        return self._store.list_admins()

    @_boundary
    def update_admin(
        self,
        admin_id: int,
        username: str | None = None,
        email: str | None = None,
        is_active: bool | None = None,
    ) -> Admin:
        """Edit an admin. Deactivating one also clears its session pointer.

        Raises NotFound, or Conflict if the new email or username belongs to
        another admin.
        """
        admin = self._store.get_admin_by_id(admin_id)
        if admin is None:
            raise NotFound("Admin not found.")
        fields: dict = {}
        if email and normalize_email(email) != admin.email:
            if self._store.get_admin_by_email(email) is not None:
                raise Conflict("Email already exists.")
            fields["email"] = email
        if username and username.strip() != admin.username:
            if self._store.get_admin_by_username(username) is not None:
                raise Conflict("Username already exists.")
            fields["username"] = username.strip()
        if is_active is not None:
            fields["is_active"] = is_active
        if fields:
            self._store.update_admin(admin_id, **fields)
        if is_active is False:
            self.sessions.invalidate(admin_id, PrincipalKind.admin)
            logger.info("Admin id=%s deactivated", admin_id)
        return self._store.get_admin_by_id(admin_id)

    @_boundary
    def delete_admin(self, acting_admin_id: int, admin_id: int) -> None:
        """Delete another admin. An admin cannot delete their own account."""
        if self._store.get_admin_by_id(admin_id) is None:
            raise NotFound("Admin not found.")
        if admin_id == acting_admin_id:
            raise Invalid("You cannot delete your own account.")
        self._store.delete_admin(admin_id)
        logger.info("Admin id=%s deleted by admin id=%s", admin_id, acting_admin_id)

    # ------------------------------------------------------------------
    # Sessions and maintenance
    # ------------------------------------------------------------------

    @_boundary
    def authenticate(self, token: str, kind: PrincipalKind) -> User | Admin:
        """Resolve a bearer token to an active principal of the given kind, or raise Unauthorized."""
        return self.sessions.verify(token, kind)

    @_boundary
    def purge_expired_otps(self) -> int:
        return self.otp.purge_expired()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_password(self, password: str) -> None:
        minimum = self._settings.min_password_length
        if len(password) < minimum:
            raise Invalid(f"Password must be at least {minimum} characters long.")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise Invalid(f"Password must be at most {MAX_PASSWORD_BYTES} bytes long.")

    def _require_user(self, email: str) -> User:
        user = self._store.get_user_by_email(email)
        if user is None:
            raise NotFound("User not found.")
        return user

    def _update_user(self, user_id: int, name: str | None = None, phone: str | None = None, **flags) -> User:
        user = self._store.get_user_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        fields: dict = {key: value for key, value in flags.items() if value is not None}
        if name and name.strip():
            fields["name"] = name.strip()
        phone = phone.strip() if phone else None
        if phone and phone != user.phone:
            if self._store.get_user_by_phone(phone) is not None:
                raise Conflict("Phone number is already taken.")
            fields["phone"] = phone
        if fields:
            self._store.update_user(user_id, **fields)
        return self._store.get_user_by_id(user_id)

    def _send_reset_code(self, email: str, resend: bool) -> None:
        user = self._require_user(email)
        self.throttle.check(PrincipalKind.user, user.id, OtpPurpose.password_reset)
        code = self.otp.issue(PrincipalKind.user, user.id, OtpPurpose.password_reset)
        if not self._deliver(user.email, OtpPurpose.password_reset, code, resend=resend):
            raise Unavailable("Failed to send the password reset code.")

    def _deliver(self, to: str, purpose: OtpPurpose, code: str, resend: bool = False) -> bool:
        """Render and send an OTP email. Any transport exception counts as a failed delivery."""
        subject, body = render_otp_email(self._config.get_app_config(), purpose, code, self.otp.ttl_minutes, resend)
        try:
            return bool(self._mailer.send(to, subject, body))
        except Exception:
            logger.exception("Email transport raised while sending %s code", purpose.value)
            return False

    def _rollback_registration(self, user_id: int) -> None:
        self._store.delete_user(user_id)
        logger.warning("Registration rolled back for user id=%s: code delivery failed", user_id)
