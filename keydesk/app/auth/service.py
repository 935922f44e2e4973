"""Login and registration flows."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, NoReturn, Optional, Tuple

from ..admission.rate_limit import RateLimiter
from ..audit import AuditSink, emit_audit
from ..config import Settings
from ..errors import AdmissionRejected, Conflict
from .passwords import hash_password, verify_password
from .repository import Account, AccountRepository
from .sessions import SessionClaims, create_session_token
from .totp import verify_totp_with_backups

logger = logging.getLogger("keydesk.auth")


@dataclass
class AuthService:
    """Authenticates resellers and issues session tokens."""

    repository: AccountRepository
    settings: Settings
    limiter: RateLimiter
    audit_sink: Optional[AuditSink] = None
    clock: Callable[[], float] = time.time

    def login(
        self,
        username: str,
        password: str,
        *,
        rate_limit_key: str,
        origin: str = "unknown",
        totp: Optional[str] = None,
    ) -> Tuple[SessionClaims, str]:
        """Verify credentials and return ``(claims, token)``.

        The caller has already counted this attempt against
        ``rate_limit_key``; the counter is cleared only on success.
        Accounts with a second factor enabled also need ``totp``, either
        a current code or one unused backup code.
        """

        account = self.repository.get_account(username)
        if account is None or account.disabled:
            self._reject(username, origin, "unknown_or_disabled")

        if not verify_password(password, account.password_hash):
            self._reject(username, origin, "bad_password")

        if account.totp_required:
            self._check_second_factor(account, totp, origin)

        claims = SessionClaims(
            sub=account.id,
            role=account.role,
            name=account.name or account.id,
            permissions=list(account.permissions),
            email=account.email,
        )
        token = create_session_token(claims, self.settings)
        self.limiter.reset(rate_limit_key)

        logger.info("Successful login user=%s role=%s origin=%s", claims.sub, claims.role, origin)
        emit_audit(self.audit_sink, "auth.login", actor=claims.sub, origin=origin)
        return claims, token

    def _check_second_factor(self, account: Account, totp: Optional[str], origin: str) -> None:
        config = account.totp
        if not totp or not totp.strip():
            logger.warning("Login for %s from %s is missing a TOTP code", account.id, origin)
            emit_audit(self.audit_sink, "auth.login_failed", subject=account.id, origin=origin, reason="totp_required")
            raise AdmissionRejected.totp_required()

        check = verify_totp_with_backups(totp, config.secret, config.backup_codes, at=self.clock())
        if not check.valid:
            self._reject(account.id, origin, "bad_totp")
        if check.used_backup is not None:
            # A concurrent login may have spent the same code first.
            if not self.repository.consume_backup_code(account.id, check.used_backup):
                self._reject(account.id, origin, "backup_code_reused")
            logger.info("Backup code used user=%s remaining=%s", account.id, len(config.backup_codes) - 1)

    def _reject(self, username: str, origin: str, reason: str) -> NoReturn:
        logger.warning("Failed login for %s from %s", username, origin)
        emit_audit(self.audit_sink, "auth.login_failed", subject=username, origin=origin, reason=reason)
        raise AdmissionRejected(
            code="invalid_credentials",
            message="Invalid credentials",
            status_code=401,
        )

    def register(self, username: str, email: str, password: str) -> Account:
        if self.repository.get_account(username) is not None:
            raise Conflict(message="Username already exists")
        account = self.repository.create_account(
            account_id=username,
            email=email,
            password_hash=hash_password(password),
        )
        emit_audit(self.audit_sink, "auth.registered", actor=account.id, email=email)
        return account


__all__ = ["AuthService"]
