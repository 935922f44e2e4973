"""Sessions, password verification and role-based access policy."""

from .passwords import LegacyDigest, ModernHash, hash_password, parse_password_hash, verify_password
from .rbac import Action, Capability, Principal, authorize, compute_capabilities, resolve_principal
from .repository import Account, AccountRepository, PostgresAccountRepository, TotpConfig
from .service import AuthService
from .sessions import SessionClaims, create_session_token, verify_session_token
from .totp import TotpCheck, hash_backup_code, verify_totp, verify_totp_with_backups

__all__ = [
    "Account",
    "AccountRepository",
    "Action",
    "AuthService",
    "Capability",
    "LegacyDigest",
    "ModernHash",
    "PostgresAccountRepository",
    "Principal",
    "SessionClaims",
    "TotpCheck",
    "TotpConfig",
    "authorize",
    "compute_capabilities",
    "create_session_token",
    "hash_backup_code",
    "hash_password",
    "parse_password_hash",
    "resolve_principal",
    "verify_password",
    "verify_session_token",
    "verify_totp",
    "verify_totp_with_backups",
]
