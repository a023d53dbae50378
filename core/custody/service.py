"""Custody service.

The only API surface through which other components obtain a usable secret
key. Per-user state machine: no password -> password set -> locked/unlocked.

Flows:
- setup_password / change_password / verify_password_for_action
- unlock (lockout aware) / lock / lock_all
- create_wallet / import_wallet / create_encrypted_wallet
- migrate_wallet / migrate_all_wallets (legacy server key -> user password)

Security:
- Secrets are persisted only as password-encrypted blobs (version 2)
- Legacy blobs are decrypt-only
- Re-encryption is verified (round-trip and address) before the single-row write
- Nothing in this module logs passwords, secrets or ciphertext
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Mapping, Optional

from core.config import CustodyConfig
from core.custody.addresses import ChainAddressDeriver, InvalidSecretError
from core.custody.cipher import (
    LegacyBlob,
    PasswordBlob,
    decrypt_legacy_blob,
    decrypt_password_blob,
    decrypt_with_password,
    encrypt_with_password,
    generate_secure_password,
    hash_password,
    parse_blob,
    verify_password,
)
from core.custody.sessions import SessionInfo, SessionStore
from core.persistence.interfaces import CustodyStore
from core.types import Chain, EncryptedWallet, WhitelistEntry

logger = logging.getLogger(__name__)

PASSWORD_ENCRYPTION_VERSION = 2


# ========== Results ==========


@dataclass(frozen=True)
class CustodyResult:
    success: bool
    error: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class WalletUnlockStatus:
    """Per-wallet outcome of an unlock. A failed wallet does not fail the unlock."""

    chain: Chain
    address: str
    unlocked: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class UnlockResult:
    success: bool
    error: Optional[str] = None
    lockout_minutes: Optional[int] = None
    attempts_remaining: Optional[int] = None
    wallets: tuple[WalletUnlockStatus, ...] = ()


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    unlock_in_minutes: int = 0
    failed_attempts: int = 0


@dataclass(frozen=True)
class PasswordChangeResult:
    success: bool
    error: Optional[str] = None
    reencrypted: tuple[Chain, ...] = ()
    skipped: tuple[Chain, ...] = ()


@dataclass(frozen=True)
class MigrationReport:
    success: bool
    migrated: tuple[Chain, ...] = ()
    failed: tuple[tuple[Chain, str], ...] = ()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CustodyService:
    def __init__(
        self,
        *,
        store: CustodyStore,
        sessions: SessionStore,
        config: CustodyConfig | None = None,
        deriver: ChainAddressDeriver | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._config = config or CustodyConfig()
        self._deriver = deriver or ChainAddressDeriver()
        self._clock = clock

    # ========== Password setup ==========

    def needs_setup(self, user_id: int) -> bool:
        return not self._store.has_user_security(user_id=user_id)

    def setup_password(self, user_id: int, password: str) -> CustodyResult:
        """Create the user's password hash. Does not unlock."""
        if self._store.has_user_security(user_id=user_id):
            return CustodyResult(False, "Password already set up")
        if len(password) < self._config.min_password_length:
            return CustodyResult(False, f"Password must be at least {self._config.min_password_length} characters")

        password_hash = hash_password(password, user_id, iterations=self._config.pbkdf2_iterations)
        self._store.create_user_security(user_id=user_id, password_hash=password_hash)
        self._store.log_security_event(user_id=user_id, action="password_created")
        logger.info("Password set up for user %s", user_id)
        return CustodyResult(True)

    def _check_password(self, user_id: int, password: str) -> bool:
        security = self._store.get_user_security(user_id=user_id)
        if security is None:
            return False
        return verify_password(password, user_id, security.password_hash, iterations=self._config.pbkdf2_iterations)

    def verify_password_for_action(self, user_id: int, password: str) -> bool:
        """Confirm the password for a sensitive action without creating a session."""
        if self.get_lockout_status(user_id).locked:
            return False
        if not self._store.has_user_security(user_id=user_id):
            return False
        valid = self._check_password(user_id, password)
        self._store.record_login_attempt(user_id=user_id, success=valid, at=self._clock())
        return valid

    def change_password(self, user_id: int, old_password: str, new_password: str) -> PasswordChangeResult:
        """Re-encrypt every wallet under the new password and invalidate the session.

        Wallets that cannot be decrypted (corrupted blob, missing legacy key) keep
        their previous blob and are reported in `skipped`.
        """
        if not self._store.has_user_security(user_id=user_id):
            return PasswordChangeResult(False, "No security setup found")
        if self.get_lockout_status(user_id).locked:
            return PasswordChangeResult(False, "Too many failed attempts. Try again later.")
        if not self._check_password(user_id, old_password):
            self._store.record_login_attempt(user_id=user_id, success=False, at=self._clock())
            return PasswordChangeResult(False, "Current password is incorrect")
        if len(new_password) < self._config.min_password_length:
            return PasswordChangeResult(
                False, f"New password must be at least {self._config.min_password_length} characters"
            )

        reencrypted: list[Chain] = []
        skipped: list[Chain] = []
        for wallet in self._store.list_wallets(user_id=user_id):
            secret = self._decrypt_wallet(wallet, old_password)
            if secret is None:
                logger.warning("Skipping re-encryption of %s wallet for user %s: decrypt failed", wallet.chain.value, user_id)
                skipped.append(wallet.chain)
                continue
            if not self._write_reencrypted(wallet, secret, new_password):
                skipped.append(wallet.chain)
                continue
            reencrypted.append(wallet.chain)

        password_hash = hash_password(new_password, user_id, iterations=self._config.pbkdf2_iterations)
        self._store.update_user_security(user_id=user_id, password_hash=password_hash)
        self._store.log_security_event(user_id=user_id, action="password_changed")
        self._sessions.lock(user_id)
        logger.info(
            "Password changed for user %s (%d wallet(s) re-encrypted, %d skipped)",
            user_id,
            len(reencrypted),
            len(skipped),
        )
        return PasswordChangeResult(True, reencrypted=tuple(reencrypted), skipped=tuple(skipped))

    # ========== Lockout ==========

    def get_lockout_status(self, user_id: int) -> LockoutStatus:
        """Failed attempts inside the trailing window, counted since the last success."""
        now = self._clock()
        window = timedelta(minutes=self._config.lockout_minutes)
        since = now - window
        last_success = self._store.last_attempt_time(user_id=user_id, success=True)
        if last_success is not None and last_success > since:
            since = last_success

        failed = self._store.count_failed_attempts(user_id=user_id, since=since)
        if failed < self._config.max_failed_attempts:
            return LockoutStatus(locked=False, failed_attempts=failed)

        last_failed = self._store.last_attempt_time(user_id=user_id, success=False)
        if last_failed is None:
            return LockoutStatus(locked=False, failed_attempts=failed)
        remaining = (last_failed + window - now).total_seconds()
        if remaining <= 0:
            return LockoutStatus(locked=False, failed_attempts=failed)
        return LockoutStatus(locked=True, unlock_in_minutes=math.ceil(remaining / 60), failed_attempts=failed)

    # ========== Unlock / lock ==========

    def unlock(self, user_id: int, password: str) -> UnlockResult:
        lockout = self.get_lockout_status(user_id)
        if lockout.locked:
            return UnlockResult(
                False,
                f"Too many failed attempts. Try again in {lockout.unlock_in_minutes} minutes.",
                lockout_minutes=lockout.unlock_in_minutes,
                attempts_remaining=0,
            )

        if not self._store.has_user_security(user_id=user_id):
            return UnlockResult(False, "Please set up a password first")

        if not self._check_password(user_id, password):
            self._store.record_login_attempt(user_id=user_id, success=False, at=self._clock())
            self._store.log_security_event(user_id=user_id, action="unlock_failed")
            remaining = max(0, self._config.max_failed_attempts - (lockout.failed_attempts + 1))
            logger.info("Failed unlock for user %s (%d attempt(s) remaining)", user_id, remaining)
            if remaining > 0:
                return UnlockResult(False, f"Incorrect password. {remaining} attempts remaining.", attempts_remaining=remaining)
            return UnlockResult(
                False,
                f"Account locked for {self._config.lockout_minutes} minutes due to too many failed attempts.",
                lockout_minutes=self._config.lockout_minutes,
                attempts_remaining=0,
            )

        self._store.record_login_attempt(user_id=user_id, success=True, at=self._clock())
        self._sessions.create(user_id)

        statuses: list[WalletUnlockStatus] = []
        for wallet in self._store.list_wallets(user_id=user_id):
            secret = self._decrypt_wallet(wallet, password)
            if secret is None:
                logger.warning("Could not decrypt %s wallet for user %s during unlock", wallet.chain.value, user_id)
                statuses.append(WalletUnlockStatus(wallet.chain, wallet.address, False, "Decryption failed"))
                continue
            self._sessions.store_key(user_id, wallet.chain, secret)
            statuses.append(WalletUnlockStatus(wallet.chain, wallet.address, True))

        self._store.log_security_event(user_id=user_id, action="unlock")
        logger.info("Unlocked user %s (%d wallet(s))", user_id, sum(1 for s in statuses if s.unlocked))
        return UnlockResult(True, wallets=tuple(statuses))

    def lock(self, user_id: int) -> None:
        """End the session immediately. Idempotent."""
        self._sessions.lock(user_id)
        self._store.log_security_event(user_id=user_id, action="lock")

    def lock_all(self) -> None:
        """Emergency: drop every session in the process."""
        count = len(self._sessions)
        self._sessions.lock_all()
        logger.warning("Locked all sessions (%d)", count)

    def is_unlocked(self, user_id: int) -> bool:
        return self._sessions.get(user_id) is not None

    def get_session_info(self, user_id: int) -> SessionInfo:
        return self._sessions.info(user_id)

    def refresh_session(self, user_id: int) -> bool:
        return self._sessions.refresh(user_id)

    # ========== Private keys ==========

    def get_private_key(self, user_id: int, chain: Chain) -> Optional[str]:
        """The secret for `chain`, only while a live session holds it."""
        return self._sessions.get_key(user_id, chain)

    def _decrypt_wallet(self, wallet: EncryptedWallet, password: str) -> Optional[str]:
        blob = parse_blob(wallet.encrypted_secret)
        if isinstance(blob, LegacyBlob):
            if wallet.encryption_version >= PASSWORD_ENCRYPTION_VERSION:
                logger.warning(
                    "Legacy-format blob on v%d %s wallet for user %s; refusing to decrypt",
                    wallet.encryption_version,
                    wallet.chain.value,
                    wallet.user_id,
                )
                return None
            return decrypt_legacy_blob(blob, self._config.legacy_key_hex)
        if isinstance(blob, PasswordBlob):
            return decrypt_password_blob(blob, password, wallet.user_id, iterations=self._config.pbkdf2_iterations)
        return None

    def _address_matches(self, chain: Chain, address: str, secret: str) -> bool:
        try:
            derived = self._deriver.derive_address(chain, secret)
        except InvalidSecretError:
            return False
        return self._deriver.addresses_match(chain, derived, address)

    def _write_reencrypted(self, wallet: EncryptedWallet, secret: str, password: str) -> bool:
        iterations = self._config.pbkdf2_iterations
        blob = encrypt_with_password(secret, password, wallet.user_id, iterations=iterations)
        if decrypt_with_password(blob, password, wallet.user_id, iterations=iterations) != secret:
            logger.error("Re-encryption round-trip failed for %s wallet of user %s", wallet.chain.value, wallet.user_id)
            return False
        if not self._address_matches(wallet.chain, wallet.address, secret):
            logger.error("Decrypted key does not match stored %s address for user %s", wallet.chain.value, wallet.user_id)
            return False
        return self._store.update_wallet_encryption(
            user_id=wallet.user_id,
            chain=wallet.chain,
            encrypted_secret=blob,
            encryption_version=PASSWORD_ENCRYPTION_VERSION,
        )

    # ========== Wallets ==========

    def create_encrypted_wallet(
        self,
        user_id: int,
        chain: Chain,
        address: str,
        secret: str,
        password: str,
    ) -> CustodyResult:
        """Encrypt `secret` under the user's password and persist it as a v2 wallet."""
        if not self._store.has_user_security(user_id=user_id):
            return CustodyResult(False, "Please set up a password first")
        if self.get_lockout_status(user_id).locked:
            return CustodyResult(False, "Too many failed attempts. Try again later.")
        if not self._check_password(user_id, password):
            self._store.record_login_attempt(user_id=user_id, success=False, at=self._clock())
            return CustodyResult(False, "Incorrect password")
        if not self._address_matches(chain, address, secret):
            return CustodyResult(False, "Private key does not match address")

        encrypted = encrypt_with_password(secret, password, user_id, iterations=self._config.pbkdf2_iterations)
        self._store.save_wallet(
            wallet=EncryptedWallet(
                user_id=user_id,
                chain=chain,
                address=address,
                encrypted_secret=encrypted,
                encryption_version=PASSWORD_ENCRYPTION_VERSION,
            )
        )
        self._store.log_security_event(user_id=user_id, action="wallet_created", details=chain.value)

        if self.is_unlocked(user_id):
            self._sessions.store_key(user_id, chain, secret)
        logger.info("Stored %s wallet %s for user %s", chain.value, address, user_id)
        return CustodyResult(True, address=address)

    def create_wallet(self, user_id: int, chain: Chain, password: str) -> CustodyResult:
        address, secret = self._deriver.generate(chain)
        return self.create_encrypted_wallet(user_id, chain, address, secret, password)

    def import_wallet(self, user_id: int, chain: Chain, secret: str, password: str) -> CustodyResult:
        try:
            normalized = self._deriver.normalize_secret(chain, secret)
            address = self._deriver.derive_address(chain, normalized)
        except InvalidSecretError as exc:
            return CustodyResult(False, str(exc))
        return self.create_encrypted_wallet(user_id, chain, address, normalized, password)

    # ========== Migration ==========

    def migrate_wallet(self, user_id: int, chain: Chain, new_password: str) -> CustodyResult:
        """Re-encrypt a legacy (server key) wallet under the user's password."""
        wallet = self._store.get_wallet(user_id=user_id, chain=chain)
        if wallet is None:
            return CustodyResult(False, "Wallet not found")
        if wallet.encryption_version >= PASSWORD_ENCRYPTION_VERSION:
            return CustodyResult(False, "Wallet already using new encryption")
        if self._store.has_user_security(user_id=user_id):
            if self.get_lockout_status(user_id).locked:
                return CustodyResult(False, "Too many failed attempts. Try again later.")
            if not self._check_password(user_id, new_password):
                self._store.record_login_attempt(user_id=user_id, success=False, at=self._clock())
                return CustodyResult(False, "Password does not match the account password")
        if not self._config.legacy_key_hex:
            return CustodyResult(False, "Legacy encryption key is not configured")

        blob = parse_blob(wallet.encrypted_secret)
        if not isinstance(blob, LegacyBlob):
            return CustodyResult(False, "Wallet is not in legacy format")
        secret = decrypt_legacy_blob(blob, self._config.legacy_key_hex)
        if secret is None:
            return CustodyResult(False, "Failed to decrypt wallet")
        if not self._write_reencrypted(wallet, secret, new_password):
            return CustodyResult(False, "Failed to re-encrypt wallet")

        self._store.log_security_event(user_id=user_id, action="wallet_migrated", details=chain.value)
        logger.info("Migrated %s wallet for user %s to password encryption", chain.value, user_id)
        return CustodyResult(True, address=wallet.address)

    def migrate_all_wallets(self, user_id: int, new_password: str) -> MigrationReport:
        migrated: list[Chain] = []
        failed: list[tuple[Chain, str]] = []
        for wallet in self._store.list_wallets(user_id=user_id):
            result = self.migrate_wallet(user_id, wallet.chain, new_password)
            if result.success:
                migrated.append(wallet.chain)
            else:
                failed.append((wallet.chain, result.error or "unknown error"))
        return MigrationReport(success=not failed, migrated=tuple(migrated), failed=tuple(failed))

    # ========== Security settings ==========

    def requires_password_for_withdraw(self, user_id: int, chain: Chain, address: str, amount: Decimal) -> bool:
        if not self.is_unlocked(user_id):
            return True
        if self._store.is_whitelisted(user_id=user_id, chain=chain, address=address):
            return False
        security = self._store.get_user_security(user_id=user_id)
        if security is None:
            return True
        limit = security.transfer_limits.get(chain) or self._config.default_transfer_limits[chain]
        return Decimal(amount) > limit

    def set_anti_phishing_code(self, user_id: int, code: str) -> CustodyResult:
        if not self._store.has_user_security(user_id=user_id):
            return CustodyResult(False, "Please set up a password first")
        self._store.update_user_security(user_id=user_id, anti_phishing_code=code)
        self._store.log_security_event(user_id=user_id, action="anti_phishing_set")
        return CustodyResult(True)

    def get_anti_phishing_code(self, user_id: int) -> Optional[str]:
        security = self._store.get_user_security(user_id=user_id)
        return security.anti_phishing_code if security else None

    def set_transfer_limits(self, user_id: int, limits: Mapping[Chain, Decimal]) -> CustodyResult:
        security = self._store.get_user_security(user_id=user_id)
        if security is None:
            return CustodyResult(False, "Please set up a password first")
        if any(Decimal(v) <= 0 for v in limits.values()):
            return CustodyResult(False, "Transfer limits must be positive")
        merged = dict(security.transfer_limits)
        merged.update({chain: Decimal(v) for chain, v in limits.items()})
        self._store.update_user_security(user_id=user_id, transfer_limits=merged)
        self._store.log_security_event(user_id=user_id, action="limits_changed")
        return CustodyResult(True)

    def get_transfer_limit(self, user_id: int, chain: Chain) -> Decimal:
        security = self._store.get_user_security(user_id=user_id)
        configured = security.transfer_limits.get(chain) if security else None
        return configured or self._config.default_transfer_limits[chain]

    def add_to_whitelist(self, user_id: int, chain: Chain, address: str, label: str | None = None) -> None:
        self._store.add_to_whitelist(user_id=user_id, chain=chain, address=address, label=label)
        self._store.log_security_event(user_id=user_id, action="whitelist_add", details=f"{chain.value}:{address}")

    def remove_from_whitelist(self, user_id: int, chain: Chain, address: str) -> bool:
        removed = self._store.remove_from_whitelist(user_id=user_id, chain=chain, address=address)
        if removed:
            self._store.log_security_event(
                user_id=user_id, action="whitelist_remove", details=f"{chain.value}:{address}"
            )
        return removed

    def get_whitelist(self, user_id: int, chain: Chain | None = None) -> list[WhitelistEntry]:
        return list(self._store.list_whitelist(user_id=user_id, chain=chain))

    @staticmethod
    def generate_secure_password(length: int = 16) -> str:
        return generate_secure_password(length)
