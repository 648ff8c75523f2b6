"""
Account and log-collection operations for the route-log API.

Accounts are JSON objects under user:<username>; each account owns one
log collection under logs:<token>, replaced wholesale on every save.

Invariants:
    - Passwords are stored as SHA-256 hex digests
    - A plaintext password left by an old client is upgraded on login
    - Account deletion goes through SnapshotManager.soft_delete
    - A soft-deleted username stays reserved so it can be restored

How to change safely:
    - Changing the hash scheme needs an upgrade path like the plaintext one
    - Keep field names (password, token, resetKey, createdAt); the web
      client and old snapshots depend on them
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ..kv.base import KeyValueStore
from ..lifecycle.pager import collect_keys
from ..lifecycle.snapshots import (
    USER_PREFIX,
    SnapshotManager,
    encode_json,
    logs_key,
    user_key,
)

logger = logging.getLogger(__name__)

EMPTY_LOGS = "[]"
HEX_DIGITS = frozenset("0123456789abcdef")


class AccountError(Exception):
    """Base exception for account operations.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
    """

    code = "ACCOUNT_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequestError(AccountError):
    """A required field is missing or empty."""

    code = "INVALID_REQUEST"


class UsernameTakenError(AccountError):
    """Signup for a username that already has a record."""

    code = "USERNAME_TAKEN"


class AccountNotFoundError(AccountError):
    """No account record for the username."""

    code = "NOT_FOUND"


class InvalidCredentialsError(AccountError):
    """Password, token or reset key did not match."""

    code = "UNAUTHORIZED"


class AccountDeletedError(AccountError):
    """The account is soft-deleted."""

    code = "ACCOUNT_DELETED"


@dataclass(frozen=True)
class Credentials:
    """Secrets handed to the client at signup."""

    token: str
    reset_key: str


def hash_password(password: str) -> str:
    """SHA-256 hex digest of a password."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def _is_hashed(value: Any) -> bool:
    """True for a stored value that is already a SHA-256 hex digest."""
    return isinstance(value, str) and len(value) == 64 and all(c in HEX_DIGITS for c in value)


def _matches(a: Any, b: Any) -> bool:
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _require(**fields: Any) -> None:
    missing = [name for name, value in fields.items() if not isinstance(value, str) or not value]
    if missing:
        raise InvalidRequestError(f"Missing required field(s): {', '.join(missing)}")


class AccountService:
    """Signup, login, password management and log storage.

    Example:
        >>> service = AccountService(store, SnapshotManager(store))
        >>> creds = await service.signup("alice", "hunter2")
        >>> await service.login("alice", "hunter2") == creds.token
        True
    """

    def __init__(self, store: KeyValueStore, snapshots: SnapshotManager) -> None:
        self.store = store
        self.snapshots = snapshots

    async def get_account(self, username: str) -> dict[str, Any] | None:
        """Live account record, or None."""
        raw = await self.store.get(user_key(username))
        if raw is None:
            return None
        record = json.loads(raw)
        if not isinstance(record, dict):
            raise ValueError(f"Account record for {username} is not an object")
        return record

    async def _require_account(self, username: str) -> dict[str, Any]:
        account = await self.get_account(username)
        if account is None:
            raise AccountNotFoundError("User not found")
        return account

    async def _save_account(self, username: str, account: dict[str, Any]) -> None:
        await self.store.put(user_key(username), encode_json(account))

    async def signup(self, username: str, password: str) -> Credentials:
        """Create an account.

        Raises:
            InvalidRequestError: If username or password is empty
            UsernameTakenError: If any record exists for the username
        """
        _require(username=username, password=password)
        if await self.store.get(user_key(username)) is not None:
            raise UsernameTakenError("That username is already taken. Please choose another.")

        credentials = Credentials(token=str(uuid.uuid4()), reset_key=str(uuid.uuid4()))
        await self._save_account(
            username,
            {
                "password": hash_password(password),
                "token": credentials.token,
                "resetKey": credentials.reset_key,
                "createdAt": datetime.now(timezone.utc)
                .isoformat(timespec="milliseconds")
                .replace("+00:00", "Z"),
            },
        )
        logger.info("Account created", extra={"username": username})
        return credentials

    async def login(self, username: str, password: str) -> str:
        """Check a password and return the session token.

        Raises:
            AccountNotFoundError: Unknown username
            AccountDeletedError: Account is soft-deleted
            InvalidCredentialsError: Wrong password
        """
        _require(username=username, password=password)
        account = await self._require_account(username)
        hashed = hash_password(password)

        stored = account.get("password")
        if not _is_hashed(stored) and _matches(stored, password):
            account["password"] = hashed
            await self._save_account(username, account)
            logger.info("Upgraded plaintext password", extra={"username": username})

        if not _matches(account.get("password"), hashed):
            raise InvalidCredentialsError("Invalid password")
        if account.get("deleted"):
            raise AccountDeletedError("Account has been deleted")
        return account["token"]

    async def change_password(
        self,
        username: str,
        token: str | None,
        current_password: str,
        new_password: str,
    ) -> None:
        """Change a password, authenticated by token plus current password."""
        _require(username=username, currentPassword=current_password, newPassword=new_password)
        account = await self._require_account(username)

        stored = account.get("password")
        if not _matches(account.get("token"), token) or not (
            _matches(stored, current_password) or _matches(stored, hash_password(current_password))
        ):
            raise InvalidCredentialsError("Unauthorized")

        account["password"] = hash_password(new_password)
        await self._save_account(username, account)
        logger.info("Password changed", extra={"username": username})

    async def reset_password(self, username: str, reset_key: str, new_password: str) -> None:
        """Set a new password using the reset key issued at signup."""
        _require(username=username, resetKey=reset_key, newPassword=new_password)
        account = await self._require_account(username)
        if not _matches(account.get("resetKey"), reset_key):
            raise InvalidCredentialsError("Invalid reset key")

        account["password"] = hash_password(new_password)
        await self._save_account(username, account)
        logger.info("Password reset with reset key", extra={"username": username})

    async def admin_reset_password(self, username: str, temp_password: str) -> None:
        """Set a temporary password on behalf of the user."""
        _require(tempPassword=temp_password)
        account = await self._require_account(username)
        account["password"] = hash_password(temp_password)
        await self._save_account(username, account)
        logger.info("Password reset by admin", extra={"username": username})

    async def delete_account(self, username: str, token: str | None, password: str) -> None:
        """Soft-delete an account after checking token and password."""
        _require(username=username, password=password)
        account = await self._require_account(username)
        if not _matches(account.get("token"), token) or not _matches(
            account.get("password"), hash_password(password)
        ):
            raise InvalidCredentialsError("Unauthorized")

        if not await self.snapshots.soft_delete(username):
            # Removed between the check and the snapshot
            raise AccountNotFoundError("User not found")

    async def list_usernames(self) -> list[str]:
        """Every username with a live record, deleted ones included."""
        keys = await collect_keys(
            self.store,
            USER_PREFIX,
            page_size=self.snapshots.page_size,
            max_pages=self.snapshots.max_pages,
        )
        return [key[len(USER_PREFIX):] for key in keys]

    async def load_logs(self, token: str) -> str:
        """Raw log collection for a token, "[]" if none saved."""
        raw = await self.store.get(logs_key(token))
        return raw if raw is not None else EMPTY_LOGS

    async def save_logs(self, token: str, body: str) -> None:
        """Replace the log collection for a token."""
        await self.store.put(logs_key(token), body)
        logger.debug("Logs saved", extra={"size": len(body)})
