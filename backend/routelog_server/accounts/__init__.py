"""
Account management for the route-log server.

Signup, login, password changes and per-account log storage. Deletion is
delegated to the lifecycle package so it is always recoverable.
"""

from .service import (
    AccountDeletedError,
    AccountError,
    AccountNotFoundError,
    AccountService,
    Credentials,
    InvalidCredentialsError,
    InvalidRequestError,
    UsernameTakenError,
    hash_password,
)

__all__ = [
    "AccountService",
    "Credentials",
    "hash_password",
    "AccountError",
    "InvalidRequestError",
    "UsernameTakenError",
    "AccountNotFoundError",
    "InvalidCredentialsError",
    "AccountDeletedError",
]
