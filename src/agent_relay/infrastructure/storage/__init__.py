"""Persistence: JSON collections and the encrypted credential vault."""

from .credentials import CredentialVault, load_or_create_key
from .json_store import JsonCollection

__all__ = ["CredentialVault", "JsonCollection", "load_or_create_key"]
