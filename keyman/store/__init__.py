"""keyman key store: registry models and on-disk persistence."""

from .models import KeyPair, Registry, validate_key_name
from .key_store import KeyStore, StagedDeletion, MODE_COPY, MODE_LINK

__all__ = [
    "KeyPair", "Registry", "validate_key_name",
    "KeyStore", "StagedDeletion", "MODE_COPY", "MODE_LINK",
]
