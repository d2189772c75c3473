"""Key lookup for columns encrypted at rest."""

from devplane.config.settings import settings


def get_encryption_key() -> str:
    """Return the master key for git host token values.

    ``EncryptedType`` calls this lazily, so a missing key surfaces on the
    first token read or write instead of at import.
    """
    key = settings.security.ENCRYPTION_MASTER_KEY
    if not key:
        raise ValueError("ENCRYPTION_MASTER_KEY must be set to store host tokens.")
    return key
