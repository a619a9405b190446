"""
Chrome Safe Storage key export/import.

Chrome-class applications encrypt cookies and saved passwords with a symmetric
key held in the OS keyring. Restored cookie files are only readable on the new
machine if that key travels with them, so it is carried inside the encrypted
archive as a small text file and written back to the keyring before the
profile files are merged.
"""
from pathlib import Path
from typing import Dict, Optional, Protocol

from .crypto import secure_compare
from .errors import KeyExportFailure, KeyImportFailure
from .models import AppSpec
from .utils import secure_erase

KEY_FILENAME = ".chrome-safe-storage-key"
SAFE_STORAGE_LABEL = "Chrome Safe Storage"
SAFE_STORAGE_ATTRIBUTES: Dict[str, str] = {
    "xdg:schema": "chrome_libsecret_os_crypt_password_v2",
    "application": "chrome",
}


class SafeStorageKeyring(Protocol):
    """The slice of an OS keyring this module needs."""

    def search(self, attributes: Dict[str, str]) -> Optional[str]:
        ...

    def store(self, label: str, attributes: Dict[str, str], value: str) -> None:
        ...

class SecretServiceKeyring:
    """
    Secret Service (GNOME Keyring / KWallet) access.
    The keyring backend picks and unlocks the collection; items are then
    addressed by schema attributes, which keyring's service/username API cannot do.
    """

    def _collection(self):
        import keyring.errors
        from keyring.backends import SecretService
        from secretstorage.exceptions import SecretStorageException

        try:
            return SecretService.Keyring().get_preferred_collection()
        except (keyring.errors.KeyringError, keyring.errors.InitError, SecretStorageException) as e:
            raise KeyExportFailure(f"OS keyring unavailable: {e}") from e

    def search(self, attributes: Dict[str, str]) -> Optional[str]:
        from secretstorage.exceptions import SecretStorageException

        collection = self._collection()
        try:
            for item in collection.search_items(attributes):
                secret = item.get_secret()
                if secret:
                    return secret.decode("utf-8").strip()
        except SecretStorageException as e:
            raise KeyExportFailure(f"Keyring search failed: {e}") from e
        return None

    def store(self, label: str, attributes: Dict[str, str], value: str) -> None:
        from secretstorage.exceptions import SecretStorageException

        try:
            collection = self._collection()
            collection.create_item(label, attributes, value.encode("utf-8"), replace=True)
        except (KeyExportFailure, SecretStorageException) as e:
            raise KeyImportFailure(f"Keyring store failed: {e}") from e


def export_key(spec: AppSpec, keyring: SafeStorageKeyring) -> Optional[str]:
    """
    Read the safe storage key of spec from the keyring.
    Returns None when the application has none or the keyring holds none;
    raises KeyExportFailure when the keyring itself cannot be queried.
    """
    if not spec.safe_storage:
        return None
    return keyring.search(SAFE_STORAGE_ATTRIBUTES) or None

def import_key(spec: AppSpec, value: str, keyring: SafeStorageKeyring) -> str:
    """
    Install value as the safe storage key of spec.
    Returns "unchanged" when the keyring already holds it, "imported" otherwise.
    """
    value = value.strip()
    if not value:
        raise KeyImportFailure(f"{spec.display_name} Safe Storage key in backup is empty")

    try:
        existing = keyring.search(SAFE_STORAGE_ATTRIBUTES)
    except KeyExportFailure as e:
        raise KeyImportFailure(str(e)) from e

    if existing and secure_compare(existing.encode("utf-8"), value.encode("utf-8")):
        return "unchanged"

    keyring.store(SAFE_STORAGE_LABEL, SAFE_STORAGE_ATTRIBUTES, value)
    return "imported"

def write_key_file(staging: Path, value: str) -> Path:
    path = staging / KEY_FILENAME
    path.write_text(value + "\n", encoding="utf-8")
    path.chmod(0o600)
    return path

def take_key_file(scratch: Path) -> Optional[str]:
    """Read and erase the carried key so it never reaches the live profile."""
    path = scratch / KEY_FILENAME
    if not path.is_file():
        return None
    value = path.read_text(encoding="utf-8").strip()
    secure_erase(path)
    return value
