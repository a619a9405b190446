"""
Identity-key retrieval. The key is returned as bytes for the caller to pipe
into age; nothing here writes it anywhere.
"""
import subprocess
from typing import Callable, Protocol

from .errors import IdentityKeyNotFound, SecretUnavailable
from .models import Config, FileKey, SecretManagerKey

SecretReader = Callable[[str], bytes]


class KeyProvider(Protocol):
    def get_identity_key(self) -> bytes:
        ...

def op_read(reference: str) -> bytes:
    """Resolve a secret reference (op://vault/item/field) with the 1Password CLI."""
    try:
        result = subprocess.run(["op", "read", reference], capture_output=True, check=False)
    except OSError as e:
        raise SecretUnavailable(f"1Password CLI not available: {e}") from e
    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        raise SecretUnavailable(f"Could not read {reference}: {stderr or 'secret manager locked or unreachable'}")
    return result.stdout


class SecretManagerKeyProvider:
    """Reads the identity through the secret manager on every call."""

    def __init__(self, reference: str, reader: SecretReader = op_read):
        self.reference = reference
        self._reader = reader

    def get_identity_key(self) -> bytes:
        key = self._reader(self.reference)
        if not key or not key.strip():
            raise SecretUnavailable(f"Secret manager returned an empty value for {self.reference}")
        return key

class FileKeyProvider:
    def __init__(self, source: FileKey):
        self.path = source.resolved

    def get_identity_key(self) -> bytes:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            raise IdentityKeyNotFound(f"Age identity key not found: {self.path}") from None
        except OSError as e:
            raise IdentityKeyNotFound(f"Cannot read age identity key {self.path}: {e}") from e

def provider_for(config: Config, reader: SecretReader = op_read) -> KeyProvider:
    """Pick the strategy resolved at config load."""
    source = config.identity
    if isinstance(source, SecretManagerKey):
        return SecretManagerKeyProvider(source.reference, reader)
    return FileKeyProvider(source)
