"""
Custom exception hierarchy for AppBackup.
"""
from typing import Any, List, Optional


class AppBackupError(Exception):
    """Base exception for all appbackup errors."""

    hint: Optional[str] = None
    summary: Optional[Any] = None  # Partial RunSummary when a run aborts midway

    def __init__(self, message: str = "", hint: Optional[str] = None):
        super().__init__(message)
        if hint is not None:
            self.hint = hint

class ConfigError(AppBackupError):
    pass

class ConfigInvalid(ConfigError):
    hint = "Fix the configuration file or regenerate it with your system configuration."

class AppsRunningError(AppBackupError):
    hint = "Close the application or pass --force."

    def __init__(self, apps: List[str]):
        self.apps = list(apps)
        super().__init__(f"Apps are running: {', '.join(self.apps)}")

class NoFilesFound(AppBackupError):
    def __init__(self, app: str):
        self.app = app
        super().__init__(f"No {app} files found to backup")

class CryptoError(AppBackupError):
    pass

class EncryptionFailure(CryptoError):
    pass

class DecryptionFailure(CryptoError):
    pass

class KeyProviderError(AppBackupError):
    pass

class SecretUnavailable(KeyProviderError):
    hint = "Unlock the secret manager (e.g. sign in to 1Password) and retry."

class IdentityKeyNotFound(KeyProviderError):
    hint = "Check age_key_path in the configuration or switch to a secret-manager reference."

class TransportFailure(AppBackupError):
    hint = "Check network access to the remote; local commits are kept and can be pushed later."

class RemoteUnavailable(TransportFailure):
    pass

class KeyringError(AppBackupError):
    pass

class KeyExportFailure(KeyringError):
    pass

class KeyImportFailure(KeyringError):
    pass

class RestoreError(AppBackupError):
    pass

class ArtifactNotFound(RestoreError):
    pass

class RestoreExtractionError(RestoreError):
    pass

class PathTraversalError(RestoreError):
    pass
