"""
Encryption engine. Archives are encrypted to an age X25519 recipient with the
`age` binary; the identity key is piped to it on stdin and never written to disk.
Recipient and identity strings are bech32 and validated here before use.
"""
import hashlib
import hmac
import os
import subprocess
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey

from .errors import ArtifactNotFound, DecryptionFailure, EncryptionFailure
from .keys import KeyProvider
from .utils import secure_erase

RECIPIENT_HRP = "age"
IDENTITY_HRP = "age-secret-key-"
KEY_LEN = 32

_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_GENERATOR = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)


def _polymod(values: List[int]) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ value
        for i in range(5):
            if (top >> i) & 1:
                chk ^= _GENERATOR[i]
    return chk

def _hrp_expand(hrp: str) -> List[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]

def _convertbits(data: Iterable[int], frombits: int, tobits: int, pad: bool) -> List[int]:
    acc = 0
    bits = 0
    out: List[int] = []
    maxv = (1 << tobits) - 1
    for value in data:
        if value < 0 or value >> frombits:
            raise ValueError("invalid data value")
        acc = (acc << frombits) | value
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            out.append((acc >> bits) & maxv)
    if pad:
        if bits:
            out.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        raise ValueError("invalid padding")
    return out

def bech32_encode(hrp: str, payload: bytes) -> str:
    data = _convertbits(payload, 8, 5, True)
    polymod = _polymod(_hrp_expand(hrp) + data + [0] * 6) ^ 1
    checksum = [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]
    return hrp + "1" + "".join(_CHARSET[d] for d in data + checksum)

def bech32_decode(text: str) -> Tuple[str, bytes]:
    """Decode a bech32 string into (human-readable part, payload). Raises ValueError."""
    if text.lower() != text and text.upper() != text:
        raise ValueError("mixed-case bech32 string")
    text = text.lower()
    pos = text.rfind("1")
    if pos < 1 or pos + 7 > len(text):
        raise ValueError("missing bech32 separator or checksum")
    hrp = text[:pos]
    try:
        data = [_CHARSET.index(c) for c in text[pos + 1:]]
    except ValueError:
        raise ValueError("invalid bech32 character") from None
    if _polymod(_hrp_expand(hrp) + data) != 1:
        raise ValueError("bech32 checksum mismatch")
    return hrp, bytes(_convertbits(data[:-6], 5, 8, False))

def parse_recipient(text: str) -> X25519PublicKey:
    """Validate an age1... recipient and return its X25519 public key."""
    hrp, payload = bech32_decode(text.strip())
    if hrp != RECIPIENT_HRP:
        raise ValueError(f"not an age recipient (prefix '{hrp}')")
    if len(payload) != KEY_LEN:
        raise ValueError("age recipient must encode 32 bytes")
    return X25519PublicKey.from_public_bytes(payload)

def format_recipient(public_key: X25519PublicKey) -> str:
    raw = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    return bech32_encode(RECIPIENT_HRP, raw)

def parse_identity(material: bytes) -> X25519PrivateKey:
    """Find the AGE-SECRET-KEY-1... line in identity material (comments allowed)."""
    for line in material.decode("utf-8", errors="replace").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        hrp, payload = bech32_decode(line)
        if hrp != IDENTITY_HRP or len(payload) != KEY_LEN:
            raise ValueError("not an age X25519 identity")
        return X25519PrivateKey.from_private_bytes(payload)
    raise ValueError("no identity found")

def recipient_for_identity(material: bytes) -> Optional[str]:
    """The age1... recipient matching identity material, or None if it cannot be parsed."""
    try:
        return format_recipient(parse_identity(material).public_key())
    except ValueError:
        return None

def sha256_file(path: Path) -> str:
    """Stream a file and return its SHA-256 hex digest."""
    hasher = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()

def secure_compare(a: bytes, b: bytes) -> bool:
    """Constant-time comparison to prevent timing attacks."""
    return hmac.compare_digest(a, b)


class AgeEngine:
    """Thin wrapper over the age CLI."""

    def __init__(self, binary: str = "age", recipient: Optional[str] = None):
        self.binary = binary
        self.recipient = recipient

    def _stderr(self, result: subprocess.CompletedProcess) -> str:
        return result.stderr.decode("utf-8", errors="replace").strip()

    def encrypt(self, archive: Path, recipient: str, dest: Path) -> Path:
        """
        Encrypt archive to recipient at dest. The ciphertext only appears under
        its final name once age has succeeded; the plaintext archive is erased.
        """
        try:
            parse_recipient(recipient)
        except ValueError as e:
            raise EncryptionFailure(f"Malformed recipient key: {e}") from e

        partial = dest.with_name(dest.name + ".partial")
        try:
            result = subprocess.run(
                [self.binary, "--encrypt", "--recipient", recipient, "--output", str(partial), str(archive)],
                capture_output=True, check=False,
            )
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise EncryptionFailure(f"Cannot run {self.binary}: {e}") from e

        if result.returncode != 0:
            partial.unlink(missing_ok=True)
            raise EncryptionFailure(f"age exited with status {result.returncode}: {self._stderr(result)}")

        os.replace(partial, dest)
        secure_erase(archive)
        return dest

    def decrypt(self, artifact: Path, identity: KeyProvider, dest: Path) -> Path:
        """Decrypt artifact into dest, feeding the identity key through stdin."""
        if not artifact.is_file():
            raise ArtifactNotFound(f"Backup not found: {artifact}")

        key = identity.get_identity_key()
        try:
            result = subprocess.run(
                [self.binary, "--decrypt", "--identity", "-", "--output", str(dest), str(artifact)],
                input=key, capture_output=True, check=False,
            )
        except OSError as e:
            raise DecryptionFailure(f"Cannot run {self.binary}: {e}") from e

        if result.returncode != 0:
            if dest.exists():
                secure_erase(dest)
            detail = self._stderr(result)
            if self.recipient and recipient_for_identity(key) not in (None, self.recipient):
                detail += " (identity key does not match the configured recipient)"
            raise DecryptionFailure(f"Failed to decrypt {artifact.name}: {detail}")
        return dest
