"""
Archive exporter - materializes a source as an encrypted backup artifact.

Artifact layout:
    MAGIC (5 bytes) | KDF iterations (4 bytes, big-endian) | salt (16 bytes)
    then repeated: token length (4 bytes, big-endian) | Fernet token

The plaintext carried by the tokens is a gzip-compressed tar stream of the
source files. Each token encrypts at most chunk_size plaintext bytes.
"""

import base64
import io
import os
import struct
import tarfile
from typing import BinaryIO, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .cancellation import CancellationToken
from .errors import ExportError, translate_os_error
from .sources import ENCRYPTED_SUFFIX, DirectorySource


MAGIC = b'EXPJ1'
SALT_SIZE = 16
DEFAULT_KDF_ITERATIONS = 480000
DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB

_HEADER = struct.Struct('>I')


def derive_artifact_key(passphrase: str, salt: bytes, iterations: int = DEFAULT_KDF_ITERATIONS) -> bytes:
    """Derive the Fernet key for an artifact from its passphrase."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))


class _EncryptingWriter:
    """File-like sink that encrypts buffered plaintext in fixed-size chunks."""

    def __init__(self, raw: BinaryIO, fernet: Fernet, chunk_size: int,
                 cancel_token: Optional[CancellationToken] = None):
        self._raw = raw
        self._fernet = fernet
        self._chunk_size = chunk_size
        self._cancel_token = cancel_token
        self._buffer = bytearray()
        self.bytes_written = 0

    def write(self, data) -> int:
        self._buffer.extend(data)
        while len(self._buffer) >= self._chunk_size:
            chunk = bytes(self._buffer[:self._chunk_size])
            del self._buffer[:self._chunk_size]
            self._write_token(chunk)
        return len(data)

    def finish(self):
        if self._buffer:
            self._write_token(bytes(self._buffer))
            self._buffer.clear()
        self._raw.flush()

    def _write_token(self, plaintext: bytes):
        if self._cancel_token is not None:
            self._cancel_token.raise_if_cancelled()

        token = self._fernet.encrypt(plaintext)
        self._raw.write(_HEADER.pack(len(token)))
        self._raw.write(token)
        self.bytes_written += _HEADER.size + len(token)


class ArchiveExporter:
    """
    Exporter collaborator writing an encrypted tar.gz artifact.

    The cancellation token is polled before every file and before every
    encrypted chunk is written.
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE, kdf_iterations: int = DEFAULT_KDF_ITERATIONS):
        self.chunk_size = chunk_size
        self.kdf_iterations = kdf_iterations

    def export(self, secret, source: DirectorySource, destination_path: str, passphrase: str,
               cancel_token: Optional[CancellationToken] = None) -> int:
        """
        Export a source to an encrypted artifact.

        Args:
            secret: Install secret (CryptoManager) used to decrypt at-rest encrypted files
            source: Source to export
            destination_path: Artifact path; must not exist yet
            passphrase: Passphrase the artifact is encrypted with
            cancel_token: Optional cancellation token polled during the export

        Returns:
            Number of bytes written to destination_path

        Raises:
            StoragePermissionError: If the artifact cannot be written for lack of permission
            InsufficientStorageError: If the disk is full
            ExportCancelledError: If the token was cancelled mid-export
            OSError: On any other I/O failure
        """
        salt = os.urandom(SALT_SIZE)
        fernet = Fernet(derive_artifact_key(passphrase, salt, self.kdf_iterations))

        try:
            with open(destination_path, 'xb') as raw:
                raw.write(MAGIC)
                raw.write(_HEADER.pack(self.kdf_iterations))
                raw.write(salt)

                writer = _EncryptingWriter(raw, fernet, self.chunk_size, cancel_token)
                with tarfile.open(fileobj=writer, mode='w|gz') as tar:
                    for file_path, arcname in source.iter_files():
                        if cancel_token is not None:
                            cancel_token.raise_if_cancelled()

                        if arcname.endswith(ENCRYPTED_SUFFIX):
                            self._add_decrypted(tar, secret, file_path, arcname[:-len(ENCRYPTED_SUFFIX)])
                        else:
                            tar.add(str(file_path), arcname=arcname, recursive=False)
                writer.finish()

                return len(MAGIC) + _HEADER.size + SALT_SIZE + writer.bytes_written

        except OSError as e:
            translated = translate_os_error(e)
            if translated is e:
                raise
            raise translated from e

    def _add_decrypted(self, tar: tarfile.TarFile, secret, file_path, arcname: str):
        with open(file_path, 'rb') as f:
            ciphertext = f.read()

        try:
            plaintext = secret.decrypt_bytes(ciphertext)
        except InvalidToken:
            raise ExportError(f"Failed to decrypt source file: {arcname}{ENCRYPTED_SUFFIX}")

        info = tarfile.TarInfo(arcname)
        info.size = len(plaintext)
        info.mtime = int(os.path.getmtime(file_path))
        tar.addfile(info, io.BytesIO(plaintext))


def decrypt_artifact(artifact_path: str, passphrase: str, output: BinaryIO) -> int:
    """
    Decrypt an artifact back into its tar.gz stream.

    Args:
        artifact_path: Path to the encrypted artifact
        passphrase: Passphrase the artifact was encrypted with
        output: Writable binary file object receiving the tar.gz bytes

    Returns:
        Number of plaintext bytes written

    Raises:
        ExportError: If the file is not an artifact, is truncated, or the passphrase is wrong
    """
    written = 0

    with open(artifact_path, 'rb') as f:
        if f.read(len(MAGIC)) != MAGIC:
            raise ExportError(f"Not an export artifact: {artifact_path}")

        iterations_raw = f.read(_HEADER.size)
        salt = f.read(SALT_SIZE)
        if len(iterations_raw) != _HEADER.size or len(salt) != SALT_SIZE:
            raise ExportError("Artifact header is truncated")

        (iterations,) = _HEADER.unpack(iterations_raw)
        fernet = Fernet(derive_artifact_key(passphrase, salt, iterations))

        while True:
            length_raw = f.read(_HEADER.size)
            if not length_raw:
                break
            if len(length_raw) != _HEADER.size:
                raise ExportError("Artifact is truncated")

            (length,) = _HEADER.unpack(length_raw)
            token = f.read(length)
            if len(token) != length:
                raise ExportError("Artifact is truncated")

            try:
                plaintext = fernet.decrypt(token)
            except InvalidToken:
                raise ExportError("Invalid passphrase or corrupted artifact")

            output.write(plaintext)
            written += len(plaintext)

    return written
