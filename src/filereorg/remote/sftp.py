"""Paramiko-backed SFTP sessions."""

from __future__ import annotations

import logging
import socket
from contextlib import contextmanager
from typing import BinaryIO, Iterator

import paramiko

from filereorg.config import SftpEndpointConfig
from filereorg.errors import TransportError

LOGGER = logging.getLogger(__name__)

BUFFER_SIZE = 32 * 1024

_CONNECTION_ERRORS = (paramiko.SSHException, EOFError, ConnectionError, socket.timeout)


class SftpSession:
    """One authenticated SSH connection with its SFTP channel.

    Operations translate connection level failures into ``TransportError`` and
    flag the session as ``broken`` so the pool discards it instead of reusing it.
    Missing files and permission problems are raised unchanged.
    """

    def __init__(self, client: paramiko.SSHClient, sftp: paramiko.SFTPClient, label: str) -> None:
        self._client = client
        self._sftp = sftp
        self.label = label
        self.broken = False
        self._raw: paramiko.SFTPFile | None = None

    @classmethod
    def connect(cls, config: SftpEndpointConfig) -> "SftpSession":
        label = f"{config.user}@{config.host}:{config.port}"
        client = paramiko.SSHClient()
        if config.strict_host_keys:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=config.host,
                port=config.port,
                username=config.user,
                password=config.password,
                key_filename=config.key_path,
                timeout=config.timeout,
                banner_timeout=config.timeout,
                auth_timeout=config.timeout,
                look_for_keys=config.key_path is None and config.password is None,
                allow_agent=False,
            )
            sftp = client.open_sftp()
            sftp.get_channel().settimeout(config.timeout)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            client.close()
            raise TransportError(f"Unable to open SFTP session to {label}: {exc}") from exc
        LOGGER.debug("Opened SFTP session to %s", label)
        return cls(client, sftp, label)

    def is_active(self) -> bool:
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    @contextmanager
    def _guard(self, action: str, path: str) -> Iterator[None]:
        try:
            yield
        except (FileNotFoundError, PermissionError):
            raise
        except _CONNECTION_ERRORS as exc:
            self.broken = True
            raise TransportError(f"SFTP {action} failed on {self.label} for {path}: {exc}") from exc
        except OSError as exc:
            if not self.is_active():
                self.broken = True
            raise TransportError(f"SFTP {action} failed on {self.label} for {path}: {exc}") from exc

    def exists(self, path: str) -> bool:
        with self._guard("stat", path):
            try:
                self._sftp.stat(path)
            except FileNotFoundError:
                return False
        return True

    def mkdir(self, path: str) -> None:
        """Create a directory, tolerating a concurrent creator."""
        with self._guard("mkdir", path):
            try:
                self._sftp.mkdir(path)
            except OSError:
                if self.is_active() and self.exists(path):
                    return
                raise

    def open_raw(self, path: str) -> paramiko.SFTPFile:
        with self._guard("open", path):
            handle = self._sftp.open(path, "rb", bufsize=BUFFER_SIZE)
            handle.prefetch()
        self._raw = handle
        return handle

    def read_raw(self, path: str, size: int) -> bytes:
        if self._raw is None:
            raise ValueError(f"No raw read in progress for {path}")
        with self._guard("read", path):
            return self._raw.read(size)

    def finalize_raw(self) -> None:
        """End raw read mode, closing the remote handle if it is still open."""
        handle, self._raw = self._raw, None
        if handle is not None and not handle.closed:
            handle.close()

    def write(self, stream: BinaryIO, path: str) -> int:
        written = 0
        with self._guard("write", path):
            with self._sftp.open(path, "wb", bufsize=BUFFER_SIZE) as remote:
                remote.set_pipelined(True)
                for block in iter(lambda: stream.read(BUFFER_SIZE), b""):
                    remote.write(block)
                    written += len(block)
        return written

    def remove(self, path: str) -> None:
        with self._guard("remove", path):
            self._sftp.remove(path)

    def close(self) -> None:
        try:
            self._sftp.close()
        finally:
            self._client.close()
        LOGGER.debug("Closed SFTP session to %s", self.label)
