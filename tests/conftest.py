"""Pytest configuration and shared fixtures.

Environment is set before any dumpsync import so Settings never picks up a
developer's real remote host or database.
Provides: settings factory, file-metadata factory, plain, AES and ZipCrypto
archive writers.
"""
import os
import struct
import zipfile
import zlib
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pyzipper

os.environ["IMPORT_ENABLED"] = "false"
os.environ["IMPORT_SCP_HOST"] = "sftp.test.invalid"
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from dumpsync.core.config import Settings  # noqa: E402
from dumpsync.models.import_models import FileMetadata  # noqa: E402

BASE_TIME = datetime(2024, 6, 1, 2, 0, tzinfo=timezone.utc)


# ── Settings ─────────────────────────────────────────────────────────

@pytest.fixture()
def make_settings(tmp_path):
    """Factory for Settings rooted in tmp_path, with zero retry delay."""

    def _make(**overrides) -> Settings:
        values = {
            "import_enabled": True,
            "temp_dir": str(tmp_path / "staging"),
            "metadata_file": str(tmp_path / "state" / "last_import.json"),
            "database_url_template": f"sqlite:///{(tmp_path / 'db').as_posix()}/{{name}}.db",
            "retry_delay_seconds": 0,
            "retry_max_delay_seconds": 0,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


# ── File metadata ────────────────────────────────────────────────────

def make_file(filename: str = "mvdsb_20240601.zip", **kwargs) -> FileMetadata:
    """Factory for FileMetadata with sensible defaults."""
    defaults = {
        "filename": filename,
        "size": 1024,
        "mod_time": BASE_TIME,
    }
    defaults.update(kwargs)
    return FileMetadata(**defaults)


# ── Archives ─────────────────────────────────────────────────────────

def write_zip(path: Path, members: dict[str, bytes]) -> Path:
    """Plain (unencrypted) deflated ZIP."""
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return path


def write_encrypted_zip(path: Path, members: dict[str, bytes], password: str) -> Path:
    """Deflated ZIP with every entry WinZip-AES encrypted under `password`."""
    with pyzipper.AESZipFile(
        path, "w", compression=pyzipper.ZIP_DEFLATED, encryption=pyzipper.WZ_AES
    ) as zf:
        zf.setpassword(password.encode("utf-8"))
        for name, data in members.items():
            zf.writestr(name, data)
    return path


def _crc_table() -> list[int]:
    table = []
    for i in range(256):
        c = i
        for _ in range(8):
            c = (c >> 1) ^ 0xEDB88320 if c & 1 else c >> 1
        table.append(c)
    return table


_CRC_TABLE = _crc_table()


class _ZipCryptoEncrypter:
    """Traditional PKWARE encryption, write side (pyzipper only writes AES)."""

    def __init__(self, password: bytes):
        self.k0, self.k1, self.k2 = 0x12345678, 0x23456789, 0x34567890
        for b in password:
            self._update(b)

    def _crc(self, crc: int, b: int) -> int:
        return (crc >> 8) ^ _CRC_TABLE[(crc ^ b) & 0xFF]

    def _update(self, b: int) -> None:
        self.k0 = self._crc(self.k0, b)
        self.k1 = (self.k1 + (self.k0 & 0xFF)) & 0xFFFFFFFF
        self.k1 = (self.k1 * 134775813 + 1) & 0xFFFFFFFF
        self.k2 = self._crc(self.k2, (self.k1 >> 24) & 0xFF)

    def encrypt(self, data: bytes) -> bytes:
        out = bytearray()
        for b in data:
            temp = (self.k2 | 2) & 0xFFFF
            out.append(b ^ (((temp * (temp ^ 1)) >> 8) & 0xFF))
            self._update(b)
        return bytes(out)


def write_zipcrypto_zip(path: Path, members: dict[str, bytes], password: str) -> Path:
    """Stored ZIP with every entry ZipCrypto-encrypted under `password` (legacy PKWARE format)."""
    dos_date = ((2024 - 1980) << 9) | (6 << 5) | 1
    dos_time = 0
    local_parts: list[bytes] = []
    central_parts: list[bytes] = []
    offset = 0

    for name, data in members.items():
        name_bytes = name.encode("utf-8")
        crc = zlib.crc32(data) & 0xFFFFFFFF
        header = bytes(11) + bytes([(crc >> 24) & 0xFF])
        payload = _ZipCryptoEncrypter(password.encode("utf-8")).encrypt(header + data)

        local = struct.pack(
            "<IHHHHHIIIHH",
            0x04034B50, 20, 0x1, 0, dos_time, dos_date,
            crc, len(payload), len(data), len(name_bytes), 0,
        ) + name_bytes + payload
        central = struct.pack(
            "<IHHHHHHIIIHHHHHII",
            0x02014B50, 20, 20, 0x1, 0, dos_time, dos_date,
            crc, len(payload), len(data), len(name_bytes), 0, 0, 0, 0, 0, offset,
        ) + name_bytes
        local_parts.append(local)
        central_parts.append(central)
        offset += len(local)

    central_dir = b"".join(central_parts)
    end = struct.pack(
        "<IHHHHIIH",
        0x06054B50, 0, 0, len(members), len(members), len(central_dir), offset, 0,
    )
    path.write_bytes(b"".join(local_parts) + central_dir + end)
    return path


# ── Markers ──────────────────────────────────────────────────────────

def pytest_configure(config):
    config.addinivalue_line("markers", "slow: marks slow tests")
    config.addinivalue_line("markers", "integration: marks integration tests")
    config.addinivalue_line("markers", "unit: marks unit tests")
