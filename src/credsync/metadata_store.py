"""Credential metadata store.

Durable record of when the shared secret was last extracted and validated,
and what it looks like (a fingerprint, never the secret itself).

Record file: {base_dir}/.credential_metadata/metadata.json

    {
      "extracted_at": "2025-01-02T03:04:05Z",
      "valid_until": "2025-01-02T03:09:05Z",
      "secret_fingerprint": "9f86d081...",
      "holder_pid": 4242,
      "holder_id": "laptop:4242"
    }

Concurrency:
- Reads take no lock; a reader sees either the previous or the next complete
  record, never a partial one (temp file + fsync + atomic rename).
- Writes are only performed by the holder of the credential lock.
- A record that cannot be parsed reads as absent.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from credsync.exceptions import CorruptMetadataError
from credsync.timestamps import from_rfc3339, to_rfc3339, utc_now

logger = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.json"


@dataclass(frozen=True)
class CredentialMetadata:
    """One credential extraction record.

    Attributes:
        extracted_at: When the secret was last extracted and validated
        valid_until: extracted_at + validity window
        secret_fingerprint: Hex digest of the secret
        holder_pid: PID of the process that wrote the record
        holder_id: Writer identity (diagnostics only)
    """

    extracted_at: datetime
    valid_until: datetime
    secret_fingerprint: str
    holder_pid: int
    holder_id: str | None = None

    @classmethod
    def create(
        cls,
        secret_fingerprint: str,
        validity_window: float,
        holder_id: str | None = None,
        now: datetime | None = None,
    ) -> "CredentialMetadata":
        """Build a record for an extraction that just succeeded."""
        extracted_at = now or utc_now()
        return cls(
            extracted_at=extracted_at,
            valid_until=extracted_at + timedelta(seconds=validity_window),
            secret_fingerprint=secret_fingerprint,
            holder_pid=os.getpid(),
            holder_id=holder_id,
        )

    def is_fresh(self, now: datetime | None = None) -> bool:
        """True while now is strictly before valid_until."""
        return (now or utc_now()) < self.valid_until

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "extracted_at": to_rfc3339(self.extracted_at),
            "valid_until": to_rfc3339(self.valid_until),
            "secret_fingerprint": self.secret_fingerprint,
            "holder_pid": self.holder_pid,
        }
        if self.holder_id is not None:
            data["holder_id"] = self.holder_id
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "CredentialMetadata":
        """Parse a record.

        Raises:
            CorruptMetadataError: If a field is missing or malformed
        """
        if not isinstance(data, dict):
            raise CorruptMetadataError(f"Expected a JSON object, got {type(data).__name__}")
        try:
            fingerprint = data["secret_fingerprint"]
            holder_pid = data["holder_pid"]
            if not isinstance(fingerprint, str) or not fingerprint:
                raise ValueError("secret_fingerprint must be a non-empty string")
            if isinstance(holder_pid, bool) or not isinstance(holder_pid, int):
                raise ValueError("holder_pid must be an integer")
            holder_id = data.get("holder_id")
            return cls(
                extracted_at=from_rfc3339(data["extracted_at"]),
                valid_until=from_rfc3339(data["valid_until"]),
                secret_fingerprint=fingerprint,
                holder_pid=holder_pid,
                holder_id=str(holder_id) if holder_id is not None else None,
            )
        except (KeyError, ValueError, TypeError) as e:
            raise CorruptMetadataError(f"Invalid credential metadata: {e}") from e


class MetadataStore:
    """Read and atomically replace the credential metadata record."""

    def __init__(self, metadata_dir: Path):
        """Initialize the store.

        Args:
            metadata_dir: Directory holding metadata.json (created on first write)
        """
        self.metadata_dir = Path(metadata_dir)
        self.path = self.metadata_dir / METADATA_FILENAME

    def read(self) -> CredentialMetadata | None:
        """Return the current record, or None if absent or unreadable."""
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read credential metadata {self.path}: {e}")
            return None

        try:
            return self._parse(raw)
        except CorruptMetadataError as e:
            logger.warning(f"Ignoring corrupt credential metadata at {self.path}: {e}")
            return None

    def _parse(self, raw: bytes) -> CredentialMetadata:
        try:
            data = json.loads(raw.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise CorruptMetadataError(f"Not valid UTF-8: {e}") from e
        except json.JSONDecodeError as e:
            raise CorruptMetadataError(f"Not valid JSON: {e}") from e
        return CredentialMetadata.from_dict(data)

    def is_fresh(self, now: datetime | None = None) -> bool:
        """True if a readable record exists and has not expired."""
        record = self.read()
        return record is not None and record.is_fresh(now)

    def write(self, record: CredentialMetadata) -> None:
        """Atomically replace the record.

        Must only be called while holding the credential lock.

        Raises:
            OSError: If the record cannot be written
        """
        self.metadata_dir.mkdir(parents=True, exist_ok=True)
        temp_path = self.metadata_dir / f".{METADATA_FILENAME}.{os.getpid()}.tmp"
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_path, 0o644)
            temp_path.replace(self.path)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        logger.debug(
            f"Recorded credential metadata (fingerprint {record.secret_fingerprint[:12]}, "
            f"valid until {to_rfc3339(record.valid_until)})"
        )

    def clear(self) -> bool:
        """Remove the record (explicit user cleanup).

        Returns:
            True if a record was removed, False if there was none
        """
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info(f"Removed credential metadata {self.path}")
        return True


__all__ = ["CredentialMetadata", "METADATA_FILENAME", "MetadataStore"]
