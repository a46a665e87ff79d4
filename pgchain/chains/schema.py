# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgchain Chain Schema - Typed, versioned chain metadata document.

The document is JSON:

    {
      "schema_version": 1,
      "revision": 12,
      "updated_at": "2026-10-17T02:00:09+00:00",
      "chains": [
        {
          "chain_id": "...", "backup_id": "...", "timestamp": "...",
          "backup_path": "backups/full_...", "manifest_path": "manifests/...",
          "pending_deletion": false,
          "incrementals": [
            {"backup_id": "...", "timestamp": "...", "backup_path": "...",
             "manifest_path": "...", "parent_manifest_path": "..."}
          ]
        }
      ]
    }

A chain entry is its full record plus the ordered incrementals. Parsing
is strict: anything that does not match raises MetadataCorruptError so
that corrupt history is reported instead of replaced.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Union

from pgchain.errors import explain_corrupt_metadata
from pgchain.exceptions import MetadataCorruptError

SCHEMA_VERSION = 1


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"expected ISO 8601 string, got {type(value).__name__}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


@dataclass(frozen=True)
class FullRecord:
    """Record of a chain's full (base) backup."""

    chain_id: str
    backup_id: str
    timestamp: datetime
    backup_path: str
    manifest_path: str

    kind = "full"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "backup_id": self.backup_id,
            "timestamp": format_timestamp(self.timestamp),
            "backup_path": self.backup_path,
            "manifest_path": self.manifest_path,
        }


@dataclass(frozen=True)
class IncrementalRecord:
    """Record of an incremental backup taken against parent_manifest_path."""

    backup_id: str
    timestamp: datetime
    backup_path: str
    manifest_path: str
    parent_manifest_path: str

    kind = "incremental"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "timestamp": format_timestamp(self.timestamp),
            "backup_path": self.backup_path,
            "manifest_path": self.manifest_path,
            "parent_manifest_path": self.parent_manifest_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IncrementalRecord":
        return cls(
            backup_id=_require_str(data, "backup_id"),
            timestamp=parse_timestamp(data["timestamp"]),
            backup_path=_require_str(data, "backup_path"),
            manifest_path=_require_str(data, "manifest_path"),
            parent_manifest_path=_require_str(data, "parent_manifest_path"),
        )


BackupRecord = Union[FullRecord, IncrementalRecord]


@dataclass
class Chain:
    """A full backup plus its ordered incrementals."""

    full: FullRecord
    incrementals: List[IncrementalRecord] = field(default_factory=list)
    pending_deletion: bool = False

    @property
    def chain_id(self) -> str:
        return self.full.chain_id

    @property
    def timestamp(self) -> datetime:
        return self.full.timestamp

    @property
    def tip(self) -> BackupRecord:
        """The most recent record; the next incremental's parent."""
        return self.incrementals[-1] if self.incrementals else self.full

    @property
    def records(self) -> List[BackupRecord]:
        return [self.full, *self.incrementals]

    def artifact_paths(self) -> List[str]:
        """Storage paths referenced by this chain, full backup first."""
        paths: List[str] = []
        for record in self.records:
            paths.append(record.backup_path)
            paths.append(record.manifest_path)
        return paths

    def to_dict(self) -> Dict[str, Any]:
        data = self.full.to_dict()
        data["pending_deletion"] = self.pending_deletion
        data["incrementals"] = [inc.to_dict() for inc in self.incrementals]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chain":
        full = FullRecord(
            chain_id=_require_str(data, "chain_id"),
            backup_id=_require_str(data, "backup_id"),
            timestamp=parse_timestamp(data["timestamp"]),
            backup_path=_require_str(data, "backup_path"),
            manifest_path=_require_str(data, "manifest_path"),
        )
        raw_incrementals = data.get("incrementals") or []
        if not isinstance(raw_incrementals, list):
            raise ValueError("incrementals must be a list")
        incrementals = [IncrementalRecord.from_dict(inc) for inc in raw_incrementals]
        return cls(
            full=full,
            incrementals=incrementals,
            pending_deletion=bool(data.get("pending_deletion", False)),
        )


@dataclass
class ChainDocument:
    """The whole metadata document."""

    chains: List[Chain] = field(default_factory=list)
    revision: int = 0
    updated_at: datetime | None = None
    schema_version: int = SCHEMA_VERSION

    def find(self, chain_id: str) -> Chain | None:
        for chain in self.chains:
            if chain.chain_id == chain_id:
                return chain
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "revision": self.revision,
            "updated_at": format_timestamp(self.updated_at) if self.updated_at else None,
            "chains": [chain.to_dict() for chain in self.chains],
        }


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data[key]
    if not isinstance(value, str) or not value:
        raise ValueError(f"{key} must be a non-empty string")
    return value


def parse_document(raw: str, source: Path) -> ChainDocument:
    """
    Parse the metadata document text.

    Raises:
        MetadataCorruptError: If the text is not a valid document
    """

    def corrupt(reason: str, exc: Exception | None = None) -> MetadataCorruptError:
        error = MetadataCorruptError(
            explain_corrupt_metadata(source, reason),
            details={"metadata_path": str(source), "reason": reason},
        )
        if exc is not None:
            error.__cause__ = exc
        return error

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise corrupt(f"invalid JSON: {e}", e)

    if not isinstance(data, dict) or not isinstance(data.get("chains"), list):
        raise corrupt("top-level 'chains' list is missing")

    version = data.get("schema_version", SCHEMA_VERSION)
    if version != SCHEMA_VERSION:
        raise corrupt(f"unsupported schema_version {version!r}")

    try:
        chains = [Chain.from_dict(entry) for entry in data["chains"]]
        updated_at = parse_timestamp(data["updated_at"]) if data.get("updated_at") else None
        revision = int(data.get("revision", 0))
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise corrupt(f"malformed record: {e!r}", e)

    seen_ids: set[str] = set()
    for chain in chains:
        for record_id in (chain.chain_id, *(r.backup_id for r in chain.records)):
            if record_id in seen_ids:
                raise corrupt(f"duplicate id {record_id}")
            seen_ids.add(record_id)

    return ChainDocument(chains=chains, revision=revision, updated_at=updated_at)


def serialize_document(document: ChainDocument) -> str:
    return json.dumps(document.to_dict(), indent=2, sort_keys=True) + "\n"
