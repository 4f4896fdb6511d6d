"""
Sync protocol wire models.

A client keeps a SyncState checkpoint (what both sides agreed on at last_sync)
and sends its local mutations since then as SyncMessages. The server answers
with the messages the client must apply, the conflicts it found, and the new
checkpoint.
"""

import base64
import binascii
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from syncvault.errors import PathValidationError
from syncvault.files.models import FileMetadata


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncOperation(str, Enum):
    """File operation carried by a SyncMessage."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RENAME = "rename"


class DiffFormat(str, Enum):
    """How a FileDiff's ops are to be read. Binary content never takes the text path."""

    TEXT = "text"
    BINARY = "binary"


class DiffOp(BaseModel):
    """
    One patch instruction. copy takes [start, end) from the old content (lines for
    text, bytes for binary); insert appends data (UTF-8 text, or base64 for binary).
    """

    op: Literal["copy", "insert"]
    start: int = 0
    end: int = 0
    data: str = ""


class FileDiff(BaseModel):
    """Format-tagged patch from the content hashed base_hash to the content hashed new_hash."""

    format: DiffFormat
    base_hash: str
    new_hash: str
    ops: List[DiffOp] = Field(default_factory=list)


class SyncMessage(BaseModel):
    """A single file operation exchanged between client and server."""

    operation: SyncOperation
    path: str
    new_path: Optional[str] = Field(None, description="Destination; set iff operation is rename")
    content: Optional[str] = Field(None, description="Base64 encoded file bytes")
    diff: Optional[FileDiff] = Field(None, description="Patch against the last synced content")
    hash: Optional[str] = Field(None, description="SHA-256 hex of the resulting content")
    timestamp: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_shape(self) -> "SyncMessage":
        if (self.operation == SyncOperation.RENAME) != bool(self.new_path):
            raise ValueError("new_path is required for rename and only for rename")
        carries_content = self.content is not None or self.diff is not None
        if self.operation in (SyncOperation.CREATE, SyncOperation.UPDATE):
            if not carries_content:
                raise ValueError(f"{self.operation.value} requires content or diff")
        elif carries_content:
            raise ValueError(f"{self.operation.value} must not carry content")
        return self

    def content_bytes(self) -> bytes:
        """Decoded content (empty if none)."""
        if self.content is None:
            return b""
        try:
            return base64.b64decode(self.content, validate=True)
        except (binascii.Error, ValueError) as e:
            raise PathValidationError("content is not valid base64") from e

    @staticmethod
    def encode_content(content: bytes) -> str:
        return base64.b64encode(content).decode("ascii")


class SyncState(BaseModel):
    """Durable per-client checkpoint against which the next reconciliation runs."""

    last_sync: Optional[datetime] = None
    files: Dict[str, FileMetadata] = Field(default_factory=dict)
    conflicts: List[str] = Field(default_factory=list)

    @field_validator("conflicts")
    @classmethod
    def _unique_sorted(cls, v: List[str]) -> List[str]:
        return sorted(set(v))


class PathStatus(str, Enum):
    """Outcome of comparing one path's checkpoint, client and server hashes."""

    UNCHANGED = "unchanged"
    SERVER_CHANGED = "server_changed"
    CLIENT_CHANGED = "client_changed"
    CONFLICT = "conflict"


class SyncConflict(BaseModel):
    """Both sides diverged from base_hash. None means the side has no file."""

    path: str
    base_hash: Optional[str] = None
    client_hash: Optional[str] = None
    server_hash: Optional[str] = None


class SyncRequest(BaseModel):
    """Client -> server reconciliation request."""

    client_id: Optional[str] = Field(None, description="Stable id of the client device")
    state: Optional[SyncState] = Field(None, description="Checkpoint; stored one is used if omitted")
    changes: List[SyncMessage] = Field(default_factory=list)


class SyncResponse(BaseModel):
    """Server -> client reconciliation result."""

    success: bool = True
    error: Optional[str] = None
    messages: List[SyncMessage] = Field(default_factory=list, description="For the client to apply")
    applied: List[str] = Field(default_factory=list, description="Client changes applied on the server")
    conflicts: List[SyncConflict] = Field(default_factory=list)
    state: SyncState = Field(default_factory=SyncState)
    timestamp: datetime = Field(default_factory=_utcnow)


class DiffRequest(BaseModel):
    """Ask whether path changed relative to the client's hash."""

    path: str
    hash: Optional[str] = None
    timestamp: Optional[datetime] = None


class DiffResponse(BaseModel):
    has_changes: bool
    new_hash: Optional[str] = None
    content: Optional[str] = Field(None, description="Base64 current content when changed")
    error: Optional[str] = None


class ResolveRequest(BaseModel):
    """Accept the server's current version of path as the new common base."""

    client_id: str
    path: str
