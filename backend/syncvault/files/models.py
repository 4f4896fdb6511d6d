"""Pydantic wire models for file metadata, tree nodes and change events."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class FileMetadata(BaseModel):
    """
    One entry of a user's namespace. Path is user-relative with forward slashes.
    hash is the SHA-256 hex of the file bytes and is None for directories.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str
    path: str
    size: int
    is_dir: bool = Field(alias="isDir")
    mod_time: datetime = Field(alias="modTime")
    hash: Optional[str] = None


class TreeNode(BaseModel):
    """Node of the presentation tree built from a flat FileMetadata list."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    path: str
    is_dir: bool = Field(alias="isDir")
    children: List["TreeNode"] = Field(default_factory=list)


class ChangeType(str, Enum):
    """Kind of mutation a FileChange reports."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class FileChange(BaseModel):
    """Event pushed to notification subscribers once per mutating operation."""

    model_config = ConfigDict(populate_by_name=True)

    type: ChangeType
    file: FileMetadata
    # Set only for moves: the path the file was moved away from
    old_path: Optional[str] = Field(default=None, alias="oldPath")


class MoveRequest(BaseModel):
    """Body for POST /api/files/move."""

    model_config = ConfigDict(populate_by_name=True)

    path: str
    new_path: str = Field(alias="newPath")


class DirectoryCreate(BaseModel):
    """Body for POST /api/directories."""

    path: str


def to_wire(model: BaseModel) -> Dict[str, Any]:
    """JSON-ready dict with camelCase keys and absent optionals dropped."""
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)
