"""Content hashing, format-tagged diffs and per-path change classification."""

import base64
import difflib
import hashlib
import hmac
from typing import List, Optional, Sequence

from syncvault.errors import HashMismatchError, PathValidationError
from syncvault.sync.models import DiffFormat, DiffOp, FileDiff, PathStatus

# Binary diffs compare fixed-size blocks rather than single bytes
BINARY_BLOCK_SIZE = 4096


def generate_hash(content: bytes) -> str:
    """SHA-256 hex digest of raw bytes; the same value the store reports as hash."""
    return hashlib.sha256(content).hexdigest()


def validate_hash(content: bytes, expected: Optional[str]) -> bool:
    """True if expected is the SHA-256 hex of content (hex case ignored)."""
    if not expected:
        return False
    return hmac.compare_digest(generate_hash(content), expected.strip().lower())


def detect_format(content: bytes) -> DiffFormat:
    """Binary if content holds a NUL byte or is not valid UTF-8."""
    if b"\x00" in content:
        return DiffFormat.BINARY
    try:
        content.decode("utf-8")
    except UnicodeDecodeError:
        return DiffFormat.BINARY
    return DiffFormat.TEXT


def _blocks(content: bytes) -> List[bytes]:
    return [content[i:i + BINARY_BLOCK_SIZE] for i in range(0, len(content), BINARY_BLOCK_SIZE)]


def _ops(old_units: Sequence, new_units: Sequence, unit_len, join_new) -> List[DiffOp]:
    """Turn SequenceMatcher opcodes into copy/insert ops (copy ranges in unit_len space)."""
    ops: List[DiffOp] = []
    offsets = [0]
    for u in old_units:
        offsets.append(offsets[-1] + unit_len(u))
    matcher = difflib.SequenceMatcher(None, old_units, new_units, autojunk=False)
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            ops.append(DiffOp(op="copy", start=offsets[i1], end=offsets[i2]))
        elif j2 > j1:
            ops.append(DiffOp(op="insert", data=join_new(new_units[j1:j2])))
    return ops


def generate_diff(old: bytes, new: bytes) -> FileDiff:
    """
    Patch turning old into new. Text (both sides UTF-8 without NUL) is diffed by
    line and copy ranges count lines; anything else is diffed by 4 KiB blocks and
    copy ranges are byte offsets.
    """
    base_hash = generate_hash(old)
    new_hash = generate_hash(new)
    if detect_format(old) == DiffFormat.TEXT and detect_format(new) == DiffFormat.TEXT:
        old_lines = old.decode("utf-8").splitlines(keepends=True)
        new_lines = new.decode("utf-8").splitlines(keepends=True)
        ops = _ops(old_lines, new_lines, lambda _: 1, "".join)
        return FileDiff(format=DiffFormat.TEXT, base_hash=base_hash, new_hash=new_hash, ops=ops)
    ops = _ops(
        _blocks(old),
        _blocks(new),
        len,
        lambda blocks: base64.b64encode(b"".join(blocks)).decode("ascii"),
    )
    return FileDiff(format=DiffFormat.BINARY, base_hash=base_hash, new_hash=new_hash, ops=ops)


def apply_diff(old: bytes, diff: FileDiff) -> bytes:
    """
    Apply diff to old. Raises HashMismatchError if old is not the diff's base or
    the result does not hash to new_hash.
    """
    if not validate_hash(old, diff.base_hash):
        raise HashMismatchError("Diff base does not match current content")
    if diff.format == DiffFormat.TEXT:
        try:
            old_lines = old.decode("utf-8").splitlines(keepends=True)
        except UnicodeDecodeError as e:
            raise PathValidationError("Text diff applied to binary content") from e
        parts: List[str] = []
        for op in diff.ops:
            if op.op == "copy":
                _check_range(op, len(old_lines))
                parts.extend(old_lines[op.start:op.end])
            else:
                parts.append(op.data)
        try:
            result = "".join(parts).encode("utf-8")
        except UnicodeEncodeError as e:
            raise PathValidationError("Text diff data is not valid UTF-8") from e
    else:
        chunks: List[bytes] = []
        for op in diff.ops:
            if op.op == "copy":
                _check_range(op, len(old))
                chunks.append(old[op.start:op.end])
            else:
                try:
                    chunks.append(base64.b64decode(op.data, validate=True))
                except ValueError as e:
                    raise PathValidationError("Binary diff data is not valid base64") from e
        result = b"".join(chunks)
    if not validate_hash(result, diff.new_hash):
        raise HashMismatchError("Patched content does not match new_hash")
    return result


def _check_range(op: DiffOp, limit: int) -> None:
    if not 0 <= op.start <= op.end <= limit:
        raise PathValidationError(f"Diff copy range {op.start}:{op.end} out of bounds")


def classify(
    base_hash: Optional[str],
    client_hash: Optional[str],
    server_hash: Optional[str],
) -> PathStatus:
    """
    Three-way comparison of one path. None means "no file on that side".
    Equal client and server hashes are unchanged even if both moved away from base.
    """
    if client_hash == server_hash:
        return PathStatus.UNCHANGED
    if client_hash == base_hash:
        return PathStatus.SERVER_CHANGED
    if server_hash == base_hash:
        return PathStatus.CLIENT_CHANGED
    return PathStatus.CONFLICT
