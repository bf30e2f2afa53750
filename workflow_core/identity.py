"""
Virtual block identities.

A block inside a loop or parallel container runs once per iteration. Each run
gets its own identity ``<original>_parallel_<container>_iteration_<n>`` which
can be used anywhere a block id is expected. Callers that need the block
definition behind an identity use :func:`extract_original`, which works for
plain ids too.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

PARALLEL_MARKER = "_parallel_"
ITERATION_MARKER = "_iteration_"

_VIRTUAL_ID_RE = re.compile(
    rf"^(?P<original>.+?){PARALLEL_MARKER}(?P<parallel>.+){ITERATION_MARKER}(?P<iteration>\d+)$"
)


@dataclass(frozen=True)
class VirtualBlockIdentity:
    original_id: str
    parallel_id: str
    iteration: int

    @property
    def token(self) -> str:
        return encode(self.original_id, self.parallel_id, self.iteration)


def encode(original_id: str, parallel_id: str, iteration: int) -> str:
    """Build the virtual identity token for one iteration of a block."""
    if iteration < 0:
        raise ValueError(f"iteration must be >= 0, got {iteration}")
    return f"{original_id}{PARALLEL_MARKER}{parallel_id}{ITERATION_MARKER}{iteration}"


def is_virtual(token: str) -> bool:
    """Cheap pre-filter: both markers appear somewhere in the token."""
    return PARALLEL_MARKER in token and ITERATION_MARKER in token


def decode(token: str) -> Optional[VirtualBlockIdentity]:
    """
    Parse a virtual identity token.

    Returns None when the token does not match the strict grammar, even if
    :func:`is_virtual` accepted it (e.g. a block named ``a_parallel_b_iteration_x``).
    """
    if not is_virtual(token):
        return None
    match = _VIRTUAL_ID_RE.match(token)
    if match is None:
        return None
    return VirtualBlockIdentity(
        original_id=match.group("original"),
        parallel_id=match.group("parallel"),
        iteration=int(match.group("iteration")),
    )


def is_reserved_block_id(block_id: str) -> bool:
    """
    True for ids that cannot be used as block ids.

    Such ids contain a marker or end in ``_parallel``. Either one would make
    a plain id look like a virtual identity, or make two encodings collide,
    as ``encode("a_parallel", "b", 0) == encode("a", "parallel_b", 0)`` does.
    """
    return (
        PARALLEL_MARKER in block_id
        or ITERATION_MARKER in block_id
        or block_id.endswith(PARALLEL_MARKER.rstrip("_"))
    )


def extract_original(token: str) -> str:
    """Return the block id behind a (possibly virtual) identity."""
    identity = decode(token)
    if identity is None:
        return token
    return identity.original_id


__all__ = [
    "ITERATION_MARKER",
    "PARALLEL_MARKER",
    "VirtualBlockIdentity",
    "decode",
    "encode",
    "extract_original",
    "is_reserved_block_id",
    "is_virtual",
]
