"""Versioned state synchronisation.

The client keeps two copies of the conversation state: the last state the
server confirmed and a local state that may carry optimistic changes.
STATE_DELTA envelopes advance the server copy; a conflict exists when the
local copy is ahead of what the server just sent.
"""

from __future__ import annotations

import copy
import hashlib
import json
import time
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from mirastream.stream_runtime.models.enums import ConflictPolicy
from mirastream.stream_runtime.models.events import PatchOperation, StateDelta
from mirastream.stream_runtime.protocol.patch import PatchError, apply_patch, diff_top_level

__all__ = [
    "PatchError",
    "StateSynchronizer",
    "SyncResult",
    "VersionedState",
    "apply_patch",
    "compute_checksum",
    "create_versioned_state",
    "generate_state_delta",
    "validate_state_sync",
]


def compute_checksum(payload: Any) -> str:
    """Deterministic content hash; key order does not matter."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return "chk_" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


class VersionedState(BaseModel):
    model_config = ConfigDict(frozen=True)

    payload: dict[str, Any]
    version: int = Field(ge=0)
    timestamp: float = Field(default_factory=lambda: time.time() * 1000)
    checksum: str

    def verify(self) -> bool:
        return compute_checksum(self.payload) == self.checksum


def create_versioned_state(payload: dict[str, Any], version: int = 0) -> VersionedState:
    payload = copy.deepcopy(payload)
    return VersionedState(payload=payload, version=version, checksum=compute_checksum(payload))


def generate_state_delta(before: VersionedState, after: VersionedState) -> StateDelta:
    """Top-level operations turning *before* into *after*, at ``after.version``."""
    return StateDelta(
        version=after.version,
        timestamp=after.timestamp,
        operations=diff_top_level(before.payload, after.payload),
    )


def validate_state_sync(client_version: int, server: VersionedState) -> str | None:
    """Return a mismatch message, or ``None`` when both sides agree."""
    if client_version != server.version:
        return f"Version mismatch: client has v{client_version}, server has v{server.version}"
    return None


@dataclass(frozen=True)
class SyncResult:
    has_conflict: bool
    local: VersionedState
    remote: VersionedState


class StateSynchronizer:
    """Local/server state pair for one client session."""

    def __init__(self, initial_payload: dict[str, Any], version: int = 0) -> None:
        initial = create_versioned_state(initial_payload, version)
        self._local = initial
        self._server = initial
        self._pending: list[PatchOperation] = []

    @property
    def local(self) -> VersionedState:
        return self._local

    @property
    def server(self) -> VersionedState:
        return self._server

    @property
    def pending(self) -> list[PatchOperation]:
        return list(self._pending)

    # -- Local changes ---------------------------------------------------------

    def optimistic_update(self, operations: list[PatchOperation | dict[str, Any]]) -> VersionedState:
        """Apply *operations* locally ahead of the server.  Raises ``PatchError``."""
        ops = [op if isinstance(op, PatchOperation) else PatchOperation.model_validate(op) for op in operations]
        payload = apply_patch(self._local.payload, ops)
        self._local = create_versioned_state(payload, self._local.version + 1)
        self._pending.extend(ops)
        return self._local

    def confirm_server_update(self, remote: VersionedState) -> None:
        """The server accepted our changes as *remote*."""
        self._server = remote
        self._local = remote
        self._pending.clear()

    def rollback(self) -> VersionedState:
        """Discard optimistic changes."""
        self._local = self._server
        self._pending.clear()
        return self._local

    # -- Remote changes --------------------------------------------------------

    def sync_with_server(self, remote: VersionedState) -> SyncResult:
        """Record *remote* as the server state.

        When the local state is ahead of *remote* it is kept and the result
        reports a conflict; resolve it with ``resolve_conflict``.
        """
        self._server = remote
        if self._local.version > remote.version:
            logger.debug("Sync: conflict (local v{} > remote v{})", self._local.version, remote.version)
            return SyncResult(has_conflict=True, local=self._local, remote=remote)

        self._local = remote
        self._pending.clear()
        return SyncResult(has_conflict=False, local=self._local, remote=remote)

    def apply_remote_delta(self, delta: StateDelta | dict[str, Any]) -> SyncResult:
        """Build the remote state from a STATE_DELTA payload and sync with it."""
        if not isinstance(delta, StateDelta):
            delta = StateDelta.model_validate(delta)
        base = delta.full_state if delta.full_state is not None else self._server.payload
        payload = apply_patch(base, delta.operations)
        return self.sync_with_server(create_versioned_state(payload, delta.version))

    def resolve_conflict(self, remote: VersionedState, policy: ConflictPolicy) -> VersionedState:
        match policy:
            case ConflictPolicy.LAST_WRITER_WINS:
                self._local = remote
                self._pending.clear()
            case ConflictPolicy.REJECT:
                pass
            case ConflictPolicy.MERGE:
                try:
                    merged = apply_patch(remote.payload, self._pending)
                except PatchError as exc:
                    logger.warning("Sync: merge failed ({}), taking remote state", exc)
                    self._local = remote
                    self._pending.clear()
                else:
                    self._local = create_versioned_state(merged, remote.version + 1)
        self._server = remote
        return self._local
