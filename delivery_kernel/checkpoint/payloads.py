"""
Versioned snapshot envelopes.

Stored agent state and file state always carry a schema_version. Readers go
through upgrade_* so older rows (including bare dicts written before
envelopes existed, treated as version 0) are migrated before use.
"""

import math
from datetime import datetime, timezone
from typing import Any, Optional

from delivery_kernel.models.checkpoint import (
    AGENT_STATE_SCHEMA_VERSION,
    FILE_STATE_SCHEMA_VERSION,
    FileStateSnapshot,
    StatePayload,
)


class UnsupportedPayloadVersion(ValueError):
    """A payload was written by a newer schema than this reader understands."""
    pass


def wrap_state(state: Any) -> StatePayload:
    """Put caller-supplied state into the current envelope."""
    if isinstance(state, StatePayload):
        return state
    if state is None:
        return StatePayload()
    if not isinstance(state, dict):
        raise TypeError(f"Agent state must be a dict, got {type(state).__name__}")
    _check_json_native(state, "state")
    return StatePayload(data=state)


def _check_json_native(value: Any, path: str) -> None:
    """
    Reject values that would not come back unchanged from the JSON column:
    tuples, sets, non-str keys, non-finite floats and arbitrary objects.
    """
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise TypeError(f"{path}: non-finite float {value!r} is not storable")
        return
    if isinstance(value, list):
        for i, item in enumerate(value):
            _check_json_native(item, f"{path}[{i}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path}: key {key!r} is not a string")
            _check_json_native(item, f"{path}.{key}")
        return
    raise TypeError(f"{path}: {type(value).__name__} is not a JSON value")


def upgrade_state(raw: Any) -> StatePayload:
    """Decode a stored agent-state payload, migrating older versions."""
    if isinstance(raw, dict) and raw.get("kind") == "agent_state" and "schema_version" in raw:
        version = raw["schema_version"]
        if version > AGENT_STATE_SCHEMA_VERSION:
            raise UnsupportedPayloadVersion(
                f"agent_state schema v{version} is newer than v{AGENT_STATE_SCHEMA_VERSION}"
            )
        return StatePayload.model_validate(raw)
    # v0: the bare state dict itself
    return StatePayload(data=raw or {})


def upgrade_file_state(raw: Optional[dict]) -> Optional[FileStateSnapshot]:
    """Decode a stored file-state payload, migrating older versions."""
    if raw is None:
        return None
    if raw.get("kind") == "file_state" and "schema_version" in raw:
        version = raw["schema_version"]
        if version > FILE_STATE_SCHEMA_VERSION:
            raise UnsupportedPayloadVersion(
                f"file_state schema v{version} is newer than v{FILE_STATE_SCHEMA_VERSION}"
            )
        return FileStateSnapshot.model_validate(raw)
    # v0: a flat path -> {size, mtime} map with no root or capture time
    return FileStateSnapshot(
        root="",
        captured_at=datetime.fromtimestamp(0, tz=timezone.utc),
        files=raw,
    )
