"""Build ledger entry model (append-only, hash-chained).

One entry per stage state transition within a build:
- Append-only (no UPDATE, no DELETE)
- Hash-chained per build (each entry links to the previous via SHA-256)
- Records the cache key and resulting artifact address of every stage
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the append-only build ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    build_id: str
    stage_name: str
    state_transition: str  # "from_state->to_state", e.g. "pending->cached"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    tag: str = ""
    cache_key: str = ""
    artifact_address: str = ""
    detail: str = ""  # failure diagnostic, image digest, ...
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry

    @property
    def to_state(self) -> str:
        return self.state_transition.split("->", 1)[-1]
