"""Tests for BuildLedger — append-only, hash-chained build history."""

from __future__ import annotations

from dockhand.core.build_ledger import BuildLedger
from dockhand.models.ledger import LedgerEntry


def _entry(build_id: str, stage: str, transition: str, **kwargs) -> LedgerEntry:
    return LedgerEntry(build_id=build_id, stage_name=stage, state_transition=transition, **kwargs)


class TestBuildLedger:
    def test_append_seals_entries(self, ledger: BuildLedger):
        first = ledger.append(_entry("b1", "skeleton", "pending->running"))
        second = ledger.append(_entry("b1", "skeleton", "running->passed"))
        assert first.previous_entry_hash == ""
        assert first.entry_hash
        assert second.previous_entry_hash == first.entry_hash

    def test_chains_are_per_build(self, ledger: BuildLedger):
        ledger.append(_entry("b1", "s", "pending->running"))
        other = ledger.append(_entry("b2", "s", "pending->running"))
        assert other.previous_entry_hash == ""

    def test_round_trip_fields(self, ledger: BuildLedger):
        ledger.append(_entry("b1", "deps", "pending->cached", tag="v1",
                             cache_key="sha256:k", artifact_address="sha256:a"))
        (entry,) = ledger.get_build_entries("b1")
        assert entry.tag == "v1"
        assert entry.cache_key == "sha256:k"
        assert entry.artifact_address == "sha256:a"
        assert entry.to_state == "cached"

    def test_stage_states_reports_latest(self, ledger: BuildLedger):
        ledger.append(_entry("b1", "build", "pending->running"))
        ledger.append(_entry("b1", "build", "running->failed", detail="boom"))
        assert ledger.stage_states("b1") == {"build": "failed"}

    def test_build_ids_most_recent_first(self, ledger: BuildLedger):
        ledger.append(_entry("old", "s", "pending->running"))
        ledger.append(_entry("new", "s", "pending->running"))
        assert ledger.get_all_build_ids() == ["new", "old"]

    def test_verify_chain(self, ledger: BuildLedger):
        for transition in ("pending->running", "running->passed"):
            ledger.append(_entry("b1", "s", transition))
        assert ledger.verify_chain("b1") is True
