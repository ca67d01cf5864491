"""Tests for the Keepsake hub and the CLI entry point."""

import asyncio
import json
import pytest
from dataclasses import replace
from pathlib import Path

from keepsake.__main__ import main
from keepsake.access import Scope, Tier
from keepsake.config import EngineConfig, KeepsakeConfig
from keepsake.core import Keepsake, build_engine, build_store
from keepsake.errors import AuthorizationError, ConflictError
from keepsake.lifecycle import JournalEntryInput
from keepsake.memory.markdown import MarkdownTierStore
from keepsake.memory.records import CandidateStatus, RecordKind
from keepsake.memory.store import InMemoryTierStore

from conftest import (
    PRIVATE, PUBLIC, RESTRICTED, CountingStore, FakeEmbedder, FakeExtractor, MockEngine,
    journal, persona, public,
)


@pytest.fixture
def config(tmp_path: Path) -> KeepsakeConfig:
    return KeepsakeConfig(store="memory", memory_dir=tmp_path / "memory")


@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def keepsake(config: KeepsakeConfig, store: CountingStore) -> Keepsake:
    return Keepsake(
        config,
        store=store,
        embedder=FakeEmbedder(),
        engine=MockEngine("From memory: yes."),
        extractor=FakeExtractor(),
    )


def _entry(content="I started learning the cello.", blocked=False) -> JournalEntryInput:
    return JournalEntryInput(content=content, public_elevation_blocked=blocked)


class TestScenarios:
    @pytest.mark.asyncio
    async def test_ingest_review_promote(self, keepsake: Keepsake, store: CountingStore):
        result = await keepsake.ingest(_entry(), PRIVATE)

        listed = await keepsake.list_candidates(RESTRICTED)
        assert len(listed) == 1
        candidate = listed[0]
        assert candidate.payload.status is CandidateStatus.AWAITING_REVIEW
        assert result.entry_id in candidate.payload.source_entry_refs

        memory = await keepsake.promote(candidate.id, RESTRICTED)

        stored = await store.get(Tier.PERSONA, memory.id)
        assert stored.kind is RecordKind.PERSONA_MEMORY
        assert await keepsake.list_candidates(RESTRICTED) == []

        results = await keepsake.query("cello", Scope.RESTRICTED, RESTRICTED)
        assert memory.id in [r.id for r in results]

    @pytest.mark.asyncio
    async def test_blocked_entry_never_has_candidate(self, keepsake: Keepsake):
        result = await keepsake.ingest(_entry(blocked=True), PRIVATE)

        assert result.candidate_id is None
        for _ in range(2):
            listed = await keepsake.list_candidates(RESTRICTED)
            assert all(result.entry_id not in c.payload.source_entry_refs for c in listed)

    @pytest.mark.asyncio
    async def test_public_query_over_private_corpus(self, keepsake: Keepsake, store):
        await store.upsert(Tier.JOURNAL, journal())
        await store.upsert(Tier.PERSONA, persona())

        assert await keepsake.query("anything", Scope.PUBLIC, PUBLIC) == []

    @pytest.mark.parametrize("scope", list(Scope) + ["UNKNOWN"])
    @pytest.mark.asyncio
    async def test_bad_credentials_search_nothing(self, keepsake: Keepsake, store, scope):
        await store.upsert(Tier.JOURNAL, journal())
        await store.upsert(Tier.PUBLIC, public())

        for creds in (None, set(), {"wrong_key"}):
            with pytest.raises(AuthorizationError):
                await keepsake.query("q", scope, creds)
        assert store.search_calls == []

    @pytest.mark.asyncio
    async def test_promote_exactly_once_concurrent(self, keepsake: Keepsake, store):
        await keepsake.ingest(_entry(), PRIVATE)
        candidate_id = (await keepsake.list_candidates(RESTRICTED))[0].id

        outcomes = await asyncio.gather(
            keepsake.promote(candidate_id, RESTRICTED),
            keepsake.promote(candidate_id, RESTRICTED),
            return_exceptions=True,
        )

        assert sum(isinstance(o, ConflictError) for o in outcomes) == 1
        memories = [
            r for r in store._collection(Tier.PERSONA).values()
            if r.kind is RecordKind.PERSONA_MEMORY
        ]
        assert len(memories) == 1


class TestScopeGating:
    @pytest.mark.asyncio
    async def test_ingest_needs_strict_private(self, keepsake: Keepsake, store):
        with pytest.raises(AuthorizationError):
            await keepsake.ingest(_entry(), RESTRICTED)
        assert await store.search(Tier.JOURNAL, [1.0, 0.0, 0.0], 10) == []

    @pytest.mark.asyncio
    async def test_review_needs_restricted(self, keepsake: Keepsake):
        await keepsake.ingest(_entry(), PRIVATE)
        with pytest.raises(AuthorizationError):
            await keepsake.list_candidates(PRIVATE)
        with pytest.raises(AuthorizationError):
            await keepsake.promote("any", PUBLIC)
        with pytest.raises(AuthorizationError):
            await keepsake.reject("any", set())
        with pytest.raises(AuthorizationError):
            await keepsake.archive("any", PRIVATE)

    @pytest.mark.asyncio
    async def test_block_needs_strict_private(self, keepsake: Keepsake):
        result = await keepsake.ingest(_entry(), PRIVATE)
        with pytest.raises(AuthorizationError):
            await keepsake.block_elevation(result.entry_id, RESTRICTED)
        assert await keepsake.block_elevation(result.entry_id, PRIVATE) == 1

    @pytest.mark.asyncio
    async def test_capability_removed_by_config(self, config: KeepsakeConfig):
        config.scopes[Scope.STRICT_PRIVATE] = replace(
            config.scopes[Scope.STRICT_PRIVATE], allows=frozenset({"raw_content"})
        )
        hub = Keepsake(config, store=CountingStore(), embedder=FakeEmbedder(),
                       engine=MockEngine(), extractor=FakeExtractor())
        with pytest.raises(AuthorizationError):
            await hub.ingest(_entry(), PRIVATE)


class TestAsk:
    @pytest.mark.asyncio
    async def test_ask_public(self, keepsake: Keepsake, store):
        record = public("Music", "Plays the cello on weekends.")
        await store.upsert(Tier.PUBLIC, record)

        response = await keepsake.ask("Do you play music?", Scope.PUBLIC, PUBLIC)

        assert response.text == "From memory: yes."
        assert response.metadata["sources"] == [record.id]
        assert "Plays the cello" in keepsake.engine.last_context

    @pytest.mark.asyncio
    async def test_ask_without_matches(self, keepsake: Keepsake):
        response = await keepsake.ask("Anything?", Scope.PUBLIC, PUBLIC)
        assert response.metadata["reason"] == "no_relevant_context"

    @pytest.mark.asyncio
    async def test_restricted_ask_hides_raw_journal(self, keepsake: Keepsake, store):
        await store.upsert(Tier.JOURNAL, journal("secret words", themes=["music"]))
        await keepsake.ask("music?", Scope.RESTRICTED, RESTRICTED)
        assert "secret words" not in keepsake.engine.last_context


class TestBuilders:
    def test_build_store(self, config: KeepsakeConfig):
        assert isinstance(build_store(config), InMemoryTierStore)
        config.store = "markdown"
        assert isinstance(build_store(config), MarkdownTierStore)
        config.store = "sqlite"
        with pytest.raises(ValueError):
            build_store(config)

    def test_unknown_engine(self):
        with pytest.raises(ValueError):
            build_engine(EngineConfig(name="nope"))

    @pytest.mark.asyncio
    async def test_extractor_injection_skips_engine(self, config: KeepsakeConfig):
        hub = Keepsake(config, store=CountingStore(), embedder=FakeEmbedder(),
                       extractor=FakeExtractor())
        await hub.ingest(_entry(), PRIVATE)
        assert hub._engine is None


class TestCLI:
    @pytest.fixture(autouse=True)
    def env(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.setenv("KEEPSAKE_MEMORY_DIR", str(tmp_path / "memory"))
        monkeypatch.setenv("KEEPSAKE_STORE", "markdown")
        monkeypatch.delenv("KEEPSAKE_CREDENTIALS", raising=False)

    def test_init(self, tmp_path: Path, capsys):
        main(["--json", "init"])
        report = json.loads(capsys.readouterr().out)
        assert sorted(report["created"]) == [
            "journal_entries", "persona_memory", "public_knowledge",
        ]
        assert (tmp_path / "memory" / "journal_entries").is_dir()

        main(["init"])
        assert "skipped" in capsys.readouterr().out

    def test_authorization_exit_code(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["candidates"])
        assert exc.value.code == 2
        assert "RESTRICTED" in capsys.readouterr().err

    def test_credentials_from_env(self, monkeypatch, capsys):
        monkeypatch.setenv("KEEPSAKE_CREDENTIALS", "restricted_key, other")
        main(["candidates"])
        assert "(none)" in capsys.readouterr().out

    def test_conflict_exit_code(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["-c", "restricted_key", "reject", "missing"])
        assert exc.value.code == 1

    def test_bad_config_exit_code(self, monkeypatch, capsys):
        monkeypatch.setenv("KEEPSAKE_RESULT_CAP", "five")
        with pytest.raises(SystemExit) as exc:
            main(["init"])
        assert exc.value.code == 1
        assert capsys.readouterr().err.startswith("error:")

    def test_malformed_toml_exit_code(self, tmp_path: Path, capsys):
        (tmp_path / "keepsake.toml").write_text("[engine\nname = ", encoding="utf-8")
        with pytest.raises(SystemExit) as exc:
            main(["init"])
        assert exc.value.code == 1
        assert "error:" in capsys.readouterr().err
