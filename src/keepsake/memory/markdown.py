"""Markdown tier store — one file per record, YAML frontmatter for metadata.

Layout:
    <root>/
    ├── journal_entries/<id>.md
    ├── persona_memory/<id>.md
    │   └── candidates/
    │       ├── <id>.md
    │       └── .claims/<id>.md      # candidate mid-transition
    └── public_knowledge/<id>.md

Files are the source of truth. An in-memory index serves similarity search; each
search re-stats the tier directory and re-reads only files whose stat changed,
so writes from other instances on the same root are picked up.
Candidate status changes claim the file with an atomic rename, so only one
writer (in this process or another) can hold a candidate at a time.
"""

from __future__ import annotations

import copy
import logging
import os
import re
from collections.abc import Sequence
from pathlib import Path

import frontmatter

from keepsake.access import Tier
from keepsake.errors import ConflictError, StoreError
from keepsake.memory.records import (
    PRIMARY_TEXT_FIELD,
    CandidateStatus,
    MemoryRecord,
    RecordKind,
)
from keepsake.memory.store import COLLECTIONS, ScoredRecord, check_write, cosine_similarity, rank

logger = logging.getLogger(__name__)

_CANDIDATES_DIR = "candidates"
_CLAIMS_DIR = ".claims"
_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

# (inode, mtime_ns, size) of a record file
_Stamp = tuple[int, int, int]


class MarkdownTierStore:
    """Persistent tier store rooted at a directory."""

    def __init__(self, root: Path, dimension: int | None = None) -> None:
        self.root = root
        self.dimension = dimension
        self._index: dict[Tier, dict[Path, tuple[_Stamp, MemoryRecord | None]]] = {
            tier: {} for tier in Tier
        }
        self.reload()

    # ── Initialization ────────────────────────────────────

    async def ensure_initialized(self) -> dict[str, list[str]]:
        """Create missing tier collections. Idempotent."""
        created, skipped = [], []
        for tier, name in COLLECTIONS.items():
            collection = self.root / name
            if collection.is_dir():
                skipped.append(name)
                logger.info("Skipped %s (already exists)", name)
            else:
                collection.mkdir(parents=True, exist_ok=True)
                created.append(name)
                logger.info("Created %s", name)
        self._release_stale_claims()
        return {"created": created, "skipped": skipped}

    def _release_stale_claims(self) -> None:
        """Return candidates left in .claims/ by an interrupted transition."""
        claims = self._candidates_dir / _CLAIMS_DIR
        claims.mkdir(parents=True, exist_ok=True)
        for claim in claims.glob("*.md"):
            target = self._candidates_dir / claim.name
            if target.exists():
                continue
            os.rename(claim, target)
            logger.warning("Released stale claim on candidate %s", claim.stem)

    # ── In-memory index ───────────────────────────────────

    def _refresh(self, tier: Tier) -> None:
        """Bring one tier's index in line with the files on disk.

        Files are keyed by path and stamped with (inode, mtime, size); writes
        go through a rename, so any rewrite changes the stamp. Unchanged files
        are not re-read, vanished files drop out.
        """
        name = COLLECTIONS[tier]
        collection = self.root / name
        paths = list(collection.glob("*.md")) if collection.is_dir() else []
        if tier is Tier.PERSONA and self._candidates_dir.is_dir():
            paths.extend(self._candidates_dir.glob("*.md"))

        previous = self._index[tier]
        current: dict[Path, tuple[_Stamp, MemoryRecord | None]] = {}
        for path in paths:
            try:
                st = path.stat()
            except FileNotFoundError:
                continue
            stamp = (st.st_ino, st.st_mtime_ns, st.st_size)
            cached = previous.get(path)
            if cached is not None and cached[0] == stamp:
                current[path] = cached
                continue
            record = self._read_record(path)
            if record is not None and record.tier is not tier:
                logger.error(
                    "Skipping %s: tier '%s' found in %s", path, record.tier.value, name
                )
                record = None
            current[path] = (stamp, record)
        self._index[tier] = current

    def reload(self) -> None:
        """Drop the index and re-read every collection."""
        for tier in Tier:
            self._index[tier] = {}
            self._refresh(tier)
        logger.debug(
            "Indexed %s",
            ", ".join(f"{t.value}={len(files)}" for t, files in self._index.items()),
        )

    # ── Paths & file I/O ──────────────────────────────────

    @property
    def _candidates_dir(self) -> Path:
        return self.root / COLLECTIONS[Tier.PERSONA] / _CANDIDATES_DIR

    def _check_id(self, record_id: str) -> None:
        if not _ID_PATTERN.match(record_id):
            raise StoreError(f"Invalid record id: {record_id!r}")

    def _path_for(self, kind: RecordKind, record_id: str) -> Path:
        self._check_id(record_id)
        if kind is RecordKind.PERSONA_CANDIDATE:
            return self._candidates_dir / f"{record_id}.md"
        return self.root / COLLECTIONS[kind.tier] / f"{record_id}.md"

    def _read_record(self, path: Path) -> MemoryRecord | None:
        """Parse one record file; None if missing or malformed."""
        if not path.exists():
            return None
        try:
            post = frontmatter.load(str(path))
            data = dict(post.metadata)
            kind = RecordKind(data["kind"])
            payload = dict(data.get("payload") or {})
            payload.setdefault(PRIMARY_TEXT_FIELD[kind], post.content)
            data["payload"] = payload
            return MemoryRecord.from_dict(data)
        except Exception as e:
            logger.warning("Unreadable record file %s: %s", path, e)
            return None

    def _write_record(self, path: Path, record: MemoryRecord) -> None:
        """Write via a temp file + rename so readers never see a partial file."""
        data = record.to_dict()
        field = PRIMARY_TEXT_FIELD[record.kind]
        body = data["payload"][field]
        # frontmatter strips the body; keep text with edge whitespace in the metadata too
        if body == body.strip():
            del data["payload"][field]
        post = frontmatter.Post(body, **data)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_text(frontmatter.dumps(post) + "\n", encoding="utf-8")
        os.replace(tmp, path)

    # ── TierStore API ─────────────────────────────────────

    async def upsert(self, tier: Tier, record: MemoryRecord) -> None:
        check_write(tier, record, self.dimension)
        self._write_record(self._path_for(record.kind, record.id), record)
        logger.debug("Upserted %s %s", record.kind.value, record.id)

    async def get(self, tier: Tier, record_id: str) -> MemoryRecord | None:
        self._check_id(record_id)
        kinds = [k for k in RecordKind if k.tier is tier]
        for kind in kinds:
            record = self._read_record(self._path_for(kind, record_id))
            if record is not None and record.tier is tier:
                return record
        return None

    async def delete(self, tier: Tier, record_id: str) -> bool:
        self._check_id(record_id)
        removed = False
        for kind in (k for k in RecordKind if k.tier is tier):
            path = self._path_for(kind, record_id)
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
        return removed

    async def search(
        self, tier: Tier, vector: Sequence[float], limit: int
    ) -> list[ScoredRecord]:
        if limit <= 0:
            return []
        self._refresh(tier)
        scored = [
            (record, cosine_similarity(vector, record.embedding))
            for _, record in self._index[tier].values()
            if record is not None and record.searchable
        ]
        return [(copy.deepcopy(record), score) for record, score in rank(scored, limit)]

    async def list_candidates(
        self, status: CandidateStatus | None = CandidateStatus.AWAITING_REVIEW
    ) -> list[MemoryRecord]:
        found = []
        for path in self._candidates_dir.glob("*.md"):
            record = self._read_record(path)
            if record is None or record.kind is not RecordKind.PERSONA_CANDIDATE:
                continue
            if status is None or record.payload.status is status:
                found.append(record)
        found.sort(key=lambda r: (r.created_at, r.id))
        return found

    async def compare_and_set_status(
        self,
        candidate_id: str,
        expected: CandidateStatus,
        new: CandidateStatus,
    ) -> MemoryRecord:
        src = self._path_for(RecordKind.PERSONA_CANDIDATE, candidate_id)
        claim = self._candidates_dir / _CLAIMS_DIR / src.name
        claim.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.rename(src, claim)
        except FileNotFoundError:
            current = self._read_record(src)
            raise ConflictError(candidate_id, current.status if current else None) from None

        try:
            record = self._read_record(claim)
            if record is None or record.kind is not RecordKind.PERSONA_CANDIDATE:
                raise StoreError(f"Claimed candidate {candidate_id} is unreadable")
            if record.payload.status is not expected:
                raise ConflictError(candidate_id, record.payload.status.value)
            record.update(status=new)
            self._write_record(claim, record)
        finally:
            os.rename(claim, src)

        logger.debug("Candidate %s: %s -> %s", candidate_id, expected.value, new.value)
        return record
