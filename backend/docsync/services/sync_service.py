"""Change detection and reconciliation of repository documentation.

The reconciler turns a :class:`FileDelta` into stored state: for every
changed path it downloads the content, uploads the blob, re-chunks and
re-embeds it, then swaps the current file version and its chunks. External
work for a batch of files runs concurrently; database writes are applied one
file at a time on the run's session and committed per file, so a failure
only affects the file that caused it.
"""

import asyncio
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, NamedTuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.config import get_settings
from docsync.core.clock import utc_now
from docsync.core.logging import get_logger
from docsync.exceptions import FileSyncError, SyncError
from docsync.models.project import RepoRef
from docsync.models.repo_file import RepoFile, RepoFileChunk
from docsync.services.chunker import Chunk, chunk_text
from docsync.services.embedding_service import EmbeddingService
from docsync.services.github_service import GitHubService, TreeEntry
from docsync.services.progress_service import ProgressTracker
from docsync.services.storage_service import ContentStore

logger = get_logger(__name__)
settings = get_settings()

ZERO_SHA = "0" * 40
UPSERT_STATUSES = {"added", "modified", "changed", "copied"}


def is_tracked_path(
    path: str,
    extensions: Iterable[str] | None = None,
    prefix: str | None = None,
) -> bool:
    """True for documentation files the pipeline mirrors."""
    if not path:
        return False
    extensions = tuple(extensions if extensions is not None else settings.tracked_extensions)
    prefix = settings.tracked_path_prefix if prefix is None else prefix
    return path.lower().endswith(tuple(e.lower() for e in extensions)) and path.startswith(prefix)


def _unique(paths: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(p for p in paths if p))


@dataclass
class FileDelta:
    """Paths to (re)index and paths to retire.

    A path listed in both is treated as an upsert.
    """

    upserts: list[str] = field(default_factory=list)
    removals: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.upserts = _unique(self.upserts)
        upsert_set = set(self.upserts)
        self.removals = [p for p in _unique(self.removals) if p not in upsert_set]

    @property
    def is_empty(self) -> bool:
        return not self.upserts and not self.removals

    @property
    def changed_paths(self) -> list[str]:
        return self.upserts + self.removals


@dataclass
class FileFailure:
    path: str
    error: dict[str, Any]


@dataclass
class ReconcileResult:
    synced: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failed: list[FileFailure] = field(default_factory=list)
    chunks: int = 0

    @property
    def changed_paths(self) -> list[str]:
        return self.synced + self.removed

    def to_dict(self) -> dict[str, Any]:
        return {
            "synced": self.synced,
            "unchanged": self.unchanged,
            "removed": self.removed,
            "failed": [asdict(f) for f in self.failed],
            "chunks": self.chunks,
        }


class StoredFile(NamedTuple):
    id: uuid.UUID
    sha: str
    bucket_path: str | None


@dataclass
class PreparedFile:
    """A fetched, uploaded, chunked and embedded file ready to be written."""

    path: str
    sha: str
    size: int
    bucket_path: str | None
    chunks: list[Chunk]
    vectors: list[list[float]]


async def load_current_files(session: AsyncSession, project_id: uuid.UUID) -> dict[str, StoredFile]:
    result = await session.execute(
        select(RepoFile.path, RepoFile.id, RepoFile.sha, RepoFile.bucket_path).where(
            RepoFile.project_id == project_id,
            RepoFile.is_current.is_(True),
        )
    )
    return {row.path: StoredFile(row.id, row.sha, row.bucket_path) for row in result}


async def detect_tree_changes(
    session: AsyncSession,
    project: RepoRef,
    remote_tree: list[TreeEntry],
) -> tuple[FileDelta, int]:
    """Compare the remote tree with stored current versions.

    Returns the delta and the number of tracked files in the tree.
    """
    tracked = [entry for entry in remote_tree if is_tracked_path(entry.path)]
    stored = await load_current_files(session, project.id)

    upserts = [
        entry.path
        for entry in tracked
        if entry.path not in stored or stored[entry.path].sha != entry.sha
    ]
    remote_paths = {entry.path for entry in tracked}
    removals = [path for path in stored if path not in remote_paths]

    return FileDelta(upserts=upserts, removals=removals), len(tracked)


def delta_from_commits(commits: list[dict[str, Any]]) -> FileDelta:
    """Union of the file lists in a push payload's commits."""
    upserts: list[str] = []
    removals: list[str] = []
    for commit in commits or []:
        upserts.extend(commit.get("added") or [])
        upserts.extend(commit.get("modified") or [])
        removals.extend(commit.get("removed") or [])
    return FileDelta(
        upserts=[p for p in upserts if is_tracked_path(p)],
        removals=[p for p in removals if is_tracked_path(p)],
    )


async def resolve_push_delta(
    github: GitHubService,
    project: RepoRef,
    event: dict[str, Any],
) -> FileDelta:
    """Work out which tracked files a push changed.

    Uses the compare API when both ends of the push are known. For a
    branch's first push, or when the compare call fails, falls back to the
    file lists carried in the payload's commits.
    """
    before = event.get("before")
    after = event.get("after")

    if before and after and before != ZERO_SHA:
        try:
            files = await github.compare(project.owner, project.name, before, after)
        except SyncError as e:
            logger.warning(
                f"Compare {before[:7]}...{after[:7]} failed, using payload file lists: {e}",
                extra={"context": {"project_id": project.id}},
            )
        else:
            upserts: list[str] = []
            removals: list[str] = []
            for item in files:
                if item.status == "renamed":
                    if item.previous_filename and is_tracked_path(item.previous_filename):
                        removals.append(item.previous_filename)
                    if is_tracked_path(item.filename):
                        upserts.append(item.filename)
                elif not is_tracked_path(item.filename):
                    continue
                elif item.status == "removed":
                    removals.append(item.filename)
                elif item.status in UPSERT_STATUSES:
                    upserts.append(item.filename)
            return FileDelta(upserts=upserts, removals=removals)

    return delta_from_commits(event.get("commits") or [])


class Reconciler:
    """Applies a :class:`FileDelta` to a project's stored files and chunks."""

    def __init__(
        self,
        session: AsyncSession,
        github: GitHubService,
        store: ContentStore,
        embedder: EmbeddingService,
        batch_size: int | None = None,
        chunk_size: int | None = None,
        chunk_overlap: int | None = None,
        max_chunks: int | None = None,
    ):
        self.session = session
        self.github = github
        self.store = store
        self.embedder = embedder
        self.batch_size = max(1, batch_size or settings.sync_batch_size)
        self.chunk_size = chunk_size or settings.chunk_size
        self.chunk_overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
        self.max_chunks = max_chunks or settings.max_chunks

    async def apply(
        self,
        project: RepoRef,
        delta: FileDelta,
        tracker: ProgressTracker,
        ref: str | None = None,
    ) -> ReconcileResult:
        """Sync every path in ``delta``; per-file failures are collected, not raised."""
        log = logger.bind(project_id=project.id, run_id=tracker.run_id)
        result = ReconcileResult()
        stored = await load_current_files(self.session, project.id)

        for path in delta.removals:
            await self._remove(project, path, stored, result, log)
        if delta.removals:
            await tracker.flush()

        upserts = delta.upserts
        for start in range(0, len(upserts), self.batch_size):
            batch = upserts[start : start + self.batch_size]
            log.debug(f"Processing batch {start // self.batch_size + 1}: {batch}")

            outcomes = await asyncio.gather(
                *(
                    self._prepare(project, path, stored.get(path), ref)
                    for path in batch
                ),
                return_exceptions=True,
            )

            for path, outcome in zip(batch, outcomes):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    self._record_failure(result, path, outcome, log)
                    continue
                if outcome is None:
                    result.unchanged.append(path)
                    tracker.add_indexed(1)
                    continue

                try:
                    await self._write(project, outcome, stored)
                except Exception as e:
                    await self.session.rollback()
                    self._record_failure(result, path, e, log)
                    continue

                result.synced.append(path)
                result.chunks += len(outcome.chunks)
                tracker.add_indexed(1)
                tracker.add_chunks(len(outcome.chunks))

            await tracker.flush()

        log.info(
            f"Reconciled {project.full_name}: {len(result.synced)} synced, "
            f"{len(result.unchanged)} unchanged, {len(result.removed)} removed, "
            f"{len(result.failed)} failed, {result.chunks} chunks"
        )
        return result

    def _record_failure(self, result: ReconcileResult, path: str, error: BaseException, log) -> None:
        details = FileSyncError.from_exception(error, path=path).to_dict()
        result.failed.append(FileFailure(path=path, error=details))
        log.error(f"Failed to sync {path}: {details['message']}", extra={"context": {"path": path}})

    async def _prepare(
        self,
        project: RepoRef,
        path: str,
        current: StoredFile | None,
        ref: str | None,
    ) -> PreparedFile | None:
        """Fetch, upload, chunk and embed one file. None if content is unchanged."""
        remote = await self.github.get_file(project.owner, project.name, path, ref)
        if current is not None and current.sha == remote.sha:
            return None

        bucket_path = await self.store.put(str(project.id), remote.sha, path, remote.content)
        chunks = chunk_text(
            remote.content,
            path,
            size=self.chunk_size,
            overlap=self.chunk_overlap,
            max_chunks=self.max_chunks,
        )
        vectors = await self.embedder.embed(chunks)
        return PreparedFile(
            path=path,
            sha=remote.sha,
            size=remote.size,
            bucket_path=bucket_path,
            chunks=chunks,
            vectors=vectors,
        )

    async def _write(
        self,
        project: RepoRef,
        prepared: PreparedFile,
        stored: dict[str, StoredFile],
    ) -> None:
        now = utc_now()
        path = prepared.path

        # At most one current row per (project, path)
        await self.session.execute(
            update(RepoFile)
            .where(
                RepoFile.project_id == project.id,
                RepoFile.path == path,
                RepoFile.is_current.is_(True),
            )
            .values(is_current=False)
            .execution_options(synchronize_session=False)
        )

        new_id = uuid.uuid4()
        self.session.add(
            RepoFile(
                id=new_id,
                project_id=project.id,
                path=path,
                sha=prepared.sha,
                size_bytes=prepared.size,
                bucket_path=prepared.bucket_path,
                is_current=True,
                created_at=now,
            )
        )
        await self.session.flush()

        await self._invalidate_chunks(project.id, path, now, exclude_file_id=new_id)

        self.session.add_all(
            [
                RepoFileChunk(
                    repo_file_id=new_id,
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                    embedding=vector,
                    embedding_model=self.embedder.model_tag,
                    is_current=True,
                    created_at=now,
                )
                for chunk, vector in zip(prepared.chunks, prepared.vectors)
            ]
        )
        await self.session.commit()

        stored[path] = StoredFile(new_id, prepared.sha, prepared.bucket_path)

    async def _blob_shared(self, project_id: uuid.UUID, path: str, bucket_path: str) -> bool:
        """Whether another current file points at the same stored object."""
        # Keys use the basename, so identical content at two paths shares one object
        other = await self.session.scalar(
            select(RepoFile.id)
            .where(
                RepoFile.project_id == project_id,
                RepoFile.bucket_path == bucket_path,
                RepoFile.path != path,
                RepoFile.is_current.is_(True),
            )
            .limit(1)
        )
        return other is not None

    async def _invalidate_chunks(
        self,
        project_id: uuid.UUID,
        path: str,
        now,
        exclude_file_id: uuid.UUID | None = None,
    ) -> None:
        file_ids = select(RepoFile.id).where(
            RepoFile.project_id == project_id,
            RepoFile.path == path,
        )
        if exclude_file_id is not None:
            file_ids = file_ids.where(RepoFile.id != exclude_file_id)

        await self.session.execute(
            update(RepoFileChunk)
            .where(
                RepoFileChunk.repo_file_id.in_(file_ids),
                RepoFileChunk.is_current.is_(True),
            )
            .values(is_current=False, invalidated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def _remove(
        self,
        project: RepoRef,
        path: str,
        stored: dict[str, StoredFile],
        result: ReconcileResult,
        log,
    ) -> None:
        current = stored.get(path)
        if current is None:
            log.debug(f"Removal of untracked path {path} ignored")
            return

        if current.bucket_path and not await self._blob_shared(project.id, path, current.bucket_path):
            await self.store.delete(current.bucket_path)

        try:
            now = utc_now()
            await self.session.execute(
                update(RepoFile)
                .where(
                    RepoFile.project_id == project.id,
                    RepoFile.path == path,
                    RepoFile.is_current.is_(True),
                )
                .values(is_current=False)
                .execution_options(synchronize_session=False)
            )
            await self._invalidate_chunks(project.id, path, now)
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            self._record_failure(result, path, e, log)
            return

        stored.pop(path, None)
        result.removed.append(path)
        log.info(f"Removed {path}", extra={"context": {"path": path}})
