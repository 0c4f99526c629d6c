"""Pytest configuration and fixtures."""

import hashlib
import hmac
import json
import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./docsync-test.db"
os.environ["GITHUB_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["GEMINI_API_KEY"] = "test-api-key"
os.environ["RETRY_BASE_DELAY"] = "0"
os.environ["LOCK_RETRY_DELAY"] = "0"
os.environ["WEBHOOK_PROCESSING_MODE"] = "queue"

from unittest.mock import MagicMock

import pytest
from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, event
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import docsync.models  # noqa: F401
from docsync.config import get_settings
from docsync.database import Base
from docsync.exceptions import SyncError
from docsync.models.project import Project, repo_url_for
from docsync.runtime import Services
from docsync.services.embedding_service import EmbeddingService
from docsync.services.github_service import (
    CommitInfo,
    CompareFile,
    FileContent,
    GitHubRepo,
    TreeEntry,
    verify_signature,
)
from docsync.services.lock_service import JobLockManager
from docsync.services.storage_service import storage_path


# Replace JSONB and vector columns with JSON for SQLite
@event.listens_for(Base.metadata, "before_create")
def _use_sqlite_types(target, connection, **kw):
    if connection.dialect.name != "sqlite":
        return
    for table in target.tables.values():
        for column in table.columns:
            if isinstance(column.type, (postgresql.JSONB, Vector)):
                column.type = JSON()


def blob_sha(content: str) -> str:
    return hashlib.sha1(content.encode("utf-8")).hexdigest()


def sign(payload: bytes, secret: str | None = None) -> str:
    secret = secret or get_settings().github_webhook_secret
    return "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class FakeGitHub:
    """In-memory repository: path -> content."""

    def __init__(self, files: dict[str, str] | None = None):
        self.files = dict(files or {})
        self.failures: dict[str, BaseException] = {}
        self.tree_error: BaseException | None = None
        self.compare_files: list[CompareFile] = []
        self.compare_error: BaseException | None = None
        self.default_branch = "main"
        self.fetched: list[str] = []
        self.webhooks: list[dict] = []
        self.hooks: list[dict] = []
        self.deleted_hooks: list[int] = []
        self.next_hook_id = 4242
        self.commits: list[CommitInfo] = []

    async def get_repository(self, owner, repo):
        return GitHubRepo(
            id=1,
            name=repo,
            full_name=f"{owner}/{repo}",
            owner=owner,
            private=False,
            default_branch=self.default_branch,
        )

    async def get_tree(self, owner, repo, branch):
        if self.tree_error is not None:
            raise self.tree_error
        return [
            TreeEntry(path=path, sha=blob_sha(content), size=len(content))
            for path, content in self.files.items()
        ]

    async def get_file(self, owner, repo, path, ref=None):
        self.fetched.append(path)
        if path in self.failures:
            raise self.failures[path]
        if path not in self.files:
            raise SyncError(f"GitHub API GET /repos/{owner}/{repo}/contents/{path} failed with 404", status=404)
        content = self.files[path]
        return FileContent(path=path, sha=blob_sha(content), content=content, size=len(content))

    async def compare(self, owner, repo, base, head):
        if self.compare_error is not None:
            raise self.compare_error
        return list(self.compare_files)

    async def list_commits(self, owner, repo, branch=None, per_page=30):
        return list(self.commits[:per_page])

    async def create_webhook(self, owner, repo, url, secret):
        self.webhooks.append({"owner": owner, "repo": repo, "url": url})
        hook_id = self.next_hook_id
        self.next_hook_id += 1
        self.hooks.append({"id": hook_id, "active": True, "events": ["push"], "config": {"url": url}})
        return hook_id

    async def list_webhooks(self, owner, repo):
        return list(self.hooks)

    async def delete_webhook(self, owner, repo, hook_id):
        self.deleted_hooks.append(hook_id)
        self.hooks = [hook for hook in self.hooks if hook["id"] != hook_id]

    def verify_webhook_signature(self, payload, signature):
        return verify_signature(get_settings().github_webhook_secret, payload, signature)

    async def aclose(self):
        pass


class FakeStore:
    def __init__(self):
        self.objects: dict[str, str] = {}
        self.deleted: list[str] = []

    async def ensure_bucket(self):
        return True

    async def put(self, project_id, sha, file_path, content):
        key = storage_path(project_id, sha, file_path)
        self.objects[key] = content
        return key

    async def get(self, key):
        return self.objects.get(key)

    async def delete(self, key):
        self.deleted.append(key)
        self.objects.pop(key, None)
        return True

    async def aclose(self):
        pass


class FakeLLM:
    embedding_model = "fake-embedding"

    def __init__(self, dimensions: int = 4):
        self.dimensions = dimensions
        self.embed_calls = 0
        self.prompts: list[str] = []

    async def create_embeddings_batch(self, texts):
        self.embed_calls += 1
        return [[float(len(text))] + [0.0] * (self.dimensions - 1) for text in texts]

    async def generate(self, prompt, max_tokens=1500, temperature=0.3, system_prompt=None):
        self.prompts.append(prompt)
        return f"review {len(self.prompts)}"


def push_event(
    owner: str = "acme",
    name: str = "handbook",
    ref: str = "refs/heads/main",
    before: str = "0" * 40,
    after: str = "b" * 40,
    commits: list[dict] | None = None,
) -> dict:
    return {
        "ref": ref,
        "before": before,
        "after": after,
        "repository": {
            "name": name,
            "full_name": f"{owner}/{name}",
            "owner": {"login": owner, "name": owner},
            "default_branch": "main",
        },
        "commits": commits or [],
    }


def push_body(event: dict) -> bytes:
    return json.dumps(event).encode()


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'docsync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def github():
    return FakeGitHub(
        {
            "README.md": "# Handbook\n\nHow we work.",
            "docs/projectbrief.md": "Project brief. " * 120,
            "docs/guide.md": "Guide text. " * 40,
            "src/app.py": "print('not documentation')",
        }
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def services(session_factory, github, store, llm):
    return Services(
        session_factory=session_factory,
        github=github,
        store=store,
        llm=llm,
        embedder=EmbeddingService(llm, attempts=3, base_delay=0),
        locks=JobLockManager(session_factory),
        dispatch_analysis=MagicMock(),
    )


@pytest.fixture
async def project(session_factory):
    async with session_factory() as session:
        project = Project(
            repo_owner="acme",
            repo_name="handbook",
            repo_url=repo_url_for("acme", "handbook"),
            default_branch="main",
        )
        session.add(project)
        await session.commit()
        return project
