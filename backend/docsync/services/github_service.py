"""GitHub REST API client for repository content and webhooks."""

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from docsync.config import get_settings
from docsync.core.retry import is_retryable_http_error, with_backoff
from docsync.exceptions import SyncError, TransientExternalError, sanitize_message

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class GitHubRepo:
    """GitHub repository data."""

    id: int
    name: str
    full_name: str
    owner: str
    private: bool
    default_branch: str


@dataclass
class TreeEntry:
    """A blob in the repository tree."""

    path: str
    sha: str
    size: int = 0


@dataclass
class FileContent:
    """Decoded file content with its blob SHA."""

    path: str
    sha: str
    content: str
    size: int


@dataclass
class CompareFile:
    """One entry of a compare response."""

    filename: str
    status: str
    previous_filename: str | None = None


@dataclass
class CommitInfo:
    """Commit metadata as recorded in commit history."""

    sha: str
    message: str
    author_name: str | None = None
    author_email: str | None = None
    author_login: str | None = None
    committed_at: datetime | None = None
    url: str | None = None


def verify_signature(secret: str, payload: bytes, signature: str | None) -> bool:
    """Check an ``X-Hub-Signature-256`` header against the raw body.

    Uses constant-time comparison to prevent timing attacks.
    """
    if not secret or not signature or not signature.startswith("sha256="):
        return False

    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={expected}", signature)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp into a naive UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class GitHubService:
    """Service for GitHub API operations authenticated with a token.

    Every request is retried on 429, 5xx and transport errors. Error
    messages are sanitized so tokens never leak into logs or stored errors.
    """

    def __init__(
        self,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        attempts: int | None = None,
        base_delay: float | None = None,
    ):
        self.token = token if token is not None else settings.github_token
        self.webhook_secret = settings.github_webhook_secret
        self.api_base = settings.github_api_url.rstrip("/")
        self.attempts = attempts or settings.retry_attempts
        self.base_delay = settings.retry_base_delay if base_delay is None else base_delay
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def _headers(self, accept: str = "application/vnd.github+json") -> dict[str, str]:
        headers = {
            "Accept": accept,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _sanitize_error(self, error: str) -> str:
        """Sanitize error message to remove tokens."""
        if self.token:
            error = error.replace(self.token, "[REDACTED]")
        return sanitize_message(error)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        accept: str = "application/vnd.github+json",
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        url = f"{self.api_base}{path}"

        async def send() -> httpx.Response:
            response = await self.client.request(
                method,
                url,
                headers=self._headers(accept),
                params=params,
                json=json,
            )
            response.raise_for_status()
            return response

        try:
            return await with_backoff(
                send,
                attempts=self.attempts,
                base_delay=self.base_delay,
                retry_if=is_retryable_http_error,
                description=f"GitHub {method} {path}",
            )
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            message = self._sanitize_error(f"GitHub API {method} {path} failed with {status}")
            if is_retryable_http_error(e):
                raise TransientExternalError(message, status=status) from e
            raise SyncError(message, status=status) from e
        except httpx.TransportError as e:
            raise TransientExternalError(
                self._sanitize_error(f"GitHub API {method} {path} unreachable: {e}")
            ) from e

    # =========================================================================
    # Repository Operations
    # =========================================================================

    async def get_repository(self, owner: str, repo: str) -> GitHubRepo:
        """Get repository info, including the default branch."""
        response = await self._request("GET", f"/repos/{owner}/{repo}")
        data = response.json()
        return GitHubRepo(
            id=data["id"],
            name=data["name"],
            full_name=data["full_name"],
            owner=data["owner"]["login"],
            private=data.get("private", False),
            default_branch=data.get("default_branch") or "main",
        )

    async def get_tree(self, owner: str, repo: str, branch: str) -> list[TreeEntry]:
        """List every blob at the head of ``branch``.

        Args:
            owner: Repository owner
            repo: Repository name
            branch: Branch name

        Returns:
            Blob entries (path, sha, size); directories are excluded
        """
        ref = await self._request("GET", f"/repos/{owner}/{repo}/git/ref/heads/{branch}")
        head_sha = ref.json()["object"]["sha"]

        response = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/git/trees/{head_sha}",
            params={"recursive": "1"},
        )
        data = response.json()
        if data.get("truncated"):
            logger.warning(
                f"Tree for {owner}/{repo}@{branch} was truncated at {len(data.get('tree', []))} entries"
            )

        return [
            TreeEntry(path=item["path"], sha=item["sha"], size=item.get("size") or 0)
            for item in data.get("tree", [])
            if item.get("type") == "blob" and item.get("path")
        ]

    async def get_file(
        self,
        owner: str,
        repo: str,
        path: str,
        ref: str | None = None,
    ) -> FileContent:
        """Get decoded file content and its blob SHA.

        Args:
            owner: Repository owner
            repo: Repository name
            path: File path
            ref: Optional commit/branch reference

        Returns:
            FileContent with UTF-8 text
        """
        params = {"ref": ref} if ref else None
        response = await self._request(
            "GET", f"/repos/{owner}/{repo}/contents/{path}", params=params
        )
        data = response.json()
        if isinstance(data, list) or data.get("type") != "file":
            raise SyncError(f"Not a file: {path}", path=path)

        if data.get("encoding") == "base64" and data.get("content"):
            raw = base64.b64decode(data["content"])
        else:
            # Files above the contents API size limit come back without content
            raw_response = await self._request(
                "GET",
                f"/repos/{owner}/{repo}/contents/{path}",
                accept="application/vnd.github.raw",
                params=params,
            )
            raw = raw_response.content

        return FileContent(
            path=path,
            sha=data["sha"],
            content=raw.decode("utf-8", errors="replace"),
            size=data.get("size") or len(raw),
        )

    async def compare(self, owner: str, repo: str, base: str, head: str) -> list[CompareFile]:
        """List files changed between two commits."""
        response = await self._request("GET", f"/repos/{owner}/{repo}/compare/{base}...{head}")
        return [
            CompareFile(
                filename=item["filename"],
                status=item.get("status", "modified"),
                previous_filename=item.get("previous_filename"),
            )
            for item in response.json().get("files") or []
        ]

    async def list_commits(
        self,
        owner: str,
        repo: str,
        branch: str | None = None,
        per_page: int = 30,
    ) -> list[CommitInfo]:
        """List recent commits on a branch."""
        params: dict[str, Any] = {"per_page": per_page}
        if branch:
            params["sha"] = branch
        response = await self._request("GET", f"/repos/{owner}/{repo}/commits", params=params)

        commits = []
        for item in response.json():
            commit = item.get("commit") or {}
            author = commit.get("author") or {}
            commits.append(
                CommitInfo(
                    sha=item["sha"],
                    message=commit.get("message", ""),
                    author_name=author.get("name"),
                    author_email=author.get("email"),
                    author_login=(item.get("author") or {}).get("login"),
                    committed_at=parse_timestamp(author.get("date")),
                    url=item.get("html_url"),
                )
            )
        return commits

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def create_webhook(self, owner: str, repo: str, url: str, secret: str) -> int:
        """Register a push webhook and return its id."""
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/hooks",
            json={
                "name": "web",
                "active": True,
                "events": ["push"],
                "config": {
                    "url": url,
                    "content_type": "json",
                    "secret": secret,
                    "insecure_ssl": "0",
                },
            },
        )
        return response.json()["id"]

    async def list_webhooks(self, owner: str, repo: str) -> list[dict[str, Any]]:
        response = await self._request("GET", f"/repos/{owner}/{repo}/hooks")
        return response.json()

    async def delete_webhook(self, owner: str, repo: str, hook_id: int) -> None:
        await self._request("DELETE", f"/repos/{owner}/{repo}/hooks/{hook_id}")

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        """Verify GitHub webhook signature with the configured secret."""
        return verify_signature(self.webhook_secret, payload, signature)
