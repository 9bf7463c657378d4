"""Source-control access for cross-pipeline triggers.

Creating an event in another pipeline needs that pipeline's current commit,
read with the pipeline admin's credentials.

Key exports:
    ScmConfig — {scm_context, scm_uri, token} passed to every SCM call
    ScmProvider — Protocol the engine depends on
    GitHubScm — httpx implementation against the GitHub REST API
    parse_scm_uri — Split ``host:repoId:branch[:rootDir]``
"""

from __future__ import annotations

import logging
from typing import NamedTuple, Protocol

import httpx
from pydantic import BaseModel

from cascade.errors import ScmError

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"


class ScmConfig(BaseModel):
    scm_context: str
    scm_uri: str
    token: str


class ScmProvider(Protocol):
    """What the trigger engine needs from source control."""

    async def unseal_token(self, username: str, scm_context: str) -> str:
        """Return a usable access token for ``username``."""
        ...

    async def get_commit_sha(self, config: ScmConfig) -> str:
        """Return the head commit of the repository branch in ``config.scm_uri``."""
        ...


class ScmUri(NamedTuple):
    host: str
    repo_id: str
    branch: str
    root_dir: str | None = None


def parse_scm_uri(scm_uri: str) -> ScmUri:
    """Parse ``github.com:1234:main`` (optionally ``:rootDir``)."""
    parts = scm_uri.split(":", 3)
    if len(parts) < 3 or not all(parts[:3]):
        msg = f"Invalid scm uri '{scm_uri}'. Expected <host>:<repoId>:<branch>[:<rootDir>]"
        raise ValueError(msg)
    root_dir = parts[3] if len(parts) == 4 else None
    return ScmUri(parts[0], parts[1], parts[2], root_dir)


class GitHubScm:
    """GitHub implementation of :class:`ScmProvider`.

    Tokens are looked up by admin username; ``default_token`` covers admins
    without a dedicated token.
    """

    def __init__(
        self,
        *,
        base_url: str = GITHUB_API,
        tokens: dict[str, str] | None = None,
        default_token: str | None = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url
        self._tokens = dict(tokens or {})
        self._default_token = default_token
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Accept": "application/vnd.github.v3+json",
                "User-Agent": "cascade/0.1.0",
            },
            timeout=self._timeout,
        )
        logger.info("GitHub SCM client started (%s)", self.base_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GitHub SCM client not started")
        return self._client

    async def unseal_token(self, username: str, scm_context: str) -> str:
        token = self._tokens.get(username) or self._default_token
        if not token:
            msg = f"No SCM token available for admin '{username}' ({scm_context})"
            raise ScmError(msg)
        return token

    async def get_commit_sha(self, config: ScmConfig) -> str:
        uri = parse_scm_uri(config.scm_uri)
        resp = await self.client.get(
            f"/repositories/{uri.repo_id}/commits/{uri.branch}",
            headers={"Authorization": f"token {config.token}"},
        )
        resp.raise_for_status()
        sha = resp.json().get("sha")
        if not sha:
            msg = f"No commit sha returned for {config.scm_uri}"
            raise ScmError(msg)
        logger.debug("Resolved %s to %s", config.scm_uri, sha)
        return sha
