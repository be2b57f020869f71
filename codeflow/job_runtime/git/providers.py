"""Git hosting providers: URL parsing and the merge/pull request call.

Only one REST call per provider is needed -- create a GitLab merge request or
a GitHub pull request -- so both live on a small ``MergeRequestClient`` that
shares one ``httpx.AsyncClient`` with the webhook sender.
"""

from __future__ import annotations

from urllib.parse import quote, urlsplit, urlunsplit

import httpx
from loguru import logger

from codeflow.job_runtime.errors import MergeRequestError
from codeflow.job_runtime.models.enums import GitProvider


def detect_provider(repo_url: str) -> GitProvider:
    normalized = repo_url.lower()
    if "github." in normalized:
        return GitProvider.GITHUB
    if "gitlab." in normalized:
        return GitProvider.GITLAB
    return GitProvider.OTHER


def repository_path(repo_url: str) -> str | None:
    """``owner/repo`` (GitHub) or ``group/sub/project`` (GitLab).

    Accepts HTTPS (``https://host/group/repo.git``) and scp-style SSH
    (``git@host:group/repo.git``) URLs.
    """
    url = repo_url.strip().removesuffix("/").removesuffix(".git")
    if url.startswith("git@"):
        _, _, path = url.partition(":")
    else:
        path = urlsplit(url).path
    path = path.strip("/")
    return path if path.count("/") >= 1 else None


def authenticated_url(repo_url: str, *, username: str, token: str) -> str:
    """Embed credentials in an HTTPS clone URL.  Other schemes pass through."""
    parts = urlsplit(repo_url)
    if parts.scheme not in ("http", "https"):
        return repo_url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{quote(username, safe='')}:{quote(token, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class MergeRequestClient:
    """Creates GitLab merge requests and GitHub pull requests."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        gitlab_url: str = "https://gitlab.com",
        gitlab_token: str | None = None,
        github_api_url: str = "https://api.github.com",
        github_token: str | None = None,
    ) -> None:
        self._http = http
        self._gitlab_url = gitlab_url.rstrip("/")
        self._gitlab_token = gitlab_token
        self._github_api_url = github_api_url.rstrip("/")
        self._github_token = github_token

    async def open(self, repo_url: str, source: str, target: str, title: str, body: str) -> str:
        """Open an MR/PR for ``repo_url`` and return its web URL.

        Raises ``MergeRequestError`` for unsupported hosts, missing tokens and
        API errors.
        """
        provider = detect_provider(repo_url)
        path = repository_path(repo_url)
        if path is None:
            msg = f"Cannot extract repository path from {repo_url}"
            raise MergeRequestError(msg)
        if provider is GitProvider.GITLAB:
            return await self.create_merge_request(path, source, target, title, body)
        if provider is GitProvider.GITHUB:
            owner, _, repo = path.partition("/")
            return await self.create_pull_request(owner, repo, source, target, title, body)
        msg = f"Unsupported git provider for {repo_url}; push succeeded but no merge request was opened"
        raise MergeRequestError(msg)

    async def create_merge_request(self, project: str, source: str, target: str, title: str, body: str) -> str:
        if not self._gitlab_token:
            msg = "GitLab token not configured (CODEFLOW_GITLAB_TOKEN)"
            raise MergeRequestError(msg)
        url = f"{self._gitlab_url}/api/v4/projects/{quote(project, safe='')}/merge_requests"
        payload = {
            "source_branch": source,
            "target_branch": target,
            "title": title,
            "description": body,
            "remove_source_branch": True,
        }
        data = await self._post(url, payload, headers={"PRIVATE-TOKEN": self._gitlab_token})
        logger.info("GitLab MR !{} created for {} ({} -> {})", data.get("iid"), project, source, target)
        return _response_link(data, "web_url")

    async def create_pull_request(
        self, owner: str, repo: str, source: str, target: str, title: str, body: str
    ) -> str:
        if not self._github_token:
            msg = "GitHub token not configured (CODEFLOW_GITHUB_TOKEN)"
            raise MergeRequestError(msg)
        url = f"{self._github_api_url}/repos/{owner}/{repo}/pulls"
        payload = {"title": title, "head": source, "base": target, "body": body}
        headers = {
            "Authorization": f"Bearer {self._github_token}",
            "Accept": "application/vnd.github+json",
        }
        data = await self._post(url, payload, headers=headers)
        logger.info("GitHub PR #{} created for {}/{} ({} -> {})", data.get("number"), owner, repo, source, target)
        return _response_link(data, "html_url")

    async def _post(self, url: str, payload: dict, *, headers: dict[str, str]) -> dict:
        try:
            response = await self._http.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            msg = f"Merge request API call failed: {exc}"
            raise MergeRequestError(msg) from exc
        if response.is_error:
            msg = f"Merge request API error: {response.status_code} {response.text[:500]}"
            raise MergeRequestError(msg)
        try:
            data = response.json()
        except ValueError as exc:
            msg = f"Merge request API returned invalid JSON: {response.text[:200]}"
            raise MergeRequestError(msg) from exc
        if not isinstance(data, dict):
            msg = f"Merge request API returned unexpected payload: {response.text[:200]}"
            raise MergeRequestError(msg)
        return data


def _response_link(data: dict, field: str) -> str:
    link = data.get(field)
    if not isinstance(link, str) or not link:
        msg = f"Merge request API response has no '{field}'"
        raise MergeRequestError(msg)
    return link
