"""Git command layer and hosting-provider client."""

from codeflow.job_runtime.git.commands import GitRepository, run_git
from codeflow.job_runtime.git.providers import MergeRequestClient, detect_provider, repository_path

__all__ = ["GitRepository", "MergeRequestClient", "detect_provider", "repository_path", "run_git"]
