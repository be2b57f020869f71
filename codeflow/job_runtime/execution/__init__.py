"""Execution pipeline for the job runtime.

- **workflow**: Git branch preparation before a run (same-branch / different-branch)
- **claude**: Claude CLI subprocess adapter (probe, stream-json parsing, timeout)
- **post_execution**: Commit, push and merge request creation after a run
- **pipeline**: Job handlers composing the three steps under a workspace lock
"""
