"""GitGang: parallel coding-agent supervision and review/merge orchestration.

Three coding agents work on isolated git worktrees of the same repository,
a supervisor keeps each one healthy, and a reviewer reconciles their branches
into a single integration branch.
"""

__version__ = "1.4.0"
