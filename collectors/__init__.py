"""
GitHub collection for the skill pipeline.

- GitHubClient: rate-limited, retried REST client
- RepoAnalyzer: per-repository facts (languages, frameworks, commits,
  README, test and deployment markers)
"""

__version__ = "1.0.0"
