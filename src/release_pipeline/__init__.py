"""Tag-triggered release pipeline.

Cross-compiles a binary for every target in a build matrix, publishes each
artifact to the GitHub release for the pushed tag, and reports per-job
failures and the overall run outcome to Slack.
"""

__version__ = "0.1.0"
