"""
Andon - sequential multi-agent work pipeline with a stop-the-line cord.

Run from any project directory to drive agent workflows (iterate, refactor,
arch-review, project, test-mutate, test-cover) one work unit at a time:
invoke an agent, verify the change, retry with feedback, commit or revert,
and record resumable progress in .andon/progress.json.
"""

__version__ = "0.4.0"
__all__ = ["__version__"]
