"""Pull request lookup through the GitHub CLI (``gh``).

Everything here is best effort: a missing ``gh``, no authentication, no
GitHub remote or a slow network all read as "no pull request".
"""

import json
import logging
from typing import Optional

from .errors import CommanderError
from .models import PrInfo
from .tmux_executor import CommandRunner, SubprocessRunner

logger = logging.getLogger(__name__)

GH_TIMEOUT_SECONDS = 10.0


def parse_pr_json(raw: str) -> Optional[PrInfo]:
    """
    Parse ``gh pr list --json number,url`` output.

    Returns:
        The first listed pull request, or None for an empty list or
        anything that is not the expected JSON shape
    """
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        return None
    number = data[0].get("number")
    url = data[0].get("url")
    if not isinstance(number, int) or isinstance(number, bool) or not isinstance(url, str):
        return None
    return PrInfo(number=number, url=url)


class PullRequestLookup:
    """Finds the open pull request whose head is a given branch."""

    def __init__(self, runner: Optional[CommandRunner] = None, timeout: float = GH_TIMEOUT_SECONDS):
        self.runner = runner or SubprocessRunner()
        self.timeout = timeout
        self._available: Optional[bool] = None

    async def is_available(self) -> bool:
        """True if ``gh --version`` runs. Checked once, then remembered."""
        if self._available is None:
            try:
                output = await self.runner.run(["gh", "--version"], self.timeout)
                self._available = output.ok
            except CommanderError as e:
                logger.debug(f"gh unavailable: {e}")
                self._available = False
            if not self._available:
                logger.info("GitHub CLI not available, pull request lookup disabled")
        return self._available

    async def check_branch(self, repo_path: str, branch: str) -> Optional[PrInfo]:
        """
        Look up the pull request for ``branch``.

        Args:
            repo_path: Any working tree of the repository; gh resolves the
                GitHub remote from it
            branch: Head branch name

        Returns:
            PrInfo, or None if there is none or the lookup failed
        """
        if not await self.is_available():
            return None
        argv = ["gh", "pr", "list", "--head", branch, "--json", "number,url", "--limit", "1"]
        try:
            output = await self.runner.run(argv, self.timeout, cwd=repo_path)
        except CommanderError as e:
            logger.debug(f"PR lookup for {branch} failed: {e}")
            return None
        if not output.ok:
            logger.debug(f"PR lookup for {branch} exited {output.exit_code}: {output.stderr.strip()}")
            return None
        return parse_pr_json(output.stdout)
