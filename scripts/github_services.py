"""Pull request lookup and PR commenting through the gh CLI.

The pipeline depends only on PullRequestService and IssueCommentService;
the gh-backed classes are the production implementations. gh reads its
token from GH_TOKEN / GITHUB_TOKEN.
"""
import json
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

GH_TIMEOUT = 300
NOT_FOUND_MARKERS = ("http 404", "not found")


class GhError(RuntimeError):
    pass


@dataclass(frozen=True)
class PullRequest:
    number: int
    source_branch: str
    repository: str
    state: str = "open"


class PullRequestService(ABC):
    @abstractmethod
    def get(self, number: int) -> Optional[PullRequest]:
        """Return the PR, or None when the number does not resolve."""


class IssueCommentService(ABC):
    @abstractmethod
    def post(self, number: int, body: str) -> str:
        """Post body as a comment on issue/PR number; returns its URL."""


class GhCli:
    def __init__(self, *, run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 timeout: int = GH_TIMEOUT):
        self._run = run
        self.timeout = timeout

    def gh(self, *args, input=None, check=True):
        """Run a gh CLI command. Returns (returncode, stdout, stderr)."""
        cmd = ["gh", *args]
        print(f"  $ {' '.join(cmd)}")
        result = self._run(cmd, input=input, capture_output=True, text=True,
                           timeout=self.timeout)
        rc, out, err = result.returncode, (result.stdout or "").strip(), (result.stderr or "").strip()
        if check and rc != 0:
            raise GhError(f"gh command failed (rc={rc}): {err}")
        return rc, out, err


class GitHubPullRequests(PullRequestService):
    def __init__(self, repository: str, cli: Optional[GhCli] = None):
        self.repository = repository
        self.cli = cli or GhCli()

    def get(self, number: int) -> Optional[PullRequest]:
        rc, out, err = self.cli.gh("api", f"repos/{self.repository}/pulls/{number}",
                                   check=False)
        if rc != 0:
            if any(m in err.lower() for m in NOT_FOUND_MARKERS):
                return None
            raise GhError(f"Could not fetch PR #{number} (rc={rc}): {err}")
        data = json.loads(out)
        return PullRequest(
            number=int(data["number"]),
            source_branch=data["head"]["ref"],
            repository=data["base"]["repo"]["full_name"],
            state=data.get("state", "open"),
        )


class GitHubIssueComments(IssueCommentService):
    def __init__(self, repository: str, cli: Optional[GhCli] = None):
        self.repository = repository
        self.cli = cli or GhCli()

    def post(self, number: int, body: str) -> str:
        _, out, _ = self.cli.gh(
            "api", "--method", "POST",
            f"repos/{self.repository}/issues/{number}/comments",
            "--input", "-",
            input=json.dumps({"body": body}),
        )
        url = json.loads(out).get("html_url", "") if out else ""
        print(f"  Commented on #{number}: {url or '(no url)'}")
        return url
