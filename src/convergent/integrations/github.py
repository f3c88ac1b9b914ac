"""Keep a single plan comment up to date on a GitHub pull request."""

import re

import requests

REPO_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+/[a-zA-Z0-9._-]+$")
API_ROOT = "https://api.github.com"

# Hidden marker identifying the comment this tool owns.
COMMENT_MARKER = "<!-- convergent-plan -->"


def _headers(token: str) -> dict[str, str]:
    return {
        "Authorization": f"token {token}",
        "Accept": "application/vnd.github.v3+json",
    }


def find_plan_comment(repo: str, pr_number: int, token: str, timeout: int = 30) -> int | None:
    """Return the ID of an existing plan comment on the PR, if any."""
    url = f"{API_ROOT}/repos/{repo}/issues/{pr_number}/comments"
    params = {"per_page": 100, "page": 1}
    while True:
        response = requests.get(url, headers=_headers(token), params=params, timeout=timeout)
        response.raise_for_status()
        comments = response.json()
        for comment in comments:
            if COMMENT_MARKER in (comment.get("body") or ""):
                return comment["id"]
        if len(comments) < params["per_page"]:
            return None
        params["page"] += 1


def post_to_github_pr(
    body: str,
    repo: str,
    pr_number: int,
    token: str,
    timeout: int = 30,
) -> None:
    """Create the plan comment on a pull request, or update it if it exists."""
    if not REPO_PATTERN.match(repo):
        raise ValueError(f"Invalid GitHub repo format: {repo!r} (expected 'owner/repo')")

    text = f"{COMMENT_MARKER}\n{body}"
    comment_id = find_plan_comment(repo, pr_number, token, timeout=timeout)
    if comment_id is None:
        response = requests.post(
            f"{API_ROOT}/repos/{repo}/issues/{pr_number}/comments",
            json={"body": text},
            headers=_headers(token),
            timeout=timeout,
        )
    else:
        response = requests.patch(
            f"{API_ROOT}/repos/{repo}/issues/comments/{comment_id}",
            json={"body": text},
            headers=_headers(token),
            timeout=timeout,
        )
    response.raise_for_status()
