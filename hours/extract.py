"""Ticket and branch extraction from commit messages and PR titles.

All functions are pure and return None when nothing matches. Pattern order is
part of the contract: the first valid match wins, so merge-commit patterns
take priority over generic ticket patterns.
"""

import re
from typing import Callable, NamedTuple

TICKET_RE = re.compile(r"([A-Z]{2,10}-\d+)")
BARE_TICKET_RE = re.compile(r"^[A-Z]+-\d+$")

GENERIC_BRANCHES = ("main", "master", "develop", "dev")

MAX_BRANCH_LENGTH = 100


class BranchPattern(NamedTuple):
    """A branch regex and a validator run on (branch, full text)."""

    regex: re.Pattern[str]
    validate: Callable[[str, str], bool]


def _any(branch: str, text: str) -> bool:
    return True


def _not_bare_ticket(branch: str, text: str) -> bool:
    """Reject a bare ticket number unless the text talks about a branch."""
    return not (BARE_TICKET_RE.match(branch) and "branch" not in text)


MESSAGE_PATTERNS: tuple[BranchPattern, ...] = (
    # Merge commits
    BranchPattern(re.compile(r"Merge branch '([^']+)'", re.IGNORECASE), _any),
    BranchPattern(re.compile(r'Merge branch "([^"]+)"', re.IGNORECASE), _any),
    BranchPattern(re.compile(r"Merge branch ([^\s]+)", re.IGNORECASE), _any),
    # Pull request merges: Bitbucket, then GitHub
    BranchPattern(re.compile(r"Merged in ([^/\s]+)", re.IGNORECASE), _any),
    BranchPattern(re.compile(r"Merge pull request .* from ([^\s]+)", re.IGNORECASE), _any),
    # Branch names mentioned in the message
    BranchPattern(re.compile(r"\b(feature/[^\s)]+)", re.IGNORECASE), _any),
    BranchPattern(re.compile(r"\b(hotfix/[^\s)]+)", re.IGNORECASE), _any),
    BranchPattern(re.compile(r"\b(bugfix/[^\s)]+)", re.IGNORECASE), _any),
    BranchPattern(re.compile(r"\b(release/[^\s)]+)", re.IGNORECASE), _any),
    BranchPattern(re.compile(r"\b(vue3/[^\s)]+)", re.IGNORECASE), _any),
    # Ticket-prefixed branches (PROJ-123-login-form)
    BranchPattern(re.compile(r"\b([A-Z]+-\d+[^\s)]*)", re.IGNORECASE), _not_bare_ticket),
)

TITLE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(vue3/[^\s\-]+)", re.IGNORECASE),
    re.compile(r"^(feature/[^\s\-]+)", re.IGNORECASE),
    re.compile(r"^(hotfix/[^\s\-]+)", re.IGNORECASE),
    re.compile(r"^(bugfix/[^\s\-]+)", re.IGNORECASE),
    re.compile(r"^(release/[^\s\-]+)", re.IGNORECASE),
    re.compile(r"^([A-Z]+-\d+[^\s]*)", re.IGNORECASE),
)


def extract_ticket(text: str | None) -> str | None:
    """Return the first ticket reference like PROJ-123 in text, or None."""
    if not text:
        return None
    m = TICKET_RE.search(text)
    return m.group(1) if m else None


def _clean_branch(raw: str) -> str:
    branch = raw.strip().rstrip(".,;:")
    return branch.replace(" into ", "")


def extract_branch_from_message(message: str | None) -> str | None:
    """Derive a branch name from a commit message, or None."""
    if not message:
        return None
    for pattern in MESSAGE_PATTERNS:
        m = pattern.regex.search(message)
        if not m:
            continue
        branch = _clean_branch(m.group(1))
        if not pattern.validate(branch, message):
            continue
        if 0 < len(branch) < MAX_BRANCH_LENGTH:
            return branch
    return None


def extract_branch_from_pr_title(title: str | None) -> str | None:
    """Derive a branch name from a PR title starting with a branch-like token."""
    if not title:
        return None
    for regex in TITLE_PATTERNS:
        m = regex.match(title)
        if m:
            return m.group(1).strip()
    return None


def is_generic_branch(branch: str | None) -> bool:
    """True for main/master/develop/dev (and for a missing branch)."""
    return not branch or branch in GENERIC_BRANCHES


def prefer_branch(existing: str | None, candidate: str | None) -> str | None:
    """Pick the branch to keep when the same commit is seen twice.

    A specific (feature) branch is never replaced by a generic one; a generic
    branch is upgraded to a specific one; otherwise the newer observation wins.
    """
    if not candidate:
        return existing
    if not is_generic_branch(existing) and is_generic_branch(candidate):
        return existing
    return candidate
