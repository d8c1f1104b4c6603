from __future__ import annotations

import hashlib
import re

NON_SLUG = re.compile(r"[^a-z0-9]+")

TASK_TYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("bug", ("fix", "bug", "error", "crash", "broken", "regression")),
    ("refactor", ("refactor", "cleanup", "clean up", "restructure", "simplify")),
    ("testing", ("test", "coverage", "spec")),
    ("security", ("security", "vulnerability", "cve", "auth", "xss", "injection")),
    ("docs", ("docs", "documentation", "readme", "guide")),
    ("devops", ("ci", "pipeline", "deploy", "docker", "workflow")),
    ("migration", ("migrate", "migration", "upgrade schema")),
    ("architecture", ("architecture", "redesign", "rearchitect")),
)

BRANCH_PREFIXES = {
    "bug": "fix/",
    "refactor": "refactor/",
    "testing": "test/",
    "security": "security/",
    "docs": "docs/",
    "devops": "ci/",
    "migration": "migrate/",
    "architecture": "arch/",
    "feature": "feat/",
}


def sanitize(text: str, max_length: int = 50) -> str:
    """Lowercase slug of ``text`` made only of ``[a-z0-9-]``."""
    slug = NON_SLUG.sub("-", text.lower()).strip("-")
    return slug[:max_length].strip("-")


def unique_slug(text: str, max_length: int) -> str:
    """Like :func:`sanitize`, but a truncated slug ends with a hash of the full text."""
    full = NON_SLUG.sub("-", text.lower()).strip("-")
    if len(full) <= max_length:
        return full
    digest = hashlib.sha1(text.encode("utf-8")).hexdigest()[:8]
    return f"{sanitize(full, max_length - len(digest) - 1)}-{digest}"


def detect_task_type(goal: str) -> str:
    lowered = goal.lower()
    for task_type, keywords in TASK_TYPE_KEYWORDS:
        for keyword in keywords:
            if re.search(rf"\b{re.escape(keyword)}\b", lowered):
                return task_type
    return "feature"


def branch_prefix(task_type: str) -> str:
    return BRANCH_PREFIXES.get(task_type, "feat/")


def branch_name(goal: str, prefix: str = "fix/", max_length: int = 50) -> str:
    if prefix == "auto":
        prefix = branch_prefix(detect_task_type(goal))
    slug = sanitize(goal, max_length) or "task"
    return f"{prefix}{slug}"
