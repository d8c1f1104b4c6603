from __future__ import annotations

import re
import subprocess
from pathlib import Path

from foreman.errors import ExternalToolFailure

SHORTSTAT_PATTERN = re.compile(r"(\d+) (?:insertion|deletion)")
IGNORED_PREFIXES = (".foreman/", ".worktrees/")
IGNORED_FILES = {"foreman.toml"}


class GitWorkspace:
    """Thin wrapper over the git CLI for one job's working tree."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()
        self._git_enabled: bool | None = None

    @property
    def git_enabled(self) -> bool:
        if self._git_enabled is None:
            self._git_enabled = self._is_git_repo()
        return self._git_enabled

    def _is_git_repo(self) -> bool:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except (FileNotFoundError, NotADirectoryError):
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        if not self.git_enabled:
            raise ExternalToolFailure(
                f"Not a git repository: {self.repo_root}", tool="git", retriable=False
            )
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise ExternalToolFailure(
                proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed",
                tool="git",
                exit_code=proc.returncode,
            )
        return proc

    def current_branch(self) -> str:
        if not self.git_enabled:
            return "no-git"
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def current_sha(self) -> str:
        if not self.git_enabled:
            return "unknown"
        proc = self._run_git(["rev-parse", "HEAD"], check=False)
        sha = proc.stdout.strip()
        return sha if proc.returncode == 0 and sha else "unknown"

    def ensure_branch(self, branch_name: str) -> None:
        if self.current_branch() == branch_name:
            return
        created = self._run_git(["checkout", "-b", branch_name], check=False)
        if created.returncode != 0:
            self._run_git(["checkout", branch_name])

    def add_worktree(self, path: Path, branch_name: str, base_ref: str) -> None:
        if path.exists():
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        proc = self._run_git(["worktree", "add", "-b", branch_name, str(path), base_ref], check=False)
        if proc.returncode != 0:
            self._run_git(["worktree", "add", str(path), branch_name])

    @staticmethod
    def _status_line_path(status_line: str) -> str:
        candidate = status_line[3:].strip()
        if " -> " in candidate:
            candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
        return candidate

    @staticmethod
    def _ignored(path: str) -> bool:
        return path in IGNORED_FILES or path.startswith(IGNORED_PREFIXES)

    def dirty_paths(self) -> list[str]:
        if not self.git_enabled:
            return []
        proc = self._run_git(["status", "--porcelain"])
        dirty: list[str] = []
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            path = self._status_line_path(line)
            if path and not self._ignored(path):
                dirty.append(path)
        return dirty

    def merge_base(self, ref: str) -> str | None:
        if not self.git_enabled:
            return None
        proc = self._run_git(["merge-base", ref, "HEAD"], check=False)
        sha = proc.stdout.strip()
        return sha if proc.returncode == 0 and sha else None

    def changed_files(self, base_ref: str) -> list[str]:
        if not self.git_enabled:
            return []
        tracked = self._run_git(["diff", "--name-only", base_ref], check=False).stdout
        untracked = self._run_git(
            ["ls-files", "--others", "--exclude-standard"], check=False
        ).stdout
        paths: list[str] = []
        for line in [*tracked.splitlines(), *untracked.splitlines()]:
            path = line.strip()
            if path and not self._ignored(path) and path not in paths:
                paths.append(path)
        return paths

    def added_lines(self, base_ref: str) -> list[str]:
        if not self.git_enabled:
            return []
        proc = self._run_git(["diff", "--unified=0", base_ref], check=False)
        return [
            line[1:]
            for line in proc.stdout.splitlines()
            if line.startswith("+") and not line.startswith("+++")
        ]

    def lines_changed(self, base_ref: str = "HEAD") -> int:
        if not self.git_enabled:
            return 0
        proc = self._run_git(["diff", "--shortstat", base_ref], check=False)
        return sum(int(match) for match in SHORTSTAT_PATTERN.findall(proc.stdout))
