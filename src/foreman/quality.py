from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

import structlog

from foreman.config import QualityConfig, WeightsConfig
from foreman.env import Environment
from foreman.state.files import atomic_write_json, atomic_write_text, read_json_or_default
from foreman.workspace import GitWorkspace

CompletionDecision = Literal["continue", "complete", "escalate"]
SemanticAuditor = Callable[[list[Path]], dict[str, list[str]]]

TODO_PATTERN = re.compile(r"\b(TODO|FIXME)\b")
SECRET_PATTERN = re.compile(
    r"(password|secret|token|api[_-]?key|aws_access|private_key)", re.IGNORECASE
)
UNCHECKED_SUBTASK = re.compile(r"^\s*[-*] \[ \]", re.MULTILINE)
SOURCE_SUFFIXES = {".py", ".js", ".jsx", ".ts", ".tsx", ".go", ".rb", ".java", ".sh", ".rs"}
SKIPPED_DIRS = {".git", ".foreman", ".worktrees", "node_modules", ".venv", "venv", "__pycache__"}
AUDIT_CATEGORIES = ("security", "correctness", "architecture")
DIMINISHING_WINDOW = 3
DIMINISHING_LINES = 10
MAX_SCAN_BYTES = 512_000

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class QualityInputs:
    failed_count: int | None
    coverage_pct: float | None
    dirty_paths: list[str]
    added_lines: list[str]


@dataclass(frozen=True, slots=True)
class Rule:
    name: str
    penalty: int
    check: Callable[[QualityInputs, QualityConfig], tuple[bool, str]]


def _tests_passing(inputs: QualityInputs, config: QualityConfig) -> tuple[bool, str]:
    if inputs.failed_count is None:
        return True, "no test results recorded"
    return inputs.failed_count == 0, f"{inputs.failed_count} failing test(s)"


def _coverage_met(inputs: QualityInputs, config: QualityConfig) -> tuple[bool, str]:
    if inputs.coverage_pct is None:
        return True, "no coverage recorded"
    return (
        inputs.coverage_pct >= config.coverage_threshold,
        f"coverage {inputs.coverage_pct:g}% (threshold {config.coverage_threshold}%)",
    )


def _clean_worktree(inputs: QualityInputs, config: QualityConfig) -> tuple[bool, str]:
    return not inputs.dirty_paths, f"{len(inputs.dirty_paths)} uncommitted path(s)"


def _no_new_todos(inputs: QualityInputs, config: QualityConfig) -> tuple[bool, str]:
    count = sum(1 for line in inputs.added_lines if TODO_PATTERN.search(line))
    return count == 0, f"{count} new TODO/FIXME marker(s)"


def _secrets_below_threshold(inputs: QualityInputs, config: QualityConfig) -> tuple[bool, str]:
    count = sum(1 for line in inputs.added_lines if SECRET_PATTERN.search(line))
    return (
        count <= config.secret_threshold,
        f"{count} secret-like line(s) (threshold {config.secret_threshold})",
    )


VALIDATION_RULES: tuple[Rule, ...] = (
    Rule("tests_passing", 30, _tests_passing),
    Rule("coverage", 20, _coverage_met),
    Rule("clean_worktree", 10, _clean_worktree),
    Rule("no_new_todos", 10, _no_new_todos),
    Rule("secrets", 10, _secrets_below_threshold),
)


@dataclass(frozen=True, slots=True)
class AuditRule:
    category: str
    label: str
    pattern: re.Pattern[str]
    skip_tests: bool = False


AUDIT_RULES: tuple[AuditRule, ...] = (
    AuditRule("security", "dynamic code execution", re.compile(r"\b(eval|exec)\s*\(")),
    AuditRule(
        "security",
        "string-built SQL",
        re.compile(r"""\b(execute|query)\s*\(\s*(f["']|["'][^"']*["']\s*[%+])"""),
    ),
    AuditRule(
        "security",
        "hardcoded credential",
        re.compile(r"""\b(password|api_key|secret)\s*=\s*["'][^"']+["']""", re.IGNORECASE),
        skip_tests=True,
    ),
    AuditRule("security", "TLS verification disabled", re.compile(r"verify\s*=\s*False")),
    AuditRule("correctness", "bare except", re.compile(r"^\s*except\s*:")),
    AuditRule(
        "correctness", "mutable default argument", re.compile(r"def\s+\w+\(.*=\s*(\[\]|\{\})")
    ),
    AuditRule("correctness", "comparison to None with ==", re.compile(r"[!=]=\s*None\b")),
    AuditRule("architecture", "unresolved marker", re.compile(r"\b(TODO|HACK|KLUDGE|XXX)\b")),
)


@dataclass(slots=True)
class CheckResult:
    name: str
    passed: bool
    penalty: int
    detail: str


@dataclass(slots=True)
class ValidationResult:
    checks: list[CheckResult]
    score: int
    passed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "score": self.score,
            "checks": [asdict(check) for check in self.checks],
        }


@dataclass(slots=True)
class AuditResult:
    scores: dict[str, int]
    findings: dict[str, list[str]]
    files_scanned: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "scores": dict(self.scores),
            "findings": {key: list(value) for key, value in self.findings.items()},
            "files_scanned": self.files_scanned,
        }


@dataclass(slots=True)
class QualityScore:
    components: dict[str, float]
    overall_score: int
    gate_pass: bool
    threshold: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class CompletionVerdict:
    decision: CompletionDecision
    reasoning: str
    signals: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class GateVerdict:
    passed: bool
    validation: ValidationResult
    score: QualityScore

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "validation": self.validation.to_dict(),
            "score": self.score.to_dict(),
        }


@dataclass(slots=True)
class IterationRecord:
    iteration: int
    lines_changed: int
    tests_passing: bool
    stage: str = ""


def _is_test_path(path: Path) -> bool:
    lowered = path.as_posix().lower()
    return "test" in path.name.lower() or "/tests/" in f"/{lowered}" or "/spec/" in f"/{lowered}"


class QualityGate:
    """Scores the job's artifacts and working tree."""

    def __init__(
        self,
        env: Environment,
        config: QualityConfig | None = None,
        weights: WeightsConfig | None = None,
        *,
        workspace: GitWorkspace | None = None,
        semantic_auditor: SemanticAuditor | None = None,
        base_branch: str = "main",
    ) -> None:
        self.env = env
        self.base_branch = base_branch
        self.config = config or QualityConfig()
        self.weights = weights or WeightsConfig()
        self.workspace = workspace or GitWorkspace(env.paths.project_root)
        self.semantic_auditor = semantic_auditor
        self.artifacts_dir = env.paths.artifacts_dir

    def diff_base(self) -> str:
        """Ref the job's changes are measured against.

        An explicit ``quality.diff_base`` wins. Otherwise the merge-base with the
        base branch is used, so committed work on the job branch is included along
        with anything still uncommitted.
        """
        if self.config.diff_base:
            return self.config.diff_base
        return self.workspace.merge_base(self.base_branch) or "HEAD"

    def _failed_count(self) -> int | None:
        payload = read_json_or_default(self.artifacts_dir / "test-results.json", None)
        if not isinstance(payload, dict) or "failed_count" not in payload:
            return None
        try:
            return int(payload["failed_count"])
        except (TypeError, ValueError):
            return None

    def _coverage_pct(self) -> float | None:
        payload = read_json_or_default(self.artifacts_dir / "coverage.json", None)
        if not isinstance(payload, dict):
            return None
        raw = payload.get("pct", payload.get("coverage_percent"))
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return float(min(100, max(0, raw)))
        return None

    def collect_inputs(self) -> QualityInputs:
        return QualityInputs(
            failed_count=self._failed_count(),
            coverage_pct=self._coverage_pct(),
            dirty_paths=self.workspace.dirty_paths(),
            added_lines=self.workspace.added_lines(self.diff_base()),
        )

    def validate(self, inputs: QualityInputs | None = None) -> ValidationResult:
        inputs = inputs or self.collect_inputs()
        checks: list[CheckResult] = []
        for rule in VALIDATION_RULES:
            passed, detail = rule.check(inputs, self.config)
            checks.append(
                CheckResult(
                    name=rule.name,
                    passed=passed,
                    penalty=0 if passed else rule.penalty,
                    detail=detail,
                )
            )
        score = max(0, 100 - sum(check.penalty for check in checks))
        return ValidationResult(
            checks=checks, score=score, passed=all(check.passed for check in checks)
        )

    def _scan_targets(self) -> list[Path]:
        root = self.env.paths.project_root
        if self.workspace.git_enabled:
            candidates = [root / item for item in self.workspace.changed_files(self.diff_base())]
        else:
            candidates = [
                path
                for path in root.rglob("*")
                if not SKIPPED_DIRS.intersection(path.relative_to(root).parts)
            ]
        return sorted(
            path for path in candidates if path.is_file() and path.suffix in SOURCE_SUFFIXES
        )

    def audit(self) -> AuditResult:
        root = self.env.paths.project_root
        targets = self._scan_targets()
        findings: dict[str, list[str]] = {category: [] for category in AUDIT_CATEGORIES}
        for path in targets:
            if path.stat().st_size > MAX_SCAN_BYTES:
                continue
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                continue
            relative = path.relative_to(root).as_posix()
            is_test = _is_test_path(path.relative_to(root))
            for number, line in enumerate(lines, start=1):
                for rule in AUDIT_RULES:
                    if rule.skip_tests and is_test:
                        continue
                    if rule.pattern.search(line):
                        findings[rule.category].append(f"{relative}:{number}: {rule.label}")

        if self.semantic_auditor is not None:
            for category, extra in self.semantic_auditor(targets).items():
                if category in findings:
                    findings[category].extend(extra)

        scores = {
            category: max(0, 100 - self.config.audit_penalty * len(items))
            for category, items in findings.items()
        }
        return AuditResult(scores=scores, findings=findings, files_scanned=len(targets))

    def score(
        self, inputs: QualityInputs | None = None, audit: AuditResult | None = None
    ) -> QualityScore:
        inputs = inputs or self.collect_inputs()
        audit = audit or self.audit()
        components: dict[str, float] = {
            "test_pass": 100.0 if inputs.failed_count == 0 else 0.0,
            "coverage": inputs.coverage_pct if inputs.coverage_pct is not None else 0.0,
            "security": float(audit.scores["security"]),
            "architecture": float(audit.scores["architecture"]),
            "correctness": float(audit.scores["correctness"]),
        }
        weights = self.weights.as_dict()
        total_weight = sum(weights.values())
        weighted = sum(components[name] * weight for name, weight in weights.items())
        overall = int(round(weighted / total_weight))
        return QualityScore(
            components=components,
            overall_score=overall,
            gate_pass=overall >= self.config.gate_threshold,
            threshold=self.config.gate_threshold,
        )

    def gate(self) -> GateVerdict:
        inputs = self.collect_inputs()
        validation = self.validate(inputs)
        score = self.score(inputs)
        verdict = GateVerdict(
            passed=validation.passed and score.gate_pass, validation=validation, score=score
        )
        logger.info(
            "quality_gate",
            passed=verdict.passed,
            validation_passed=validation.passed,
            overall_score=score.overall_score,
        )
        return verdict

    def iteration_history(self) -> list[IterationRecord]:
        payload = read_json_or_default(self.env.paths.iterations_file, [])
        if not isinstance(payload, list):
            return []
        history: list[IterationRecord] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            history.append(
                IterationRecord(
                    iteration=int(item.get("iteration") or 0),
                    lines_changed=int(item.get("lines_changed") or 0),
                    tests_passing=item.get("tests_passing") is True,
                    stage=str(item.get("stage") or ""),
                )
            )
        return history

    def completion(
        self,
        history: list[IterationRecord] | None = None,
        goal_text: str | None = None,
    ) -> CompletionVerdict:
        if history is None:
            history = self.iteration_history()
        if goal_text is None:
            goal_file = self.artifacts_dir / "goal.md"
            goal_text = goal_file.read_text(encoding="utf-8") if goal_file.exists() else ""

        if history:
            tests_passing = history[-1].tests_passing
        else:
            tests_passing = self._failed_count() == 0
        tests_transitioned = tests_passing and any(not item.tests_passing for item in history[:-1])
        recent = history[-DIMINISHING_WINDOW:]
        diminishing = len(recent) == DIMINISHING_WINDOW and all(
            item.lines_changed < DIMINISHING_LINES for item in recent
        )
        open_subtasks = len(UNCHECKED_SUBTASK.findall(goal_text))
        subtasks_done = open_subtasks == 0
        signals = {
            "iterations": len(history),
            "tests_passing": tests_passing,
            "tests_transitioned": tests_transitioned,
            "diminishing_returns": diminishing,
            "open_subtasks": open_subtasks,
        }

        if tests_passing and subtasks_done:
            reasoning = "Tests are passing and every subtask is checked off."
            if tests_transitioned:
                reasoning = "Tests moved from failing to passing and every subtask is checked off."
            return CompletionVerdict("complete", reasoning, signals)
        if diminishing and subtasks_done:
            return CompletionVerdict(
                "complete", "Recent iterations change little and subtasks are done.", signals
            )
        if diminishing and not tests_passing:
            return CompletionVerdict(
                "escalate",
                f"Last {DIMINISHING_WINDOW} iterations changed under {DIMINISHING_LINES} lines "
                "each and tests still fail.",
                signals,
            )
        if not tests_passing:
            reasoning = "Tests still failing; keep iterating."
        else:
            reasoning = f"{open_subtasks} subtask(s) still open."
        return CompletionVerdict("continue", reasoning, signals)

    def report(self) -> dict[str, Path]:
        inputs = self.collect_inputs()
        validation = self.validate(inputs)
        audit = self.audit()
        score = self.score(inputs, audit)
        generated_at = self.env.now_iso()
        payload = {
            "generated_at": generated_at,
            "validation": validation.to_dict(),
            "audit": audit.to_dict(),
            "score": score.to_dict(),
        }
        json_path = self.artifacts_dir / "quality-report.json"
        markdown_path = self.artifacts_dir / "quality-report.md"
        atomic_write_json(json_path, payload)

        def _block(data: dict[str, Any]) -> str:
            return "```json\n" + json.dumps(data, ensure_ascii=False, indent=2) + "\n```"

        markdown = "\n".join(
            [
                "# Quality Report",
                "",
                f"Generated: {generated_at}",
                "",
                "## Validation",
                _block(validation.to_dict()),
                "",
                "## Audit",
                _block(audit.to_dict()),
                "",
                "## Score",
                _block(score.to_dict()),
                "",
                "## Summary",
                f"Overall score: {score.overall_score}/100 "
                f"(threshold: {score.threshold}) - "
                f"{'PASS' if score.gate_pass and validation.passed else 'FAIL'}",
                "",
            ]
        )
        atomic_write_text(markdown_path, markdown)
        return {"json": json_path, "markdown": markdown_path}
