import re

from foreman.branches import branch_name, detect_task_type, sanitize

SLUG = re.compile(r"^[a-z0-9-]*$")


def test_branch_name_for_dependency_upgrade() -> None:
    assert branch_name("Update lodash to 4.17.21!") == "fix/update-lodash-to-4-17-21"


def test_sanitize_output_is_slug_and_idempotent() -> None:
    samples = [
        "Add OAuth2 login (Google + GitHub)!",
        "  leading and trailing  ",
        "Émojis 🚀 and ünïcode",
        "a" * 80,
        "---",
        "Fix: crash when PATH has spaces / tabs\t",
    ]
    for sample in samples:
        slug = sanitize(sample)
        assert SLUG.match(slug)
        assert len(slug) <= 50
        assert not slug.startswith("-") and not slug.endswith("-")
        assert sanitize(slug) == slug


def test_truncation_does_not_leave_trailing_dash() -> None:
    slug = sanitize("abcd efgh", max_length=5)

    assert slug == "abcd"


def test_empty_goal_falls_back_to_task_slug() -> None:
    assert branch_name("!!!") == "fix/task"


def test_auto_prefix_uses_detected_task_type() -> None:
    assert detect_task_type("Refactor the session cache") == "refactor"
    assert detect_task_type("Add dark mode toggle") == "feature"
    assert branch_name("Refactor the session cache", prefix="auto") == "refactor/refactor-the-session-cache"
    assert branch_name("Add dark mode toggle", prefix="auto") == "feat/add-dark-mode-toggle"
