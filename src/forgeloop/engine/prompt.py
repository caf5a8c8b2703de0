"""Per-iteration prompt built from the workspace plan file."""

from __future__ import annotations

from pathlib import Path

from forgeloop.runtime.store import StateStore

PLAN_FILE = "plan.md"
MAX_PENDING_ITEMS = 80

PROMPT_RULES = "\n".join(
    [
        "You are continuing an iterative execution loop.",
        "Continue from current workspace state. Do NOT redo completed checklist items.",
        "Inspect only files needed for the current pending task.",
        "Apply small, verifiable steps and run only targeted validations per step.",
        (
            "When every pending item is done, print a completion indicator such as"
            " `STATUS: COMPLETE` and `EXIT_SIGNAL: true`."
        ),
        "Emit `EXIT_SIGNAL: true` only when all pending checklist items are complete.",
    ]
)


def build_plan_prompt(runtime_dir: str | Path) -> str | None:
    plan_path = Path(runtime_dir) / PLAN_FILE
    try:
        plan = plan_path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError):
        return None
    if not plan:
        return None

    pending = [line.strip() for line in plan.splitlines() if "- [ ]" in line][:MAX_PENDING_ITEMS]
    if pending:
        pending_block = "Unchecked checklist items (execute only what is still pending):\n" + "\n".join(
            pending
        )
    else:
        pending_block = (
            "No explicit unchecked checklist items found; continue from current repo state"
            " and finalize remaining plan work."
        )

    last_summary = StateStore(runtime_dir).load_progress().last_summary.strip()
    continuity = f"Last loop summary: {last_summary}" if last_summary else "Last loop summary: (none)"

    return "\n\n".join(
        [PROMPT_RULES, continuity, pending_block, f"Plan source: {plan_path.name}"]
    )
