"""Built-in stages, workflow templates, parallel groups and event types."""

from __future__ import annotations

from typing import Any, Dict

from .models import StageKind

STAGES: Dict[str, Dict[str, Any]] = {
    "PLAN": {"label": "Plan", "icon": "📋", "executor": "planner", "kind": StageKind.PLANNING, "color": "purple"},
    "ARCH": {"label": "Architecture", "icon": "🏗️", "executor": "architect", "kind": StageKind.PLANNING, "color": "cyan"},
    "DESIGN": {"label": "Design", "icon": "🎨", "executor": "designer", "kind": StageKind.PLANNING, "color": "cyan"},
    "DEV": {"label": "Develop", "icon": "💻", "executor": "developer", "kind": StageKind.BUILD, "color": "yellow"},
    "DEBUG": {"label": "Debug", "icon": "🔧", "executor": "debugger", "kind": StageKind.OTHER, "color": "orange"},
    "REVIEW": {"label": "Review", "icon": "🔍", "executor": "code-reviewer", "kind": StageKind.REVIEW, "color": "blue"},
    "TEST": {"label": "Test", "icon": "🧪", "executor": "tester", "kind": StageKind.VERIFICATION, "color": "pink"},
    "SECURITY": {"label": "Security", "icon": "🛡️", "executor": "security-reviewer", "kind": StageKind.REVIEW, "color": "red"},
    "DB-REVIEW": {"label": "DB Review", "icon": "🗄️", "executor": "database-reviewer", "kind": StageKind.REVIEW, "color": "red"},
    "QA": {"label": "QA", "icon": "🏁", "executor": "qa", "kind": StageKind.VERIFICATION, "color": "yellow"},
    "E2E": {"label": "E2E", "icon": "🌐", "executor": "e2e-runner", "kind": StageKind.VERIFICATION, "color": "green"},
    "BUILD-FIX": {"label": "Build Fix", "icon": "🔨", "executor": "build-error-resolver", "kind": StageKind.VERIFICATION, "color": "orange"},
    "REFACTOR": {"label": "Refactor", "icon": "🧹", "executor": "refactor-cleaner", "kind": StageKind.OTHER, "color": "blue"},
    "DOCS": {"label": "Docs", "icon": "📝", "executor": "doc-updater", "kind": StageKind.DOCUMENTATION, "color": "purple"},
    "RETRO": {"label": "Retrospective", "icon": "🔁", "executor": "retrospective", "kind": StageKind.RETROSPECTIVE, "color": "purple"},
    "PM": {"label": "Product", "icon": "🧭", "executor": "product-manager", "kind": StageKind.ADVISORY, "color": "green"},
}

# A stage repeated in a template (TEST before and after DEV) becomes TEST, TEST:2.
WORKFLOWS: Dict[str, Dict[str, Any]] = {
    "single": {"label": "Single change", "stages": ["DEV"]},
    "quick": {
        "label": "Quick feature",
        "stages": ["DEV", "REVIEW", "TEST", "RETRO"],
        "parallel_groups": ["quality"],
    },
    "standard": {
        "label": "Standard feature",
        "stages": ["PLAN", "ARCH", "TEST", "DEV", "REVIEW", "TEST", "RETRO", "DOCS"],
        "parallel_groups": ["quality"],
    },
    "full": {
        "label": "Full feature",
        "stages": ["PLAN", "ARCH", "DESIGN", "TEST", "DEV", "REVIEW", "TEST", "QA", "E2E", "RETRO", "DOCS"],
        "parallel_groups": ["quality", "verify"],
    },
    "secure": {
        "label": "High risk",
        "stages": ["PLAN", "ARCH", "TEST", "DEV", "REVIEW", "TEST", "SECURITY", "RETRO", "DOCS"],
        "parallel_groups": ["secure-quality"],
    },
    "tdd": {"label": "Test driven", "stages": ["TEST", "DEV", "TEST"]},
    "debug": {"label": "Debug", "stages": ["DEBUG", "DEV", "TEST"]},
    "refactor": {
        "label": "Refactor",
        "stages": ["ARCH", "TEST", "DEV", "REVIEW", "TEST"],
        "parallel_groups": ["quality"],
    },
    "review-only": {"label": "Review only", "stages": ["REVIEW"]},
    "security-only": {"label": "Security scan", "stages": ["SECURITY"]},
    "build-fix": {"label": "Build fix", "stages": ["BUILD-FIX"]},
    "e2e-only": {"label": "E2E only", "stages": ["E2E"]},
    "diagnose": {"label": "Diagnose", "stages": ["DEBUG"]},
    "clean": {"label": "Cleanup", "stages": ["REFACTOR"]},
    "db-review": {"label": "DB review", "stages": ["DB-REVIEW"]},
    "product": {"label": "Product discovery", "stages": ["PM", "PLAN"]},
}

PARALLEL_GROUPS: Dict[str, list] = {
    "quality": ["REVIEW", "TEST"],
    "verify": ["QA", "E2E"],
    "secure-quality": ["REVIEW", "TEST", "SECURITY"],
}

DEFAULTS: Dict[str, int] = {
    "max_retries": 3,
    "max_iterations": 100,
    "max_consecutive_errors": 3,
}

EVENTS: Dict[str, Dict[str, str]] = {
    "workflow:start": {"label": "Workflow started", "category": "workflow"},
    "workflow:complete": {"label": "Workflow completed", "category": "workflow"},
    "workflow:abort": {"label": "Workflow aborted", "category": "workflow"},
    "stage:start": {"label": "Stage started", "category": "stage"},
    "stage:complete": {"label": "Stage completed", "category": "stage"},
    "stage:retry": {"label": "Stage retry", "category": "stage"},
    "agent:delegate": {"label": "Executor delegated", "category": "agent"},
    "agent:complete": {"label": "Executor completed", "category": "agent"},
    "agent:error": {"label": "Executor error", "category": "agent"},
    "loop:start": {"label": "Loop started", "category": "loop"},
    "loop:advance": {"label": "Next iteration", "category": "loop"},
    "loop:complete": {"label": "Loop completed", "category": "loop"},
    "handoff:create": {"label": "Handoff created", "category": "handoff"},
    "parallel:start": {"label": "Parallel started", "category": "parallel"},
    "parallel:converge": {"label": "Parallel converged", "category": "parallel"},
    "error:fatal": {"label": "Fatal error", "category": "error"},
    "session:start": {"label": "Session started", "category": "session"},
    "session:end": {"label": "Session ended", "category": "session"},
    "system:warning": {"label": "System warning", "category": "system"},
}
