"""File planning and user-facing messages for generated apps."""

from __future__ import annotations

import posixpath
import re

from .schemas import FileSpec, Requirements

EXTENSION_MAP = {
    ".js": "javascript",
    ".jsx": "jsx",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".css": "css",
    ".scss": "scss",
    ".less": "less",
    ".html": "html",
    ".htm": "html",
    ".json": "json",
    ".md": "markdown",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".xml": "xml",
    ".svg": "svg",
    ".py": "python",
    ".rb": "ruby",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".sh": "shell",
    ".bash": "shell",
    ".sql": "sql",
    ".graphql": "graphql",
    ".gql": "graphql",
    ".env": "dotenv",
    ".toml": "toml",
    ".ini": "ini",
    ".dockerfile": "dockerfile",
    ".prisma": "prisma",
}

SPECIAL_FILENAMES = {
    "dockerfile": "dockerfile",
    "makefile": "makefile",
    ".gitignore": "gitignore",
    ".dockerignore": "gitignore",
    ".env": "dotenv",
    ".env.example": "dotenv",
    ".env.local": "dotenv",
}

ENV_EXAMPLE_PATH = ".env.example"


def infer_language(path: str) -> str:
    """Language tag for ``path``, ``text`` when unknown."""
    if not path:
        return "text"
    basename = posixpath.basename(path).lower()
    if basename in SPECIAL_FILENAMES:
        return SPECIAL_FILENAMES[basename]
    _, ext = posixpath.splitext(basename)
    return EXTENSION_MAP.get(ext, "text")


def _component_name(name: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9]", "", name)
    return sanitized[:1].upper() + sanitized[1:]


def build_file_plan(requirements: Requirements) -> list[FileSpec]:
    """Files generated one by one after the scaffold."""
    plan: list[FileSpec] = []

    if not requirements.is_react:
        for page in requirements.pages:
            plan.append(FileSpec(path=f"src/pages/{page.name}", description=f"{page.name} page"))
        return plan

    plan.extend(
        [
            FileSpec(path="src/main.jsx", description="Application entry point", language="jsx"),
            FileSpec(path="src/App.jsx", description="Root App component with routing", language="jsx"),
            FileSpec(path="src/index.css", description="Global styles", language="css"),
        ]
    )
    for page in requirements.pages:
        plan.append(
            FileSpec(
                path=f"src/pages/{_component_name(page.name)}.jsx",
                description=f"{page.name} page component",
                language="jsx",
            )
        )
    for comp in requirements.components:
        plan.append(
            FileSpec(
                path=f"src/components/{_component_name(comp.name)}.jsx",
                description=f"{comp.name} shared component",
                language="jsx",
            )
        )
    if requirements.has_data_layer:
        plan.append(
            FileSpec(
                path="src/services/api.js",
                description="API service layer for data fetching",
                language="javascript",
            )
        )
    if requirements.needs_auth:
        plan.append(
            FileSpec(
                path="src/components/AuthProvider.jsx",
                description="Authentication context provider",
                language="jsx",
            )
        )

    unique: dict[str, FileSpec] = {}
    for spec in plan:
        unique.setdefault(spec.path, spec)
    return list(unique.values())


def build_config_specs(requirements: Requirements) -> list[FileSpec]:
    """``.env.example`` and ``README.md``, generated in one batch."""
    env_vars = ", ".join(requirements.env_vars_needed) or "none"
    return [
        FileSpec(
            path=ENV_EXAMPLE_PATH,
            description=f"Environment variables template. Required vars: {env_vars}",
            language="dotenv",
        ),
        FileSpec(
            path="README.md",
            description=(
                f"Project README for {requirements.app_name or 'the application'}. "
                f"Description: {requirements.description or 'A web application'}"
            ),
            language="markdown",
        ),
    ]


def append_env_vars(content: str, env_vars: list[str]) -> str | None:
    """Return ``.env.example`` content with missing variables appended, or None if nothing is new."""
    existing = {line.split("=", 1)[0].strip() for line in content.splitlines() if "=" in line}
    new_vars = [v for v in dict.fromkeys(env_vars) if v not in existing]
    if not new_vars:
        return None
    additions = "\n".join(f"{v}=" for v in new_vars)
    return f"{content.rstrip()}\n\n# Added during iteration\n{additions}\n"


def requirements_summary(requirements: Requirements) -> str:
    parts = [f"I'll build a **{requirements.app_name or 'new app'}** for you."]
    parts.append(f"\n\n**Framework:** {requirements.framework}")
    if requirements.description:
        parts.append(f"\n\n**What it does:** {requirements.description}")
    if requirements.pages:
        page_list = "\n".join(f"- {page.name}" for page in requirements.pages)
        parts.append(f"\n\n**Pages:**\n{page_list}")
    if requirements.features:
        feature_list = "\n".join(f"- {feature}" for feature in requirements.features)
        parts.append(f"\n\n**Features:**\n{feature_list}")
    parts.append("\n\nLet me start building this for you...")
    return "".join(parts)


def completion_message(requirements: Requirements, files_created: int) -> str:
    lines = [
        f"{requirements.app_name or 'Your app'} is ready! Here's what I built:\n",
        f"- **Framework:** {requirements.framework}",
        f"- **Files created:** {files_created}",
    ]
    if requirements.pages:
        lines.append(f"- **Pages:** {len(requirements.pages)}")
    if requirements.features:
        lines.append(f"- **Features:** {', '.join(requirements.features)}")
    lines.append("\nYou can preview the app or ask me to make changes.")
    return "\n".join(lines)


def iteration_message(summary: str, files_changed: int, remaining_errors: list[str] | None = None) -> str:
    message = f"I've updated your app. Here's what changed:\n\n{summary}\n\n{files_changed} file(s) were modified."
    if remaining_errors:
        shown = "\n".join(f"- {e}" for e in remaining_errors[:10])
        extra = len(remaining_errors) - 10
        if extra > 0:
            shown += f"\n- ...and {extra} more"
        message += (
            "\n\nI couldn't automatically resolve every issue. "
            f"These problems may still need attention:\n{shown}"
        )
    return message


def failure_message(error: BaseException | str) -> str:
    return f"Sorry, the build failed: {error}"
