#!/usr/bin/env python3
"""Tool port used inside agent loops, plus read-only project analysis tools.

The analysis tools back the Lead Analyzer: they let the model look at the
layout, languages, dependency manifests and tooling configs of the project
before it picks teams. None of them write to disk or spawn processes.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

from team_errors import AgentCancelled

if TYPE_CHECKING:
    from cancellation import CancelSignal


ToolHandler = Callable[[dict[str, Any]], Union[str, Awaitable[str]]]

DEFAULT_EXCLUDES = ("node_modules", ".git", "dist", "build", "__pycache__", ".venv", "target")
MAX_SCANNED_FILES = 5000


@dataclass(frozen=True)
class ToolResult:
    content: str
    is_error: bool = False


@dataclass(frozen=True)
class AgentTool:
    name: str
    description: str
    handler: ToolHandler
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    async def execute(self, args: dict[str, Any], signal: "CancelSignal | None" = None) -> ToolResult:
        """Run the handler; failures come back as error results, cancellation raises.

        Plain functions run in a worker thread, off the event loop.
        """
        if signal is not None:
            signal.raise_if_cancelled()
        try:
            if inspect.iscoroutinefunction(self.handler):
                value = self.handler(dict(args or {}))
            else:
                value = asyncio.to_thread(self.handler, dict(args or {}))
            value = await (signal.race(value) if signal is not None else value)
            if inspect.isawaitable(value):
                value = await (signal.race(value) if signal is not None else value)
        except (AgentCancelled, asyncio.CancelledError):
            raise
        except Exception as exc:
            return ToolResult(content=f"{self.name} failed: {exc}", is_error=True)
        return ToolResult(content=str(value))

    def describe(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


def _iter_files(root: Path, excludes: tuple[str, ...]):
    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in excludes)
        yield Path(current), dirs, files


def analyze_project_structure(root: Path, max_depth: int = 4, exclude: tuple[str, ...] = DEFAULT_EXCLUDES) -> str:
    total_files = 0
    tree_dirs: list[str] = []
    for current, dirs, files in _iter_files(root, exclude):
        total_files += len(files)
        rel = current.relative_to(root)
        if rel.parts and len(rel.parts) <= max_depth:
            tree_dirs.append(rel.as_posix())
        if total_files > MAX_SCANNED_FILES:
            break
    top_level = sorted(p.name for p in root.iterdir() if p.is_dir() and p.name not in exclude)

    lines = ["."]
    for rel in sorted(tree_dirs)[:100]:
        lines.append("  " * rel.count("/") + "  " + rel.rsplit("/", 1)[-1] + "/")
    if len(tree_dirs) > 100:
        lines.append(f"  ... and {len(tree_dirs) - 100} more directories")

    return "\n".join(
        [
            "## Project Structure",
            "",
            f"**Files:** {total_files} | **Directories:** {len(tree_dirs)}",
            "",
            "### Top-Level Layout",
            *[f"- {name}/" for name in top_level],
            "",
            f"### Directory Tree (depth {max_depth})",
            "```",
            *lines,
            "```",
        ]
    )


LANGUAGE_BY_EXT = {
    "ts": "TypeScript",
    "tsx": "TypeScript",
    "js": "JavaScript",
    "jsx": "JavaScript",
    "py": "Python",
    "go": "Go",
    "rs": "Rust",
    "rb": "Ruby",
    "java": "Java",
    "kt": "Kotlin",
    "swift": "Swift",
    "cs": "C#",
    "cpp": "C++",
    "c": "C",
    "php": "PHP",
    "scala": "Scala",
    "ex": "Elixir",
    "exs": "Elixir",
    "vue": "Vue",
    "svelte": "Svelte",
}

FRAMEWORK_MARKERS = (
    (("next.config.js", "next.config.ts", "next.config.mjs"), "Next.js"),
    (("angular.json",), "Angular"),
    (("vite.config.ts", "vite.config.js"), "Vite"),
    (("tailwind.config.js", "tailwind.config.ts"), "Tailwind CSS"),
    (("prisma/schema.prisma",), "Prisma"),
    (("docker-compose.yml", "docker-compose.yaml"), "Docker Compose"),
    (("Dockerfile",), "Docker"),
    ((".github/workflows",), "GitHub Actions"),
    (("jest.config.js", "jest.config.ts"), "Jest"),
    (("vitest.config.ts",), "Vitest"),
    (("playwright.config.ts",), "Playwright"),
    (("manage.py",), "Django"),
    (("pytest.ini", "conftest.py"), "pytest"),
)

JS_FRAMEWORK_DEPS = {
    "react": "React",
    "vue": "Vue",
    "svelte": "Svelte",
    "express": "Express",
    "@nestjs/core": "NestJS",
    "fastify": "Fastify",
    "electron": "Electron",
}


def detect_languages(root: Path) -> tuple[list[tuple[str, int]], list[str]]:
    counts: dict[str, int] = {}
    scanned = 0
    for _, _, files in _iter_files(root, DEFAULT_EXCLUDES):
        for name in files:
            lang = LANGUAGE_BY_EXT.get(name.rsplit(".", 1)[-1].lower()) if "." in name else None
            if lang:
                counts[lang] = counts.get(lang, 0) + 1
        scanned += len(files)
        if scanned > MAX_SCANNED_FILES:
            break

    frameworks: list[str] = []
    package_json = _read_json(root / "package.json")
    if isinstance(package_json, dict):
        deps = {**(package_json.get("dependencies") or {}), **(package_json.get("devDependencies") or {})}
        for dep, label in JS_FRAMEWORK_DEPS.items():
            if dep in deps:
                frameworks.append(label)
    for markers, label in FRAMEWORK_MARKERS:
        if label not in frameworks and any((root / marker).exists() for marker in markers):
            frameworks.append(label)

    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return ranked, frameworks


def analyze_languages(root: Path) -> str:
    ranked, frameworks = detect_languages(root)
    total = sum(count for _, count in ranked)
    sections = ["## Language & Framework Analysis", "", "### Languages"]
    for lang, count in ranked:
        pct = (count / total * 100) if total else 0.0
        sections.append(f"- **{lang}**: {count} files ({pct:.1f}%)")
    if frameworks:
        sections.extend(["", "### Frameworks & Tools", *[f"- {fw}" for fw in frameworks]])
    sections.extend(["", f"**Primary Language:** {ranked[0][0] if ranked else 'Unknown'}"])
    return "\n".join(sections)


def _read_json(path: Path) -> Any:
    if not path.is_file():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return ""


def _parse_package_json(text: str) -> dict[str, str]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {}
    return dict(data.get("dependencies") or {}) if isinstance(data, dict) else {}


def _parse_go_mod(text: str) -> dict[str, str]:
    block = re.search(r"require\s*\(([\s\S]*?)\)", text)
    deps: dict[str, str] = {}
    for line in (block.group(1).splitlines() if block else []):
        match = re.match(r"^\s*(\S+)\s+(\S+)", line)
        if match:
            deps[match.group(1)] = match.group(2)
    return deps


def _parse_pyproject(text: str) -> dict[str, str]:
    block = re.search(r"^dependencies\s*=\s*\[([\s\S]*?)\]", text, flags=re.MULTILINE)
    deps: dict[str, str] = {}
    for spec in re.findall(r"\"([^\"]+)\"", block.group(1) if block else ""):
        deps[re.split(r"[<>=!~\[;\s]", spec, maxsplit=1)[0]] = spec
    return deps


def _parse_requirements(text: str) -> dict[str, str]:
    deps: dict[str, str] = {}
    for line in text.splitlines():
        token = line.split("#", 1)[0].strip()
        if token and not token.startswith("-"):
            deps[re.split(r"[<>=!~\[;\s]", token, maxsplit=1)[0]] = token
    return deps


def _parse_cargo(text: str) -> dict[str, str]:
    block = re.search(r"\[dependencies\]([\s\S]*?)(?=^\[|\Z)", text, flags=re.MULTILINE)
    deps: dict[str, str] = {}
    for line in (block.group(1).splitlines() if block else []):
        match = re.match(r"^([^=\s]+)\s*=\s*\"?([^\"\n]+)\"?", line)
        if match:
            deps[match.group(1)] = match.group(2)
    return deps


def _parse_gemfile(text: str) -> dict[str, str]:
    return {name: "*" for name in re.findall(r"gem\s+['\"]([^'\"]+)['\"]", text)}


DEPENDENCY_MANIFESTS = (
    ("package.json", "npm", _parse_package_json),
    ("go.mod", "go", _parse_go_mod),
    ("pyproject.toml", "python", _parse_pyproject),
    ("requirements.txt", "python", _parse_requirements),
    ("Cargo.toml", "rust", _parse_cargo),
    ("Gemfile", "ruby", _parse_gemfile),
)


def analyze_dependencies(root: Path) -> str:
    sections = ["## Dependencies Analysis", ""]
    found = 0
    for filename, ecosystem, parser in DEPENDENCY_MANIFESTS:
        path = root / filename
        if not path.is_file():
            continue
        deps = parser(_read_text(path))
        found += 1
        sections.append(f"### {ecosystem.upper()} ({filename})")
        sections.append(f"**Dependencies:** {len(deps)}")
        items = list(deps.items())
        if items:
            sections.append("**Key Dependencies:**")
            sections.extend(f"- {name}: {version}" for name, version in items[:20])
            if len(items) > 20:
                sections.append(f"- ... and {len(items) - 20} more")
        sections.append("")
    if not found:
        sections.append("No recognized dependency files found.")
    return "\n".join(sections).rstrip()


CONFIG_FILES = (
    (".eslintrc.json", "linting"),
    ("eslint.config.js", "linting"),
    ("biome.json", "linting"),
    (".pylintrc", "linting"),
    (".flake8", "linting"),
    ("ruff.toml", "linting"),
    (".prettierrc", "formatting"),
    (".editorconfig", "formatting"),
    ("tsconfig.json", "types"),
    ("pyrightconfig.json", "types"),
    ("mypy.ini", "types"),
    ("jest.config.js", "testing"),
    ("vitest.config.ts", "testing"),
    ("pytest.ini", "testing"),
    ("tox.ini", "testing"),
    ("vite.config.ts", "build"),
    ("webpack.config.js", "build"),
    ("Makefile", "build"),
    (".gitlab-ci.yml", "ci"),
    (".circleci/config.yml", "ci"),
    ("Jenkinsfile", "ci"),
)

CONFIG_LABELS = {
    "linting": "Linting",
    "formatting": "Formatting",
    "types": "Type Checking",
    "testing": "Testing",
    "build": "Build",
    "ci": "CI/CD",
}


def _summarize_tsconfig(path: Path) -> str:
    data = _read_json(path)
    options = data.get("compilerOptions") if isinstance(data, dict) else None
    if not isinstance(options, dict):
        return ""
    parts = ["strict"] if options.get("strict") else []
    for key in ("target", "module"):
        if options.get(key):
            parts.append(f"{key}: {options[key]}")
    return ", ".join(parts)


def analyze_configs(root: Path, config_types: list[str] | None = None) -> str:
    wanted = set(config_types or ["all"])
    categories: dict[str, list[str]] = {key: [] for key in CONFIG_LABELS}
    for filename, category in CONFIG_FILES:
        if "all" not in wanted and category not in wanted:
            continue
        path = root / filename
        if not path.exists():
            continue
        summary = _summarize_tsconfig(path) if filename == "tsconfig.json" else ""
        categories[category].append(f"- **{filename}**: {summary}" if summary else f"- {filename}")

    workflows = root / ".github" / "workflows"
    if workflows.is_dir() and ("all" in wanted or "ci" in wanted):
        names = sorted(p.name for p in workflows.iterdir() if p.is_file())
        if names:
            categories["ci"].append(f"- **.github/workflows/**: {len(names)} workflows: {', '.join(names)}")

    sections = ["## Configuration Analysis", ""]
    for category, items in categories.items():
        if items:
            sections.extend([f"### {CONFIG_LABELS[category]}", *items, ""])
    if not any(categories.values()):
        sections.append("No configuration files found.")
    return "\n".join(sections).rstrip()


def project_analyzer_tools(root: Path | str) -> tuple[AgentTool, ...]:
    base = Path(root).resolve()

    def structure(args: dict[str, Any]) -> str:
        depth = args.get("maxDepth", args.get("max_depth", 4))
        excludes = tuple(args.get("excludePatterns") or DEFAULT_EXCLUDES)
        return analyze_project_structure(base, max_depth=int(depth), exclude=excludes)

    return (
        AgentTool(
            name="analyze_project_structure",
            description="Scan project file structure. Returns directory tree, file counts and top-level layout.",
            handler=structure,
            parameters={
                "type": "object",
                "properties": {
                    "maxDepth": {"type": "integer", "description": "Maximum directory depth (default 4)"},
                    "excludePatterns": {"type": "array", "items": {"type": "string"}},
                },
            },
        ),
        AgentTool(
            name="analyze_dependencies",
            description="List dependencies from package.json, go.mod, pyproject.toml, requirements.txt, Cargo.toml, Gemfile.",
            handler=lambda args: analyze_dependencies(base),
        ),
        AgentTool(
            name="analyze_languages",
            description="Detect programming languages and frameworks from file extensions and config files.",
            handler=lambda args: analyze_languages(base),
        ),
        AgentTool(
            name="analyze_configs",
            description="Summarize linting, formatting, type checking, testing, build and CI configuration files.",
            handler=lambda args: analyze_configs(base, args.get("configTypes")),
            parameters={
                "type": "object",
                "properties": {"configTypes": {"type": "array", "items": {"type": "string"}}},
            },
        ),
    )


def describe_project(root: Path | str) -> str:
    """Short project context block for prompts: primary languages and frameworks."""
    base = Path(root).resolve()
    ranked, frameworks = detect_languages(base)
    lines = [f"Project root: {base.name or base}"]
    if ranked:
        lines.append("Languages: " + ", ".join(f"{lang} ({count})" for lang, count in ranked[:5]))
    if frameworks:
        lines.append("Frameworks: " + ", ".join(frameworks))
    manifests = [name for name, _, _ in DEPENDENCY_MANIFESTS if (base / name).is_file()]
    if manifests:
        lines.append("Manifests: " + ", ".join(manifests))
    return "\n".join(lines)
