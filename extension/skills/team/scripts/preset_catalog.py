#!/usr/bin/env python3
"""Agent preset templates and built-in team definitions.

Templates are model-agnostic; `resolve_preset_by_name` binds one to a model
reference. Prompts only describe the role and the finding format the parser
expects.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from json_text import parse_json_text
from team_errors import TeamConfigError, UnknownTeamError
from team_models import EXECUTION_STRATEGIES, MERGE_STRATEGIES, AgentPreset, MergeConfig, TeamConfig


MERGE_AGENT_NAME = "merge-synthesizer"
LEAD_AGENT_NAME = "lead-analyzer"
THINKING_LEVELS = ("off", "minimal", "low", "medium", "high")

FINDING_FORMAT = """Report every issue as a block:

### Finding: <short title>
**Severity:** critical | high | medium | low | info
**Category:** security | bug | performance | style | maintainability | other
**File:** <path>
**Lines:** <start>-<end>
**Description:** <what is wrong>
**Suggestion:** <how to fix it>

Finish with a short summary paragraph."""


@dataclass(frozen=True)
class PresetTemplate:
    name: str
    description: str
    system_prompt: str = ""
    thinking_level: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None

    def to_preset(self, model: str, **overrides: Any) -> AgentPreset:
        prompt = self.system_prompt or f"You are the {self.name} agent. {self.description}.\n\n{FINDING_FORMAT}"
        return AgentPreset(
            name=self.name,
            model=model,
            system_prompt=prompt,
            description=self.description,
            temperature=overrides.get("temperature", self.temperature),
            max_tokens=overrides.get("max_tokens", self.max_tokens),
            thinking_level=overrides.get("thinking_level", self.thinking_level),
        )


@dataclass(frozen=True)
class TeamDefinition:
    name: str
    description: str
    agents: tuple[str, ...]
    strategy: str = "verification"


def _t(name: str, description: str, thinking: str, temperature: float) -> PresetTemplate:
    return PresetTemplate(name=name, description=description, thinking_level=thinking, temperature=temperature)


BUILTIN_TEMPLATES: tuple[PresetTemplate, ...] = (
    _t("requirements-elicitor", "Extract and clarify requirements, identify ambiguities, generate acceptance criteria", "high", 0.2),
    _t("context-analyzer", "Analyze existing codebase context, patterns, constraints, and integration points", "high", 0.2),
    _t("scope-guardian", "Define and protect scope boundaries, detect scope creep, identify out-of-scope items", "medium", 0.2),
    _t("research-synthesizer", "Research technologies, evaluate libraries, find prior art, synthesize best practices", "high", 0.3),
    _t("solution-architect", "Create high-level designs, component breakdowns, data flows, and integration strategies", "high", 0.3),
    _t("api-contract-designer", "Design API interfaces, contracts, schemas, and versioning strategies", "medium", 0.2),
    _t("data-modeler", "Design database schemas, data structures, relationships, and migration strategies", "high", 0.2),
    _t("system-integrator", "Plan system integrations, service dependencies, and third-party coordination", "high", 0.3),
    _t("task-orchestrator", "Decompose work into tasks, map dependencies, estimate effort, and sequence execution", "high", 0.2),
    _t("implementation-strategist", "Determine implementation approach, patterns, refactoring strategy, and migration planning", "high", 0.3),
    _t("code-generator", "Generate code from specifications, create scaffolds, boilerplate, and implementations", "medium", 0.2),
    _t("refactoring-advisor", "Identify refactoring opportunities, code smells, and suggest targeted improvements", "high", 0.3),
    _t("code-reviewer", "General code review focusing on bugs, logic errors, and best practices", "high", 0.3),
    _t("security-auditor", "Security review for vulnerabilities, OWASP Top 10 issues, CWE weaknesses, and attack surface", "high", 0.2),
    _t("privacy-auditor", "Privacy review for PII handling, data protection, GDPR/CCPA compliance, and data minimization", "high", 0.2),
    _t("perf-analyzer", "Performance-focused review identifying bottlenecks and optimization opportunities", "medium", 0.3),
    _t("concurrency-auditor", "Concurrency review for race conditions, deadlocks, thread safety, and async patterns", "high", 0.2),
    _t("error-handling-auditor", "Error handling review for resilience, fault tolerance, and recovery patterns", "medium", 0.3),
    _t("type-safety-auditor", "Type safety review identifying type holes, unsafe casts, and type design issues", "medium", 0.2),
    _t("test-coverage-auditor", "Test quality review identifying coverage gaps, missing edge cases, and test anti-patterns", "medium", 0.3),
    _t("architecture-auditor", "Architecture review analyzing design patterns, modularity, dependencies, and structural quality", "high", 0.3),
    _t("api-design-auditor", "API design review for REST/GraphQL/gRPC APIs, SDKs, and public interfaces", "medium", 0.3),
    _t("dependency-auditor", "Dependency review for security vulnerabilities, outdated packages, and dependency hygiene", "medium", 0.2),
    _t("accessibility-auditor", "Accessibility review for WCAG compliance, ARIA usage, and inclusive design patterns", "medium", 0.2),
    _t("i18n-auditor", "Internationalization review for i18n/l10n readiness, Unicode handling, and locale-aware code", "low", 0.3),
    _t("docs-auditor", "Documentation review for API docs, comments, README, and inline documentation", "low", 0.3),
    _t("test-strategist", "Design test strategies, coverage plans, test pyramids, and testing approaches", "high", 0.3),
    _t("test-case-designer", "Generate test cases from requirements, find edge cases, design test scenarios", "high", 0.3),
    _t("acceptance-verifier", "Validate implementation against acceptance criteria, verify requirement traceability", "high", 0.2),
    _t("regression-analyst", "Analyze change impact, identify regression risks, determine blast radius", "high", 0.3),
    _t("changelog-generator", "Generate release notes, changelogs, migration guides, and upgrade documentation", "medium", 0.3),
    _t("deployment-validator", "Validate deployment readiness, configuration, environment, and rollback plans", "high", 0.2),
    _t("release-coordinator", "Orchestrate release activities, validate gates, coordinate sign-offs, and track progress", "medium", 0.2),
    PresetTemplate(
        name=MERGE_AGENT_NAME,
        description="Verifies findings against code and synthesizes results from multiple reviewers",
        system_prompt=(
            "You verify findings reported by several reviewers. For each cluster decide whether the "
            "primary finding is verified, partial, invalid or a duplicate, following the answer format "
            "given in the request."
        ),
        thinking_level="high",
        temperature=0.2,
    ),
    PresetTemplate(
        name=LEAD_AGENT_NAME,
        description="Meta-orchestrator that analyzes requests and adaptively selects teams",
        system_prompt=(
            "You are the lead analyzer for code review and audit teams. Inspect the project with the "
            "analysis tools, pick the two to five most relevant teams, group them into execution waves, "
            "and end your answer with the JSON decision block described in the request."
        ),
        thinking_level="high",
        temperature=0.2,
    ),
)


def _team(name: str, description: str, agents: Sequence[str], strategy: str = "verification") -> TeamDefinition:
    return TeamDefinition(name=name, description=description, agents=tuple(agents), strategy=strategy)


BUILTIN_TEAMS: tuple[TeamDefinition, ...] = (
    # understand
    _team("understand", "Full requirements analysis: elicit, analyze context, guard scope",
          ["requirements-elicitor", "context-analyzer", "scope-guardian"]),
    _team("research", "Technology research and best practice synthesis",
          ["research-synthesizer", "context-analyzer"]),
    _team("kickoff", "Quick project kickoff: requirements, scope, initial architecture",
          ["requirements-elicitor", "scope-guardian", "solution-architect"]),
    # design
    _team("design", "Full design: architecture, API contracts, data modeling, integration",
          ["solution-architect", "api-contract-designer", "data-modeler", "system-integrator"]),
    _team("deep-design", "Deep design with context analysis",
          ["context-analyzer", "solution-architect", "api-contract-designer", "data-modeler"]),
    # implement
    _team("plan", "Implementation planning: task breakdown and strategy",
          ["task-orchestrator", "implementation-strategist"]),
    _team("implement", "Implementation guidance: code generation and refactoring advice",
          ["code-generator", "refactoring-advisor"]),
    _team("refactor", "Refactoring analysis with context and validation",
          ["context-analyzer", "refactoring-advisor", "test-coverage-auditor"]),
    # validate
    _team("code-review", "Comprehensive code review with multiple perspectives",
          ["code-reviewer", "security-auditor", "perf-analyzer"]),
    _team("full-audit", "Full-spectrum audit: security, privacy, types, architecture, errors",
          ["security-auditor", "privacy-auditor", "type-safety-auditor", "architecture-auditor",
           "error-handling-auditor"]),
    _team("validate", "Combined code review and full audit",
          ["code-reviewer", "security-auditor", "privacy-auditor", "type-safety-auditor",
           "architecture-auditor", "error-handling-auditor", "perf-analyzer"]),
    _team("security-audit", "Deep security and privacy analysis", ["security-auditor", "privacy-auditor"]),
    _team("security-deep", "Security-only deep dive (OWASP, CWE, attack surface)", ["security-auditor"], "union"),
    _team("performance", "Performance, concurrency, and error handling analysis",
          ["perf-analyzer", "concurrency-auditor", "error-handling-auditor"]),
    _team("quality", "Code quality: types, testing, error handling",
          ["type-safety-auditor", "test-coverage-auditor", "error-handling-auditor"]),
    _team("types", "Type safety analysis", ["type-safety-auditor"], "union"),
    _team("testing", "Test coverage and quality analysis", ["test-coverage-auditor"], "union"),
    _team("architecture", "Architecture, API design, and dependency analysis",
          ["architecture-auditor", "api-design-auditor", "dependency-auditor"]),
    _team("api-review", "API design review", ["api-design-auditor"], "union"),
    _team("frontend", "Frontend review: accessibility, i18n, performance",
          ["accessibility-auditor", "i18n-auditor", "perf-analyzer"]),
    _team("accessibility", "Accessibility (WCAG) audit", ["accessibility-auditor"], "union"),
    _team("docs", "Documentation completeness review", ["docs-auditor"], "union"),
    _team("dependencies", "Dependency health and security audit", ["dependency-auditor", "security-auditor"]),
    _team("quality-gate", "Quality checkpoint: code review, security, types, tests",
          ["code-reviewer", "security-auditor", "type-safety-auditor", "test-coverage-auditor"]),
    # verify
    _team("verify", "Full verification: test strategy, cases, acceptance, regression",
          ["test-strategist", "test-case-designer", "acceptance-verifier", "regression-analyst"]),
    _team("test-planning", "Test planning: strategy and case design", ["test-strategist", "test-case-designer"]),
    _team("acceptance", "Acceptance verification and regression analysis",
          ["acceptance-verifier", "regression-analyst"]),
    # deliver
    _team("deliver", "Full delivery: changelog, deployment validation, release coordination",
          ["changelog-generator", "deployment-validator", "release-coordinator"]),
    _team("pre-release", "Pre-release checklist: validation, verification, delivery readiness",
          ["security-auditor", "test-coverage-auditor", "acceptance-verifier", "deployment-validator"]),
    _team("release-prep", "Release preparation: changelog and deployment validation",
          ["changelog-generator", "deployment-validator"]),
    # cross-phase workflows
    _team("before-coding", "Pre-implementation: requirements, design, planning",
          ["requirements-elicitor", "scope-guardian", "solution-architect", "task-orchestrator"]),
    _team("after-coding", "Post-implementation: validation, verification, delivery",
          ["code-reviewer", "security-auditor", "acceptance-verifier", "changelog-generator"]),
    _team("quick-fix", "Quick bug fix workflow: context analysis and code review",
          ["context-analyzer", "code-reviewer", "test-coverage-auditor"]),
    _team("feature", "Feature development: understand, design, validate",
          ["requirements-elicitor", "solution-architect", "code-reviewer", "test-strategist"]),
    _team("greenfield", "New project setup: full requirements, research, and design",
          ["requirements-elicitor", "research-synthesizer", "solution-architect", "api-contract-designer"]),
    _team("maintenance", "Maintenance workflow: dependencies, refactoring, tests, changelog",
          ["dependency-auditor", "refactoring-advisor", "test-coverage-auditor", "changelog-generator"]),
    _team("full-cycle", "Full SDLC: one key agent from each phase",
          ["requirements-elicitor", "solution-architect", "task-orchestrator", "code-reviewer",
           "test-strategist", "changelog-generator"]),
)

BUILTIN_TEAM_NAMES: tuple[str, ...] = tuple(team.name for team in BUILTIN_TEAMS)

# Teams the lead analyzer may pick from.
LEAD_TEAM_NAMES: tuple[str, ...] = (
    "code-review",
    "full-audit",
    "validate",
    "security-audit",
    "security-deep",
    "performance",
    "quality",
    "types",
    "testing",
    "architecture",
    "api-review",
    "frontend",
    "accessibility",
    "docs",
    "dependencies",
    "quality-gate",
    "verify",
    "test-planning",
    "acceptance",
    "pre-release",
    "deliver",
    "release-prep",
    "before-coding",
    "after-coding",
    "quick-fix",
    "feature",
)


class PresetCatalog:
    def __init__(
        self,
        templates: Iterable[PresetTemplate] = BUILTIN_TEMPLATES,
        teams: Iterable[TeamDefinition] = BUILTIN_TEAMS,
    ) -> None:
        self.templates: dict[str, PresetTemplate] = {t.name: t for t in templates}
        self.teams: dict[str, TeamDefinition] = {t.name: t for t in teams}

    def team_names(self) -> list[str]:
        return list(self.teams)

    def template(self, name: str) -> PresetTemplate:
        try:
            return self.templates[name]
        except KeyError:
            raise KeyError(f"Unknown preset: {name}. Available: {', '.join(sorted(self.templates))}") from None

    def team(self, name: str) -> TeamDefinition:
        if name not in self.teams:
            raise UnknownTeamError(name, self.team_names())
        return self.teams[name]

    def validate(self) -> None:
        for team in self.teams.values():
            missing = [agent for agent in team.agents if agent not in self.templates]
            if missing:
                raise TeamConfigError(f"team {team.name!r} references unknown presets: {', '.join(missing)}")
            if team.strategy not in MERGE_STRATEGIES:
                raise TeamConfigError(f"team {team.name!r} has unknown merge strategy {team.strategy!r}")

    def merged_with(self, data: Mapping[str, Any]) -> "PresetCatalog":
        """New catalog with user presets and teams layered over this one."""
        templates = dict(self.templates)
        for raw in data.get("presets") or []:
            template = _template_from_mapping(raw)
            templates[template.name] = template
        teams = dict(self.teams)
        for raw in data.get("teams") or []:
            team = _team_from_mapping(raw)
            teams[team.name] = team
        catalog = PresetCatalog(templates.values(), teams.values())
        catalog.validate()
        return catalog

    @classmethod
    def from_json(cls, text: str, base: "PresetCatalog | None" = None) -> "PresetCatalog":
        try:
            data = parse_json_text(text)
        except ValueError as exc:
            raise TeamConfigError(f"invalid catalog JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise TeamConfigError("catalog JSON must be an object with 'presets' and/or 'teams'")
        return (base or cls()).merged_with(data)

    @classmethod
    def from_file(cls, path: Path, base: "PresetCatalog | None" = None) -> "PresetCatalog":
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise TeamConfigError(f"cannot read catalog {path}: {exc}") from exc
        return cls.from_json(text, base=base)


def _template_from_mapping(raw: Any) -> PresetTemplate:
    if not isinstance(raw, Mapping) or not str(raw.get("name") or "").strip():
        raise TeamConfigError(f"preset entry needs a name: {raw!r}")
    thinking = raw.get("thinkingLevel", raw.get("thinking_level"))
    if thinking is not None and thinking not in THINKING_LEVELS:
        raise TeamConfigError(f"preset {raw['name']!r}: invalid thinkingLevel {thinking!r}")
    temperature = raw.get("temperature")
    max_tokens = raw.get("maxTokens", raw.get("max_tokens"))
    return PresetTemplate(
        name=str(raw["name"]).strip(),
        description=str(raw.get("description") or ""),
        system_prompt=str(raw.get("systemPrompt") or raw.get("system_prompt") or ""),
        thinking_level=thinking,
        temperature=float(temperature) if temperature is not None else None,
        max_tokens=int(max_tokens) if max_tokens is not None else None,
    )


def _team_from_mapping(raw: Any) -> TeamDefinition:
    if not isinstance(raw, Mapping) or not str(raw.get("name") or "").strip():
        raise TeamConfigError(f"team entry needs a name: {raw!r}")
    agents = raw.get("agents")
    if not isinstance(agents, list) or not agents:
        raise TeamConfigError(f"team {raw['name']!r} needs a non-empty agents list")
    return TeamDefinition(
        name=str(raw["name"]).strip(),
        description=str(raw.get("description") or ""),
        agents=tuple(str(agent) for agent in agents),
        strategy=str(raw.get("strategy") or "verification"),
    )


DEFAULT_CATALOG = PresetCatalog()


def resolve_preset_by_name(name: str, model: str, catalog: PresetCatalog | None = None) -> AgentPreset:
    return (catalog or DEFAULT_CATALOG).template(name).to_preset(model)


def build_team_config(
    team_name: str,
    model: str,
    catalog: PresetCatalog | None = None,
    max_retries: int = 1,
    continue_on_error: bool = True,
    tools: Sequence[Any] = (),
    strategy: str = "parallel",
) -> TeamConfig:
    """TeamConfig for a catalog team; verification teams get the merge agent attached."""
    catalog = catalog or DEFAULT_CATALOG
    definition = catalog.team(team_name)
    if strategy not in EXECUTION_STRATEGIES:
        raise TeamConfigError(f"unknown execution strategy {strategy!r}")
    merge_agent = None
    if definition.strategy == "verification" and MERGE_AGENT_NAME in catalog.templates:
        merge_agent = resolve_preset_by_name(MERGE_AGENT_NAME, model, catalog)
    return TeamConfig(
        name=definition.name,
        agents=tuple(resolve_preset_by_name(agent, model, catalog) for agent in definition.agents),
        merge=MergeConfig(strategy=definition.strategy, merge_agent=merge_agent),
        strategy=strategy,
        max_retries=max_retries,
        continue_on_error=continue_on_error,
        description=definition.description,
        tools=tuple(tools),
    )
