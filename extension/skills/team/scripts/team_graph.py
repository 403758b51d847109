#!/usr/bin/env python3
"""Team dependency graph and execution waves.

Teams in the same wave run in parallel; each wave waits for the previous one.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from team_errors import CircularDependencyError


# (team, depends_on): the second team's output is useful context for the first.
KNOWN_TEAM_DEPENDENCIES: tuple[tuple[str, str], ...] = (
    ("api-review", "architecture"),
    ("dependencies", "security-audit"),
    ("testing", "types"),
    ("testing", "quality"),
)


class TeamDependencyGraph:
    def __init__(self) -> None:
        self._dependencies: dict[str, set[str]] = {}

    @property
    def teams(self) -> list[str]:
        return list(self._dependencies)

    def add_team(self, team: str) -> None:
        self._dependencies.setdefault(team, set())

    def add_dependency(self, team: str, depends_on: str) -> None:
        """`depends_on` must finish before `team` starts."""
        self.add_team(team)
        self.add_team(depends_on)
        if team != depends_on:
            self._dependencies[team].add(depends_on)

    def get_dependencies(self, team: str) -> list[str]:
        return sorted(self._dependencies.get(team, set()))

    def get_waves(self) -> list[list[str]]:
        """Kahn's algorithm, one layer per wave, names sorted inside a wave."""
        waves: list[list[str]] = []
        remaining = set(self._dependencies)
        completed: set[str] = set()
        while remaining:
            wave = sorted(team for team in remaining if self._dependencies[team] <= completed)
            if not wave:
                raise CircularDependencyError(sorted(remaining))
            remaining.difference_update(wave)
            completed.update(wave)
            waves.append(wave)
        return waves

    @classmethod
    def from_lead_output(
        cls,
        selected_teams: Iterable[str],
        execution_waves: Sequence[Sequence[str]] | None = None,
    ) -> "TeamDependencyGraph":
        graph = cls()
        for team in selected_teams:
            graph.add_team(team)
        waves = list(execution_waves or [])
        for previous, current in zip(waves, waves[1:]):
            for team in current:
                for prev_team in previous:
                    graph.add_dependency(team, prev_team)
        return graph


def create_dependency_graph_for_teams(selected_teams: Iterable[str]) -> TeamDependencyGraph:
    """Graph of the selected teams with the known dependencies among them applied."""
    selected = list(selected_teams)
    graph = TeamDependencyGraph()
    for team in selected:
        graph.add_team(team)
    chosen = set(selected)
    for team, depends_on in KNOWN_TEAM_DEPENDENCIES:
        if team in chosen and depends_on in chosen:
            graph.add_dependency(team, depends_on)
    return graph
