#!/usr/bin/env python3
"""Exception types shared by the team engine."""

from __future__ import annotations


class TeamError(Exception):
    """Base class for every error raised by the team engine."""


class TeamConfigError(TeamError):
    """A TeamConfig is unusable; raised before any agent starts."""


class TeamRunError(TeamError):
    """A run ended without a TeamResult (merge engine or setup fault)."""

    def __init__(self, team_name: str, message: str) -> None:
        super().__init__(f"team {team_name!r} failed: {message}")
        self.team_name = team_name
        self.message = message


class TeamSelectionError(TeamError):
    """The lead analyzer could not produce a usable team selection."""

    def __init__(self, message: str, raw_output: str = "") -> None:
        super().__init__(message)
        self.raw_output = raw_output


class AgentLoopError(TeamError):
    """An agent loop finished without a usable answer (soft failure)."""


class AgentCancelled(TeamError):
    """Raised when the cancellation signal fires during agent work."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class ModelClientError(TeamError):
    """Transport or protocol failure talking to the model provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnknownTeamError(TeamError, KeyError):
    def __init__(self, team_name: str, available: list[str]) -> None:
        super().__init__(f"Unknown team: {team_name}. Available: {', '.join(available)}")
        self.team_name = team_name
        self.available = available

    def __str__(self) -> str:
        return str(self.args[0])


class CircularDependencyError(TeamError):
    def __init__(self, teams: list[str]) -> None:
        super().__init__(f"Circular dependency detected among teams: {', '.join(teams)}")
        self.teams = teams
