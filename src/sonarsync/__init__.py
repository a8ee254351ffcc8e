"""Scan unanalysed Gitea branch commits with sonar-scanner and keep per-branch SonarQube projects in sync."""

__version__ = "0.1.0"
