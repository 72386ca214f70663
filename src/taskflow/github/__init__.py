"""Remote issue gateway and its GitHub implementation."""

from taskflow.github.gateway import IssuePages, RemoteIssueGateway, StaticIssuePages

__all__ = [
    "IssuePages",
    "RemoteIssueGateway",
    "StaticIssuePages",
]
