"""Shared fixtures: a scripted GraphQL client and sample header text."""

import re

import pytest

import ghostbuster

_FIELD_RE = re.compile(r"(l\d+): (user|organization)\(login: \$l\d+\)")

SAMPLE_HEADER = (
    "// Type definitions for foo 1.2\n"
    "// Project: https://github.com/foo/foo\n"
    "// Definitions by: A <https://github.com/alice>\n"
    "//                 B <https://github.com/ghostuser>\n"
    "// Definitions: https://github.com/DefinitelyTyped/DefinitelyTyped\n"
    "// TypeScript Version: 4.1\n"
    "\n"
    "export function foo(): void;\n"
)


class FakeGitHub:
    """
    Answers aliased user/organization lookups from in-memory sets and
    records every request as (kind, [logins]).
    """

    def __init__(self, users=(), orgs=(), errors=None):
        self.users = {u.lower() for u in users}
        self.orgs = {o.lower() for o in orgs}
        self.errors = errors or []
        self.calls = []

    def graphql(self, query, variables=None):
        variables = variables or {}
        data = {}
        kinds = set()
        for alias, kind in _FIELD_RE.findall(query):
            kinds.add(kind)
            login = variables[alias]
            known = self.users if kind == "user" else self.orgs
            data[alias] = {"id": f"id-{login}"} if login in known else None
        assert len(kinds) == 1
        self.calls.append((kinds.pop(), [variables[a] for a in sorted(variables, key=lambda k: int(k[1:]))]))
        return ghostbuster.GraphQLResult(data=data, errors=list(self.errors))


@pytest.fixture
def fake_github():
    return FakeGitHub


@pytest.fixture
def sample_header():
    return SAMPLE_HEADER


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(ghostbuster.time, "sleep", lambda _s: None)
