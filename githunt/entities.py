"""Immutable remote entities as exposed by the schema.

Field names follow the GitHub REST API because the public schema uses the
same names. Instances are only built by the mapping functions in
``github_client``; a half-populated entity never leaves the connector.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class User:
    login: str
    avatar_url: str
    html_url: str

    def to_credentials(self, access_token: str = '') -> Dict[str, Any]:
        """Return the dict persisted in the session store for this user."""
        return {
            'login': self.login,
            'avatar_url': self.avatar_url,
            'html_url': self.html_url,
            'access_token': access_token,
        }


@dataclass(frozen=True)
class Repository:
    name: str
    full_name: str
    description: Optional[str]
    html_url: str
    stargazers_count: int
    open_issues_count: Optional[int]
    created_at: str
