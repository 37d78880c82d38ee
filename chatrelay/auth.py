"""
Request Authorization

Resolves the calling user from a bearer token. Tokens come from the auth.tokens
config section and the CHATRELAY_API_TOKENS environment variable
("token:user,token:user"); the environment wins on conflicts.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any, Protocol

from pydantic import BaseModel

logger = logging.getLogger(__name__)

TOKENS_ENV = "CHATRELAY_API_TOKENS"


class AuthContext(BaseModel):
    user_id: str


class Authorizer(Protocol):
    def authorize(self, headers: Mapping[str, str]) -> AuthContext | None: ...

    def authorize_token(self, token: str | None) -> AuthContext | None: ...


def parse_token_list(raw: str) -> dict[str, str]:
    """Parse "token:user,token:user"; malformed entries are skipped."""
    tokens: dict[str, str] = {}
    for entry in raw.split(","):
        token, sep, user_id = entry.strip().partition(":")
        if not sep or not token or not user_id:
            if entry.strip():
                logger.warning("Ignoring malformed entry in %s", TOKENS_ENV)
            continue
        tokens[token] = user_id
    return tokens


class StaticTokenAuthorizer:
    """Maps fixed bearer tokens to user ids."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens = dict(tokens)

    @classmethod
    def from_config(cls, auth_config: dict[str, Any]) -> StaticTokenAuthorizer:
        tokens = {str(k): str(v) for k, v in (auth_config.get("tokens") or {}).items()}
        tokens.update(parse_token_list(os.environ.get(TOKENS_ENV, "")))
        if not tokens:
            logger.warning("No API tokens configured - every request will be rejected")
        return cls(tokens)

    def authorize_token(self, token: str | None) -> AuthContext | None:
        if not token:
            return None
        user_id = self._tokens.get(token)
        return AuthContext(user_id=user_id) if user_id else None

    def authorize(self, headers: Mapping[str, str]) -> AuthContext | None:
        scheme, _, token = headers.get("authorization", "").partition(" ")
        if scheme.lower() != "bearer":
            return None
        return self.authorize_token(token.strip())
