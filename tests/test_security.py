from __future__ import annotations

import asyncio
import hashlib
import json

import pytest
from fastapi import HTTPException

from standings.core.auth import Principal, PrincipalType, parse_scope_list
from standings.core.config import Settings
from standings.core.security import ensure_scopes, get_principal, parse_api_keys


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def _keys(**entries) -> str:
    return json.dumps({hashlib.sha256(key.encode("utf-8")).hexdigest(): spec for key, spec in entries.items()})


def test_parse_api_keys_drops_unknown_scopes() -> None:
    raw = _keys(k1={"subject": "w1", "scopes": ["jobs:write", "root"]})

    (record,) = parse_api_keys(raw)

    assert record.subject == "w1"
    assert record.principal_type is PrincipalType.MACHINE
    assert record.scopes == frozenset({"jobs:write"})


@pytest.mark.parametrize("raw", ["not json", "[]", json.dumps({"abc": {"scopes": []}})])
def test_parse_api_keys_rejects_malformed_config(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_api_keys(raw)


def test_principal_resolves_from_key() -> None:
    settings = _settings(api_keys_json=_keys(secret={"subject": "ops", "type": "operator", "scopes": "admin:write"}))

    principal = asyncio.run(get_principal(settings=settings, x_api_key="secret"))

    assert principal.subject == "ops"
    assert principal.actor_type == "manual"
    assert principal.scopes == {"admin:write"}


def test_unknown_key_and_broken_config() -> None:
    with pytest.raises(HTTPException) as unknown:
        asyncio.run(get_principal(settings=_settings(api_keys_json=_keys(a={"subject": "x"})), x_api_key="b"))
    with pytest.raises(HTTPException) as broken:
        asyncio.run(get_principal(settings=_settings(api_keys_json="{"), x_api_key="b"))

    assert unknown.value.status_code == 401
    assert broken.value.status_code == 503


def test_auth_disabled_grants_local_operator() -> None:
    principal = asyncio.run(get_principal(settings=_settings(auth_disabled=True), x_api_key=None))

    assert principal.subject == "local"
    ensure_scopes(principal, {"admin:write", "jobs:write"})


def test_missing_scope_is_forbidden() -> None:
    principal = Principal(principal_type=PrincipalType.MACHINE, subject="w1", scopes={"jobs:read"})

    with pytest.raises(HTTPException) as excinfo:
        ensure_scopes(principal, {"jobs:write"})

    assert excinfo.value.status_code == 403
    assert principal.actor_type == "system"


def test_parse_scope_list_accepts_csv_and_lists() -> None:
    assert parse_scope_list("jobs:read, jobs:write,") == {"jobs:read", "jobs:write"}
    assert parse_scope_list(["standings:read", 3, " "]) == {"standings:read"}
    assert parse_scope_list(None) == set()
