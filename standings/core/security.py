import hashlib
import hmac
import json
from dataclasses import dataclass
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status

from standings.core.auth import Principal, PrincipalType, parse_scope_list
from standings.core.config import Settings, get_settings

ALL_SCOPES = frozenset({"jobs:read", "jobs:write", "standings:read", "admin:write"})


@dataclass(slots=True, frozen=True)
class ApiKeyRecord:
    key_hash: str
    subject: str
    principal_type: PrincipalType
    scopes: frozenset[str]


@lru_cache(maxsize=8)
def parse_api_keys(raw: str | None) -> tuple[ApiKeyRecord, ...]:
    """Parse ``{"<sha256 of key>": {"subject": ..., "type": ..., "scopes": [...]}}``."""
    if not raw:
        return ()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("api keys must be a JSON object") from exc
    if not isinstance(data, dict):
        raise ValueError("api keys must be a JSON object")

    records: list[ApiKeyRecord] = []
    for key_hash, spec in data.items():
        if not isinstance(spec, dict) or not isinstance(spec.get("subject"), str):
            raise ValueError(f"api key {key_hash[:8]} needs a subject")
        scopes = parse_scope_list(spec.get("scopes")) & ALL_SCOPES
        records.append(
            ApiKeyRecord(
                key_hash=key_hash.lower(),
                subject=spec["subject"],
                principal_type=PrincipalType(spec.get("type", PrincipalType.MACHINE.value)),
                scopes=frozenset(scopes),
            )
        )
    return tuple(records)


async def get_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Principal:
    if settings.auth_disabled:
        return Principal(principal_type=PrincipalType.OPERATOR, subject="local", scopes=set(ALL_SCOPES))

    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"api auth requires {settings.api_key_header}",
        )

    try:
        records = parse_api_keys(settings.api_keys_json)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    key_hash = hashlib.sha256(x_api_key.encode("utf-8")).hexdigest()
    matched = next((record for record in records if hmac.compare_digest(record.key_hash, key_hash)), None)
    if not matched:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid api key")

    return Principal(principal_type=matched.principal_type, subject=matched.subject, scopes=set(matched.scopes))


def ensure_scopes(principal: Principal, scopes: set[str]) -> None:
    try:
        principal.require_scopes(scopes)
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
