from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    MACHINE = "machine"
    OPERATOR = "operator"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

    @property
    def actor_type(self) -> str:
        return "system" if self.principal_type is PrincipalType.MACHINE else "manual"


def parse_scope_list(value: object) -> set[str]:
    if isinstance(value, str):
        return {chunk.strip() for chunk in value.split(",") if chunk.strip()}
    if isinstance(value, list):
        return {item.strip() for item in value if isinstance(item, str) and item.strip()}
    return set()
