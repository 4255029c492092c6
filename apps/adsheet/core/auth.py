from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping


class AuthError(ValueError):
    pass


class Role(str, Enum):
    DIRECTOR = "director"
    MANAGER = "manager"
    EMPLOYEE = "employee"


USER_HEADER = "X-User-Id"
ROLE_HEADER = "X-User-Role"
DIRECTOR_HEADER = "X-Director-Id"
SESSION_HEADER = "X-Session-Id"


def _parse_id(raw: object, name: str) -> int:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError) as exc:
        raise AuthError(f"{name} must be an integer") from exc
    if value <= 0:
        raise AuthError(f"{name} must be positive")
    return value


@dataclass(frozen=True)
class AuthContext:
    """
    Who is acting and whose data they see.

    Data is partitioned by director: managers and employees read and write
    their director's accounts, so ``owner_id`` is the director id for them.
    """

    user_id: int
    role: Role = Role.DIRECTOR
    director_id: int | None = None

    @property
    def owner_id(self) -> int:
        if self.role is Role.DIRECTOR:
            return self.user_id
        if self.director_id is None:
            raise AuthError(f"{self.role.value} has no owning director")
        return self.director_id

    def headers(self) -> dict[str, str]:
        headers = {USER_HEADER: str(self.user_id), ROLE_HEADER: self.role.value}
        if self.director_id is not None:
            headers[DIRECTOR_HEADER] = str(self.director_id)
        return headers

    @classmethod
    def from_values(
        cls,
        user_id: object,
        role: object = None,
        director_id: object = None,
    ) -> "AuthContext":
        if user_id is None or str(user_id).strip() == "":
            raise AuthError(f"Missing {USER_HEADER}")
        raw_role = str(role or Role.DIRECTOR.value).strip().lower()
        try:
            parsed_role = Role(raw_role)
        except ValueError as exc:
            raise AuthError(f"Unknown role '{raw_role}'") from exc

        director = None
        if director_id is not None and str(director_id).strip() != "":
            director = _parse_id(director_id, DIRECTOR_HEADER)

        if parsed_role is not Role.DIRECTOR and director is None:
            raise AuthError(f"Missing {DIRECTOR_HEADER} for {parsed_role.value}")

        return cls(
            user_id=_parse_id(user_id, USER_HEADER),
            role=parsed_role,
            director_id=director,
        )

    @classmethod
    def from_mapping(cls, values: Mapping[str, object]) -> "AuthContext":
        lowered = {str(key).lower(): value for key, value in values.items()}
        return cls.from_values(
            lowered.get(USER_HEADER.lower()),
            lowered.get(ROLE_HEADER.lower()),
            lowered.get(DIRECTOR_HEADER.lower()),
        )
