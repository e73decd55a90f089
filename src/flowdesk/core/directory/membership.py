from __future__ import annotations

from typing import Iterable, Protocol

from pydantic import BaseModel, Field

from flowdesk.core.store import StateStore, now_iso

_MEMBERS = "members"


class Membership(BaseModel):
    id: str
    organization_id: str
    user_id: str
    role: str
    teams: list[str] = Field(default_factory=list)
    created_at_iso: str = Field(default_factory=now_iso)


class MembershipDirectory(Protocol):
    def get_membership(self, organization_id: str, user_id: str) -> Membership | None: ...

    def users_with_role(self, organization_id: str, role: str) -> list[str]: ...

    def users_in_team(self, organization_id: str, team: str) -> list[str]: ...


def _membership_id(organization_id: str, user_id: str) -> str:
    return f"{organization_id}:{user_id}"


class StoreMembershipDirectory:
    def __init__(self, store: StateStore) -> None:
        self.store = store

    def add_member(self, organization_id: str, user_id: str, role: str, teams: Iterable[str] = ()) -> Membership:
        membership = Membership(
            id=_membership_id(organization_id, user_id),
            organization_id=organization_id,
            user_id=user_id,
            role=role,
            teams=sorted(set(teams)),
        )
        with self.store.transaction() as uow:
            uow.delete(_MEMBERS, membership.id)
            uow.insert(_MEMBERS, membership.model_dump(mode="json"))
        return membership

    def remove_member(self, organization_id: str, user_id: str) -> bool:
        with self.store.transaction() as uow:
            return uow.delete(_MEMBERS, _membership_id(organization_id, user_id))

    def get_membership(self, organization_id: str, user_id: str) -> Membership | None:
        row = self.store.snapshot().get(_MEMBERS, _membership_id(organization_id, user_id))
        return Membership.model_validate(row) if row is not None else None

    def users_with_role(self, organization_id: str, role: str) -> list[str]:
        rows = self.store.snapshot().find(_MEMBERS, organization_id=organization_id, role=role)
        return sorted(row["user_id"] for row in rows)

    def users_in_team(self, organization_id: str, team: str) -> list[str]:
        rows = self.store.snapshot().find(
            _MEMBERS,
            lambda row: team in row.get("teams", []),
            organization_id=organization_id,
        )
        return sorted(row["user_id"] for row in rows)
