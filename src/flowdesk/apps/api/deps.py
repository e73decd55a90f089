from __future__ import annotations

from functools import lru_cache

from fastapi import Header
from pydantic import BaseModel

from flowdesk.core.approvals import ApprovalService
from flowdesk.core.env import default_state_dir
from flowdesk.core.queue import QueueManager
from flowdesk.core.runtime import Runtime, build_runtime
from flowdesk.core.scheduler import SchedulerService


class Identity(BaseModel):
    organization_id: str
    user_id: str


@lru_cache(maxsize=1)
def get_runtime() -> Runtime:
    return build_runtime(default_state_dir())


@lru_cache(maxsize=1)
def get_scheduler_service() -> SchedulerService:
    return SchedulerService(state_dir=get_runtime().state_dir)


def get_approval_service() -> ApprovalService:
    return get_runtime().approvals


def get_queue_manager() -> QueueManager:
    return get_runtime().queue


def get_identity(
    x_organization_id: str = Header(...),
    x_user_id: str = Header(...),
) -> Identity:
    return Identity(organization_id=x_organization_id, user_id=x_user_id)
