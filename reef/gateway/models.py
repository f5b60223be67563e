"""Scheduler data exchanged with the gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class CronJob:
    """A job as reported by ``cron.list``."""

    id: str
    name: str = ""
    schedule: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)
    agent_id: str | None = None
    enabled: bool = True
    session_target: str = ""
    wake_mode: str = ""
    state: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CronJob:
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            schedule=data.get("schedule") or {},
            payload=data.get("payload") or {},
            agent_id=data.get("agentId"),
            enabled=data.get("enabled", True),
            session_target=data.get("sessionTarget", ""),
            wake_mode=data.get("wakeMode", ""),
            state=str(data.get("state", "")),
        )


@dataclass
class LiveJobs:
    """The scheduler answered; these are the jobs it holds."""

    jobs: list[CronJob] = field(default_factory=list)

    @property
    def ids(self) -> set[str]:
        return {job.id for job in self.jobs}


class Unreachable:
    """The scheduler could not be asked. Nothing is known about live jobs."""

    def __repr__(self) -> str:
        return "UNREACHABLE"


UNREACHABLE = Unreachable()


def build_cron_add_params(
    name: str,
    agent_id: str,
    schedule: str,
    prompt: str,
    timezone: str | None = None,
) -> dict[str, Any]:
    """Parameters for ``cron.add`` running ``prompt`` as an isolated agent turn."""
    cron_schedule: dict[str, Any] = {"kind": "cron", "expr": schedule}
    if timezone:
        cron_schedule["tz"] = timezone
    return {
        "name": name,
        "agentId": agent_id,
        "enabled": True,
        "schedule": cron_schedule,
        "sessionTarget": "isolated",
        "wakeMode": "now",
        "payload": {"kind": "agentTurn", "message": prompt},
    }
