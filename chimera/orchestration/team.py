from __future__ import annotations

import itertools
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.config import TeamSettings
from ..core.logging import get_logger

if TYPE_CHECKING:
    from ..services.gateway import CallRecorder, ModelGateway

logger = get_logger(name=__name__)


class TeamRole(str, Enum):
    LEAD_ARCHITECT = "lead_architect"
    SENIOR_DEVELOPER = "senior_developer"
    JUNIOR_DEVELOPER = "junior_developer"
    QA_ENGINEER = "qa_engineer"
    RESEARCH_ENGINEER = "research_engineer"
    DEVOPS_ENGINEER = "devops_engineer"
    TECHNICAL_WRITER = "technical_writer"
    SECURITY_SPECIALIST = "security_specialist"
    PERFORMANCE_ENGINEER = "performance_engineer"
    UI_DESIGNER = "ui_designer"


class TaskType(str, Enum):
    RESEARCH = "research"
    CODING = "coding"
    REVIEW = "review"
    TESTING = "testing"
    DOCUMENTATION = "documentation"
    ARCHITECTURE = "architecture"
    DEBUGGING = "debugging"


class TaskPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class MemberStatus(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    REVIEWING = "reviewing"
    COMPLETE = "complete"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETE = "complete"
    BLOCKED = "blocked"


ROLE_PROVIDER_PREFERENCES: dict[TeamRole, tuple[str, ...]] = {
    TeamRole.LEAD_ARCHITECT: ("claude", "openai", "gemini", "deepseek", "qwen"),
    TeamRole.SENIOR_DEVELOPER: ("openai", "claude", "deepseek", "gemini", "qwen"),
    TeamRole.JUNIOR_DEVELOPER: ("claude", "openai", "gemini", "deepseek", "qwen"),
    TeamRole.QA_ENGINEER: ("gemini", "openai", "claude", "deepseek", "qwen"),
    TeamRole.RESEARCH_ENGINEER: ("deepseek", "openai", "qwen", "claude", "gemini"),
    TeamRole.DEVOPS_ENGINEER: ("claude", "openai", "deepseek", "gemini", "qwen"),
    TeamRole.SECURITY_SPECIALIST: ("openai", "claude", "deepseek", "gemini", "qwen"),
    TeamRole.PERFORMANCE_ENGINEER: ("deepseek", "openai", "claude", "gemini", "qwen"),
    TeamRole.TECHNICAL_WRITER: ("claude", "openai", "gemini", "deepseek", "qwen"),
    TeamRole.UI_DESIGNER: ("gemini", "claude", "openai", "deepseek", "qwen"),
}

TYPE_TO_ROLES: dict[TaskType, tuple[TeamRole, ...]] = {
    TaskType.RESEARCH: (TeamRole.RESEARCH_ENGINEER, TeamRole.LEAD_ARCHITECT),
    TaskType.CODING: (TeamRole.SENIOR_DEVELOPER, TeamRole.JUNIOR_DEVELOPER),
    TaskType.REVIEW: (TeamRole.QA_ENGINEER, TeamRole.SENIOR_DEVELOPER, TeamRole.LEAD_ARCHITECT),
    TaskType.TESTING: (TeamRole.QA_ENGINEER,),
    TaskType.DOCUMENTATION: (TeamRole.TECHNICAL_WRITER, TeamRole.SENIOR_DEVELOPER),
    TaskType.ARCHITECTURE: (TeamRole.LEAD_ARCHITECT, TeamRole.SENIOR_DEVELOPER),
    TaskType.DEBUGGING: (TeamRole.SENIOR_DEVELOPER, TeamRole.JUNIOR_DEVELOPER, TeamRole.PERFORMANCE_ENGINEER),
}

ROLE_INSTRUCTIONS: dict[TeamRole, str] = {
    TeamRole.LEAD_ARCHITECT: (
        "You are the lead architect and team lead. Break requests into concrete subtasks, "
        "pick the right specialist for each one and make the architectural calls. "
        "Do not ask clarifying questions: make reasonable assumptions and act."
    ),
    TeamRole.SENIOR_DEVELOPER: (
        "You are a senior developer. Write clean working code, solve hard algorithmic problems "
        "and propose concrete solutions with short code examples."
    ),
    TeamRole.JUNIOR_DEVELOPER: "You are a developer. Finish small tasks quickly and give a concrete result.",
    TeamRole.QA_ENGINEER: (
        "You are a QA engineer. Find bugs and edge cases, suggest tests and list the problems "
        "by priority with their location."
    ),
    TeamRole.RESEARCH_ENGINEER: (
        "You are a research engineer. Analyse the problem in depth, compare approaches and "
        "give structured conclusions with recommendations."
    ),
    TeamRole.DEVOPS_ENGINEER: "You are a DevOps engineer. Cover CI/CD, containers, deployment and monitoring.",
    TeamRole.TECHNICAL_WRITER: "You are a technical writer. Produce clear documentation with usage examples.",
    TeamRole.SECURITY_SPECIALIST: (
        "You are a security specialist. Audit for vulnerabilities and give each finding a severity "
        "and a fix."
    ),
    TeamRole.PERFORMANCE_ENGINEER: (
        "You are a performance engineer. Find bottlenecks and recommend optimisations with a "
        "measurable effect."
    ),
    TeamRole.UI_DESIGNER: "You are a UI/UX designer. Review interfaces and recommend usability improvements.",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class TeamMember:
    id: int
    role: TeamRole
    provider: str
    model_id: str
    status: MemberStatus = MemberStatus.IDLE
    workload: int = 0
    current_task: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "provider": self.provider,
            "model_id": self.model_id,
            "status": self.status.value,
            "workload": self.workload,
            "current_task": self.current_task,
        }


@dataclass(slots=True)
class TeamTask:
    id: str
    title: str
    description: str
    type: TaskType = TaskType.CODING
    priority: TaskPriority = TaskPriority.MEDIUM
    assigned_to: int | None = None
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = field(default_factory=list)
    result: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type.value,
            "priority": self.priority.value,
            "assigned_to": self.assigned_to,
            "status": self.status.value,
            "dependencies": list(self.dependencies),
            "result": self.result,
            "error": self.error,
        }


class PlannedTask(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    type: TaskType = TaskType.CODING
    priority: TaskPriority = TaskPriority.MEDIUM
    depends_on: list[int | str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() not in {item.value for item in TaskType}:
            return TaskType.CODING
        return value.lower() if isinstance(value, str) else value

    @field_validator("priority", mode="before")
    @classmethod
    def _coerce_priority(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() not in {item.value for item in TaskPriority}:
            return TaskPriority.MEDIUM
        return value.lower() if isinstance(value, str) else value


class LeadPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    analysis: str = ""
    required_roles: list[TeamRole] = Field(default_factory=list, alias="requiredRoles")
    task_breakdown: list[PlannedTask] = Field(min_length=1, alias="taskBreakdown")
    estimated_team_size: int = Field(default=2, ge=1, alias="estimatedTeamSize")

    @field_validator("required_roles", mode="before")
    @classmethod
    def _known_roles(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        known = {role.value for role in TeamRole}
        return [item for item in value if isinstance(item, str) and item in known]


def fallback_plan(request: str) -> LeadPlan:
    return LeadPlan(
        analysis="Standard task analysis",
        required_roles=[TeamRole.SENIOR_DEVELOPER],
        task_breakdown=[PlannedTask(title="Execute request", description=request)],
        estimated_team_size=2,
    )


_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def parse_lead_plan(content: str, request: str) -> LeadPlan:
    """Validate the lead's JSON reply; anything malformed yields the single-task plan."""
    match = _JSON_OBJECT.search(content or "")
    if match is None:
        return fallback_plan(request)
    try:
        return LeadPlan.model_validate(json.loads(match.group(0)))
    except (ValueError, ValidationError):
        logger.warning("lead_plan_invalid", preview=(content or "")[:120])
        return fallback_plan(request)


class TeamAssembler:
    """Arena of team members and tasks addressed by stable integer / string handles.

    Members are created on demand for a role and reused while idle. ``cleanup`` bounds
    the arena by evicting the oldest completed tasks and surplus idle members.
    """

    def __init__(
        self,
        gateway: "ModelGateway",
        *,
        settings: TeamSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._gateway = gateway
        self._settings = settings or TeamSettings()
        self._clock = clock
        self._member_ids = itertools.count(1)
        self._task_ids = itertools.count(1)
        self._members: dict[int, TeamMember] = {}
        self._tasks: dict[str, TeamTask] = {}
        self._lead: TeamMember | None = None

    @property
    def settings(self) -> TeamSettings:
        return self._settings

    @property
    def lead(self) -> TeamMember:
        if self._lead is None or self._lead.id not in self._members:
            self._lead = self._hire(TeamRole.LEAD_ARCHITECT)
        return self._lead

    @property
    def members(self) -> list[TeamMember]:
        return list(self._members.values())

    @property
    def tasks(self) -> list[TeamTask]:
        return list(self._tasks.values())

    def resolve_model(self, role: TeamRole) -> tuple[str, str] | None:
        """Pick the first available provider in the role's preference order."""
        available = self._gateway.available_providers(healthy_only=True) or self._gateway.available_providers()
        if not available:
            return None
        for provider in ROLE_PROVIDER_PREFERENCES[role]:
            if provider in available:
                return provider, self._gateway.pool.default_model(provider)
        provider = available[0]
        return provider, self._gateway.pool.default_model(provider)

    def _hire(self, role: TeamRole) -> TeamMember:
        resolved = self.resolve_model(role)
        provider, model_id = resolved if resolved is not None else ("unassigned", "unassigned")
        member = TeamMember(id=next(self._member_ids), role=role, provider=provider, model_id=model_id)
        self._members[member.id] = member
        logger.debug("team_member_hired", member_id=member.id, role=role.value, provider=provider)
        return member

    def assemble(self, required_roles: Iterable[TeamRole]) -> list[TeamMember]:
        lead = self.lead
        team: list[TeamMember] = [lead]
        for role in required_roles:
            member = next(
                (
                    candidate
                    for candidate in self._members.values()
                    if candidate.role is role
                    and candidate.status is MemberStatus.IDLE
                    and candidate.id != lead.id
                    and candidate not in team
                ),
                None,
            )
            if member is None:
                member = self._hire(role)
            team.append(member)
        logger.info(
            "team_assembled",
            size=len(team),
            providers=sorted({member.provider for member in team}),
        )
        return team

    def create_task(
        self,
        title: str,
        description: str,
        *,
        task_type: TaskType = TaskType.CODING,
        priority: TaskPriority = TaskPriority.MEDIUM,
        dependencies: Sequence[str] = (),
    ) -> TeamTask:
        task = TeamTask(
            id=f"task-{next(self._task_ids)}",
            title=title,
            description=description,
            type=task_type,
            priority=priority,
            dependencies=list(dependencies),
            created_at=self._clock(),
        )
        self._tasks[task.id] = task
        return task

    def tasks_from_plan(self, plan: LeadPlan) -> list[TeamTask]:
        """Materialize planned tasks; ``dependsOn`` may reference indices or titles."""
        created: list[TeamTask] = []
        by_title: dict[str, str] = {}
        for planned in plan.task_breakdown:
            task = self.create_task(
                planned.title,
                planned.description,
                task_type=planned.type,
                priority=planned.priority,
            )
            created.append(task)
            by_title.setdefault(planned.title, task.id)
        for planned, task in zip(plan.task_breakdown, created):
            for reference in planned.depends_on:
                target: str | None = None
                if isinstance(reference, int) and 0 <= reference < len(created):
                    target = created[reference].id
                elif isinstance(reference, str):
                    target = by_title.get(reference)
                if target is not None and target != task.id and target not in task.dependencies:
                    task.dependencies.append(target)
        return created

    def assign(self, task: TeamTask, team: Sequence[TeamMember]) -> TeamMember | None:
        """Role affinity first, then lowest workload. Busy members above the threshold are skipped."""
        threshold = self._settings.busy_workload_threshold
        preferred = TYPE_TO_ROLES[task.type]

        def _rank(member: TeamMember) -> tuple[int, int]:
            affinity = preferred.index(member.role) if member.role in preferred else len(preferred)
            return affinity, member.workload

        candidates = sorted(
            (
                member
                for member in team
                if member.status is not MemberStatus.WORKING or member.workload < threshold
            ),
            key=_rank,
        )
        if not candidates:
            return None
        member = candidates[0]
        member.status = MemberStatus.WORKING
        member.current_task = task.title
        member.workload = min(100, member.workload + self._settings.workload_step)
        task.assigned_to = member.id
        task.status = TaskStatus.IN_PROGRESS
        return member

    async def execute_task(
        self,
        task: TeamTask,
        member: TeamMember,
        *,
        recorder: "CallRecorder | None" = None,
    ) -> str:
        system_prompt = (
            f"You are a {member.role.value.replace('_', ' ')} on the Chimera team.\n"
            f"{ROLE_INSTRUCTIONS[member.role]}\n\n"
            f"Current task: {task.title}\nPriority: {task.priority.value}\n\n"
            "Answer in at most 200 words. Give conclusions, not full implementations; "
            "only include short key code fragments when they are essential. "
            "Reply in the user's language."
        )
        result = await self._gateway.generate(
            task.description,
            providers=[member.provider],
            model=member.model_id,
            system_prompt=system_prompt,
            max_tokens=self._settings.max_tokens,
            recorder=recorder,
        )
        member.workload = max(0, member.workload - self._settings.workload_step)
        member.current_task = None
        member.status = MemberStatus.COMPLETE
        task.completed_at = self._clock()
        if not result.ok:
            task.status = TaskStatus.BLOCKED
            task.error = result.error
            task.result = None
            logger.warning("team_task_failed", task_id=task.id, member_id=member.id, error_kind=result.error_kind)
            return ""
        if result.provider and result.provider != member.provider:
            logger.info("team_member_rebound", member_id=member.id, provider=result.provider)
            member.provider = result.provider
            member.model_id = result.model_id or self._gateway.pool.default_model(result.provider)
        task.status = TaskStatus.COMPLETE
        task.result = result.content
        return result.content

    def release(self, members: Iterable[TeamMember]) -> None:
        for member in members:
            member.status = MemberStatus.IDLE
            member.current_task = None

    def block(self, task: TeamTask, reason: str) -> None:
        task.status = TaskStatus.BLOCKED
        task.error = reason
        task.completed_at = self._clock()

    async def analyze_and_plan(self, request: str, *, recorder: "CallRecorder | None" = None) -> LeadPlan:
        lead = self.lead
        providers = self._gateway.available_providers()
        roles = ", ".join(role.value for role in TeamRole if role is not TeamRole.LEAD_ARCHITECT)
        system_prompt = (
            f"{ROLE_INSTRUCTIONS[TeamRole.LEAD_ARCHITECT]}\n\n"
            f"Available providers: {', '.join(providers) or 'none'}.\n"
            f"Available roles: {roles}.\n\n"
            "Reply with valid JSON only, in this shape:\n"
            '{"analysis": "one or two sentences", "requiredRoles": ["role"], '
            '"taskBreakdown": [{"title": "...", "description": "...", '
            '"type": "coding|research|testing|review|documentation|architecture|debugging", '
            '"priority": "critical|high|medium|low", "dependsOn": [0]}], "estimatedTeamSize": 3}'
        )
        result = await self._gateway.generate(
            f"Analyse the request and plan the team's work:\n\n{request}",
            providers=[lead.provider],
            model=lead.model_id,
            system_prompt=system_prompt,
            recorder=recorder,
        )
        if not result.ok:
            logger.warning("lead_plan_unavailable", error_kind=result.error_kind)
            return fallback_plan(request)
        return parse_lead_plan(result.content, request)

    def cleanup(self) -> tuple[int, int]:
        """Evict completed tasks beyond the cap (oldest first) and surplus idle members."""
        finished = sorted(
            (
                task
                for task in self._tasks.values()
                if task.status in {TaskStatus.COMPLETE, TaskStatus.BLOCKED} and task.completed_at
            ),
            key=lambda task: task.completed_at or task.created_at,
            reverse=True,
        )
        stale_tasks = finished[self._settings.max_completed_tasks :]
        for task in stale_tasks:
            del self._tasks[task.id]

        lead_id = self._lead.id if self._lead is not None else None
        idle = [
            member
            for member in self._members.values()
            if member.status is MemberStatus.IDLE and member.id != lead_id
        ]
        surplus = idle[self._settings.max_idle_members :]
        for member in surplus:
            del self._members[member.id]
        if stale_tasks or surplus:
            logger.info("team_cleanup", tasks_removed=len(stale_tasks), members_removed=len(surplus))
        return len(stale_tasks), len(surplus)

    def memory_stats(self) -> dict[str, int]:
        return {
            "tasks": len(self._tasks),
            "members": len(self._members),
            "completed_tasks": sum(1 for task in self._tasks.values() if task.status is TaskStatus.COMPLETE),
        }

    def snapshot(self) -> dict[str, Any]:
        return {
            "lead": self.lead.as_dict(),
            "members": [member.as_dict() for member in self._members.values()],
            "active_tasks": [
                task.as_dict() for task in self._tasks.values() if task.status is not TaskStatus.COMPLETE
            ],
        }
