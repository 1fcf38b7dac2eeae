"""
Prompt construction policies.

A policy turns a question into the prompts (and limits) used by the
orchestrator's inference tiers. The default policy adds recent conversation
history; the step-tracking policy additionally detects step-by-step tasks,
keeps per-user project bookkeeping, and constrains the model to one next
action at a time.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from glasses_assistant.assistant.conversations import (
    NO_HISTORY,
    ConversationEntry,
    ConversationStore,
    new_id,
)
from glasses_assistant.config import Config

if TYPE_CHECKING:
    from glasses_assistant.assistant.memory import MemoryStore
    from glasses_assistant.assistant.session import UserContext

logger = logging.getLogger(__name__)

STEP_FALLBACK_REPLY = "I'm ready to help with your next step! What would you like to work on?"

STEP_REQUEST_PHRASES = [
    "help me build", "help me create", "help me make", "help me setup", "help me configure",
    "help me install", "help me fix", "help me repair", "help me change", "help me replace",
    "how to build", "how to create", "how to make", "how to setup", "how to configure",
    "how to install", "how to fix", "how to repair", "how to change", "how to replace",
    "how do i", "how can i", "walk me through", "guide me through", "show me how",
    "step by step", "tutorial", "instructions", "guide me", "help me with",
    "put my phone in", "change my tv", "connect my", "set up my",
]

STEP_CONTINUATION_PHRASES = [
    "what's next", "whats next", "next step", "what now", "now what",
    "continue", "keep going", "what should i do next", "ready for next",
    "done", "finished", "completed", "next", "ok", "okay", "got it", "did it", "ready",
]

# Replies this short count as "continue" while a project is active
SHORT_REPLY_CHARS = 15

CATEGORY_KEYWORDS = [
    ("Technology", ("code", "programming", "function", "debug")),
    ("Personal", ("keys", "wallet", "phone", "where")),
    ("Work", ("meeting", "work", "email", "deadline")),
    ("Food", ("food", "recipe", "cook", "eat")),
]

# (task type, safety level, keywords), first match wins
TASK_TYPES = [
    ("coding", "low", ("website", "app", "code", "program")),
    ("tech", "low", ("phone", "computer", "router", "device")),
    ("automotive", "high", ("car", "engine", "brake", "oil")),
    ("repair", "high", ("electrical", "fuse", "outlet", "wiring")),
    ("household", "low", ("tv", "home", "kitchen", "bathroom")),
    ("creative", "low", ("art", "design", "music", "video")),
]

_TASK_LEAD_IN = re.compile(
    r"^.*?\b(help me|how to)\s+(build|create|make|setup|fix)\s+", re.IGNORECASE
)
_ARTICLE = re.compile(r"^(a|an|the)\s+", re.IGNORECASE)


def categorize_question(question: str) -> str:
    """Coarse dashboard category for a question."""
    q = question.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(k in q for k in keywords):
            return category
    return "General"


def is_step_request(question: str) -> bool:
    q = question.lower()
    return any(phrase in q for phrase in STEP_REQUEST_PHRASES)


def is_step_continuation(question: str, has_active_project: bool) -> bool:
    """
    Whether a question continues the active step sequence.

    Only meaningful while a project is active; otherwise a short "ok" is
    just an ordinary question.
    """
    if not has_active_project:
        return False
    q = question.lower().strip()
    if len(q) < SHORT_REPLY_CHARS:
        return True
    return any(re.search(rf"\b{re.escape(p)}\b", q) for p in STEP_CONTINUATION_PHRASES)


def extract_project_info(description: str) -> tuple[str, str, str]:
    """
    Derive a project name, task type and safety level from a task request.

    Returns:
        (name, task_type, safety_level)
    """
    q = description.lower()
    task_type, safety = "general", "low"
    for candidate, level, keywords in TASK_TYPES:
        if any(re.search(rf"\b{k}\b", q) for k in keywords):
            task_type, safety = candidate, level
            break

    name = _TASK_LEAD_IN.sub("", description.strip()).strip()
    name = _ARTICLE.sub("", name).strip().rstrip("?.!")
    if len(name) < 3:
        name = description.strip()
    name = name[:1].upper() + name[1:]
    return name, task_type, safety


@dataclass
class StepEntry:
    """One guided step of a project."""

    step_number: int
    user_id: str
    action: str
    response: str
    project_id: str
    project_name: str
    context: str = ""
    id: str = field(default_factory=lambda: new_id("step"))
    timestamp: float = field(default_factory=time.time)
    has_photo: bool = False
    processing_time_ms: int = 0
    is_completed: bool = False

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "step_number": self.step_number,
            "timestamp": int(self.timestamp * 1000),
            "action": self.action,
            "response": self.response,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "has_photo": self.has_photo,
            "processing_time_ms": self.processing_time_ms,
            "is_completed": self.is_completed,
        }


@dataclass
class Project:
    """A multi-step task the user is working through."""

    name: str
    user_id: str
    description: str
    task_type: str = "general"
    safety_level: str = "low"
    id: str = field(default_factory=lambda: new_id("proj"))
    started_at: float = field(default_factory=time.time)
    last_updated: float = field(default_factory=time.time)
    steps: list[StepEntry] = field(default_factory=list)
    is_active: bool = True
    total_steps: int = 0
    completed_steps: int = 0

    @property
    def tags(self) -> list[str]:
        return [self.task_type]

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "task_type": self.task_type,
            "safety_level": self.safety_level,
            "started_at": int(self.started_at * 1000),
            "last_updated": int(self.last_updated * 1000),
            "is_active": self.is_active,
            "tags": self.tags,
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
        }


class StepLog:
    """Per-user projects and steps."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.projects: list[Project] = []
        self.steps: list[StepEntry] = []
        self.active_project_id: Optional[str] = None

    def active_project(self) -> Optional[Project]:
        for project in self.projects:
            if project.id == self.active_project_id:
                return project
        return None

    def get_or_create_project(self, description: str) -> Project:
        """Return the active project, or start a new one from ``description``."""
        project = self.active_project()
        if project is not None and project.is_active:
            project.last_updated = time.time()
            return project

        name, task_type, safety = extract_project_info(description)
        for other in self.projects:
            other.is_active = False

        project = Project(
            name=name,
            user_id=self.user_id,
            description=description,
            task_type=task_type,
            safety_level=safety,
        )
        self.projects.append(project)
        self.active_project_id = project.id
        logger.info("Created project %r (%s) for user %s", name, task_type, self.user_id)
        return project

    def add_step(self, project: Project, entry: ConversationEntry) -> StepEntry:
        """
        Record a completed exchange as the project's next step.

        The previous step is marked completed and the conversation entry is
        linked to the new step.
        """
        step = StepEntry(
            step_number=project.total_steps + 1,
            user_id=self.user_id,
            action=entry.question,
            response=entry.response,
            project_id=project.id,
            project_name=project.name,
            context=self.context(project.id),
            has_photo=entry.has_photo,
            processing_time_ms=entry.processing_time_ms,
        )

        if project.steps:
            project.steps[-1].is_completed = True
            project.completed_steps = step.step_number - 1

        self.steps.append(step)
        project.steps.append(step)
        project.total_steps = step.step_number
        project.last_updated = time.time()

        entry.step_number = step.step_number
        entry.project_id = project.id
        entry.is_step_entry = True
        return step

    def context(self, project_id: Optional[str] = None) -> str:
        """Last three steps of a project (the active one by default)."""
        project_id = project_id or self.active_project_id
        if project_id:
            relevant = [s for s in self.steps if s.project_id == project_id]
        else:
            relevant = self.steps
        if not relevant:
            return "This is the first step of the project."

        lines = [f"Step {s.step_number}: {s.action} -> {s.response}" for s in relevant[-3:]]
        return (
            "Previous steps in this project:\n"
            + "\n".join(lines)
            + "\n\nContinue with next logical step."
        )

    def snapshot(self) -> dict[str, Any]:
        active = self.active_project()
        return {
            "steps": [s.to_public() for s in self.steps],
            "projects": [p.to_public() for p in self.projects],
            "active_project": active.to_public() if active else None,
        }


@dataclass
class PromptPlan:
    """Prompts and limits for one question."""

    text_prompt: str
    vision_prompt: str
    text_max_tokens: int
    vision_max_tokens: int
    text_timeout: float
    vision_timeout: float
    fallback_reply: str
    step_mode: Optional[str] = None  # "start" | "continue" when step-tracking


class PromptPolicy:
    """
    Default prompts: answer in one or two speakable sentences, grounded in
    recent conversation history.
    """

    def __init__(
        self,
        config: Config,
        conversations: ConversationStore,
        memory: Optional["MemoryStore"] = None,
    ):
        self.config = config
        self.conversations = conversations
        self.memory = memory

    async def history(self, user_id: str, question: str) -> str:
        """
        Conversation context for a prompt.

        Falls back to the persistent memory store when this process has no
        completed exchanges for the user yet.
        """
        context = self.conversations.build_context(
            user_id, exclude_question=question, limit=self.config.conversations.context_entries
        )
        if context != NO_HISTORY or self.memory is None:
            return context

        try:
            rows = await self.memory.recent(user_id, self.config.conversations.context_entries)
        except Exception as e:
            logger.warning("Memory context unavailable for user %s: %s", user_id, e)
            return context

        if not rows:
            return context
        lines = [f'User: "{r["question"]}" -> AI: "{r["response"]}"' for r in reversed(rows)]
        return (
            "Earlier conversations:\n"
            + "\n".join(lines)
            + "\n\nUse this context to provide relevant, personalized responses."
        )

    async def plan(self, ctx: "UserContext", question: str) -> PromptPlan:
        history = await self.history(ctx.user_id, question)
        inference = self.config.inference
        return PromptPlan(
            text_prompt=(
                f'You are a smart glasses AI assistant. User asked: "{question}".\n\n'
                f"{history}\n\n"
                "Give a helpful 1-2 sentence response. Be conversational for text-to-speech."
            ),
            vision_prompt=(
                f'You are a smart glasses AI assistant. User asked: "{question}" about this image.\n\n'
                f"{history}\n\n"
                "Give a helpful 1-2 sentence response for text-to-speech."
            ),
            text_max_tokens=inference.text_max_tokens,
            vision_max_tokens=inference.vision_max_tokens,
            text_timeout=inference.text_timeout,
            vision_timeout=inference.vision_timeout,
            fallback_reply=self.config.fallback_reply,
        )

    def record(
        self, ctx: "UserContext", entry: ConversationEntry
    ) -> Optional[tuple[StepEntry, Project]]:
        """Bookkeeping after a completed exchange. Nothing to do by default."""
        return None


class StepTrackingPolicy(PromptPolicy):
    """
    Step-by-step guidance.

    Task requests ("help me build...", "how do I...") start a project;
    follow-ups ("what's next", short acknowledgements) continue it. Either
    way the model is asked for exactly one next action, never a full plan.
    """

    def step_mode(self, ctx: "UserContext", question: str) -> Optional[str]:
        if is_step_request(question):
            return "start"
        if is_step_continuation(question, ctx.steps.active_project() is not None):
            return "continue"
        return None

    async def plan(self, ctx: "UserContext", question: str) -> PromptPlan:
        mode = self.step_mode(ctx, question)
        if mode is None:
            return await super().plan(ctx, question)

        logger.info("Step %s detected for user %s: %r", mode, ctx.user_id, question)
        history = await self.history(ctx.user_id, question)
        context = self._step_context(ctx, history)
        project = ctx.steps.active_project()
        inference = self.config.inference

        rules = (
            "Rules:\n"
            "- Give ONLY one next action, never the whole process\n"
            "- Keep it to 1-2 sentences\n"
            "- End by asking the user to say \"what's next?\" once it is done\n"
            "- Be conversational and encouraging"
        )
        if mode == "start":
            text_prompt = (
                "You are a smart glasses AI assistant guiding a step-by-step task.\n\n"
                f'User asked: "{question}"\n\n{context}\n\n{rules}\n\n'
                f"Current project: {project.name if project else 'New task'}\n"
                f"Safety level: {project.safety_level if project else 'low'}\n\n"
                "Give ONLY the first step now:"
            )
        else:
            text_prompt = (
                "You are a smart glasses AI assistant continuing step-by-step guidance.\n\n"
                f'User said: "{question}" (the previous step is done)\n\n{context}\n\n{rules}\n\n'
                "Give ONLY the next step now:"
            )
        vision_prompt = (
            "You are a smart glasses AI assistant with vision guiding a step-by-step task.\n\n"
            f'User asked: "{question}" about this image.\n\n{context}\n\n{rules}\n'
            "- If the image shows the previous step is complete, give the next one\n"
            "- Address any visible safety concern first\n\n"
            "Give ONLY the next step based on what you see:"
        )

        return PromptPlan(
            text_prompt=text_prompt,
            vision_prompt=vision_prompt,
            text_max_tokens=inference.step_max_tokens,
            vision_max_tokens=inference.step_max_tokens,
            text_timeout=inference.step_timeout,
            vision_timeout=inference.step_vision_timeout,
            fallback_reply=STEP_FALLBACK_REPLY,
            step_mode=mode,
        )

    def _step_context(self, ctx: "UserContext", history: str) -> str:
        parts = [history]
        project = ctx.steps.active_project()
        if project is not None:
            parts.append(
                f'CURRENT PROJECT: "{project.name}" ({project.task_type})\n'
                f"Safety level: {project.safety_level}\n"
                f"Progress: {project.completed_steps}/{project.total_steps} steps completed"
            )
        parts.append(ctx.steps.context())
        return "\n\n".join(parts)

    def record(
        self, ctx: "UserContext", entry: ConversationEntry
    ) -> Optional[tuple[StepEntry, Project]]:
        if self.step_mode(ctx, entry.question) is None:
            return None
        project = ctx.steps.get_or_create_project(entry.question)
        step = ctx.steps.add_step(project, entry)
        logger.info(
            "Recorded step %d of %r for user %s", step.step_number, project.name, ctx.user_id
        )
        return step, project
