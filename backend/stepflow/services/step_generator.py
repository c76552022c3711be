"""Clients for the external micro-step generation service."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional

import openai
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from stepflow.core.config import Settings, settings as default_settings
from stepflow.core.errors import RateLimitedError, TransientServiceError
from stepflow.observability.metrics import log_metric
from stepflow.observability.tracing import trace
from stepflow.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

Flow = Literal["individual", "supporter"]
HANDS_ON_HELPER = "hands_on_helper"


class WizardContext(BaseModel):
    """Answers captured by the goal creation flow, replayed for every occurrence."""

    goal_title: str = ""
    goal_type: Optional[str] = None
    category: Optional[str] = None
    goal_motivation: Optional[str] = None
    custom_motivation: Optional[str] = None
    challenge_areas: List[str] = Field(default_factory=list)
    prerequisite: Optional[str] = None
    time_of_day: Optional[str] = None
    custom_time: Optional[str] = None
    support_context: Optional[str] = None
    primary_supporter_name: Optional[str] = None
    primary_supporter_role: Optional[str] = None
    supported_person_name: Optional[str] = None

    @property
    def start_time(self) -> Optional[str]:
        return self.custom_time or self.time_of_day

    @property
    def wants_supporter_steps(self) -> bool:
        return self.primary_supporter_role == HANDS_ON_HELPER


class GenerationRequest(BaseModel):
    flow: Flow = "individual"
    goal_title: str
    category: str = "general"
    start: datetime
    motivation: Optional[str] = None
    challenge_areas: List[str] = Field(default_factory=list)
    prerequisite: Optional[str] = None
    duration_weeks: Optional[int] = None
    frequency_per_week: Optional[int] = None
    occurrence_index: int = 0
    supporter_role: Optional[str] = None
    supporter_timing_offset: Optional[str] = None
    supported_person_name: Optional[str] = None
    supporter_name: Optional[str] = None

    @property
    def day_of_week(self) -> str:
        return self.start.strftime("%A")

    @property
    def display_time(self) -> str:
        return format_display_time(self.start.hour, self.start.minute)


class GeneratedStep(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    estimated_duration_minutes: Optional[int] = Field(default=None, ge=1)
    phase: Optional[str] = None
    week_number: Optional[int] = Field(default=None, ge=1)
    session_number: Optional[int] = Field(default=None, ge=1)


class GeneratedStepList(BaseModel):
    micro_steps: List[GeneratedStep] = Field(..., alias="microSteps", min_length=1)


def format_display_time(hour: int, minute: int) -> str:
    period = "PM" if hour >= 12 else "AM"
    return f"{hour % 12 or 12}:{minute:02d} {period}"


class StepGenerator:
    """Base interface for step generation providers."""

    name = "base"

    def __init__(self, rate_limiter: Optional[RateLimiter] = None) -> None:
        self.rate_limiter = rate_limiter

    def generate(self, request: GenerationRequest) -> List[GeneratedStep]:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()
        metadata = {
            "provider": self.name,
            "flow": request.flow,
            "occurrence_index": request.occurrence_index,
        }
        with trace("steps.generate", metadata=metadata):
            steps = self._generate(request)
        if not steps:
            raise TransientServiceError("No steps generated")
        log_metric("steps.generate.count", len(steps), metadata)
        return steps

    def _generate(self, request: GenerationRequest) -> List[GeneratedStep]:
        raise NotImplementedError


class OpenAIStepGenerator(StepGenerator):
    name = "openai"

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        timeout: float,
        rate_limiter: Optional[RateLimiter] = None,
        client: Any = None,
    ) -> None:
        super().__init__(rate_limiter)
        self.model = model
        # SDK retries are disabled; the orchestrator owns the retry budget.
        self.client = client or openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    def _generate(self, request: GenerationRequest) -> List[GeneratedStep]:
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": _system_prompt(request.flow)},
                    {"role": "user", "content": _user_prompt(request)},
                ],
            )
        except openai.RateLimitError as exc:
            raise RateLimitedError(str(exc)) from exc
        except (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError) as exc:
            raise TransientServiceError(str(exc)) from exc

        content = completion.choices[0].message.content or "{}"
        try:
            parsed = GeneratedStepList.model_validate_json(content)
        except PydanticValidationError as exc:
            raise TransientServiceError(f"Malformed generation payload: {exc.error_count()} error(s)") from exc
        return parsed.micro_steps


def _system_prompt(flow: Flow) -> str:
    audience = (
        "a supporter who helps someone else get started"
        if flow == "supporter"
        else "an individual who struggles with starting and finishing tasks"
    )
    schema_json = json.dumps(GeneratedStepList.model_json_schema(by_alias=True), indent=2)
    return (
        f"You write tiny, concrete micro-steps for {audience}.\n"
        "Return exactly 3 steps in the order they should be done. The first may be a preparation "
        "step (phase \"prep\"), the second is the activation step at the start time.\n"
        "Titles are 5-8 words, descriptions one or two short sentences.\n"
        "Return strictly valid JSON matching this schema:\n"
        f"{schema_json}"
    )


def _user_prompt(request: GenerationRequest) -> str:
    lines = [
        f"Goal: {request.goal_title}",
        f"Category: {request.category}",
        f"Starts: {request.day_of_week} at {request.display_time}",
    ]
    if request.motivation:
        lines.append(f"Why it matters: {request.motivation}")
    if request.challenge_areas:
        lines.append(f"Barriers: {', '.join(request.challenge_areas)}")
    if request.prerequisite:
        lines.append(f"Needs beforehand: {request.prerequisite}")
    if request.frequency_per_week:
        lines.append(f"Frequency: {request.frequency_per_week}x per week for {request.duration_weeks or '?'} weeks")
    if request.flow == "supporter":
        lines.append(f"Supporter role: {request.supporter_role or 'helper'}")
        if request.supporter_timing_offset:
            lines.append(f"Supporter should be ready {request.supporter_timing_offset}")
        if request.supported_person_name:
            lines.append(f"Person being supported: {request.supported_person_name}")
    return "\n".join(lines)


class TemplateStepGenerator(StepGenerator):
    """Offline generator built from barrier templates; used when no API key is configured."""

    name = "template"

    def _generate(self, request: GenerationRequest) -> List[GeneratedStep]:
        supporter = request.flow == "supporter"
        goal = request.goal_title or "your goal"
        time_text = request.display_time
        barriers = request.challenge_areas
        steps: List[GeneratedStep] = []

        if request.prerequisite and not supporter:
            steps.append(
                GeneratedStep(
                    title=f"Get ready by {request.day_of_week}: prepare what you need",
                    description=request.prerequisite,
                    phase="prep",
                )
            )

        if barriers:
            template = _barrier_template(barriers[0], supporter, goal, time_text)
            if template.get("prep") and not steps:
                steps.append(
                    GeneratedStep(
                        title=_BARRIER_TITLES.get(barriers[0], {}).get("prep", "Prepare your space"),
                        description=template["prep"],
                        phase="prep",
                    )
                )
            steps.append(
                GeneratedStep(
                    title=_BARRIER_TITLES.get(barriers[0], {}).get("primary", "Complete this step"),
                    description=template["activation"],
                    phase="activation",
                )
            )

        secondary = barriers[1] if len(barriers) > 1 else "attention"
        template = _barrier_template(secondary, supporter, goal, time_text)
        steps.append(
            GeneratedStep(
                title=_BARRIER_TITLES.get(secondary, {}).get("secondary", "Complete this step"),
                description=template["activation"],
                phase="follow_through",
            )
        )

        while len(steps) < 3:
            steps.append(
                GeneratedStep(
                    title="Track your progress",
                    description="After each session, mark this step complete to build momentum.",
                    phase="reflection",
                )
            )
        return steps[:3]


_BARRIER_TITLES: Dict[str, Dict[str, str]] = {
    "initiation": {"primary": "The start cue", "secondary": "Start action", "prep": "Set up your environment"},
    "time": {"primary": "Set your time anchor", "secondary": "Time reminder", "prep": "Create visual cues"},
    "attention": {"primary": "Focus with movement breaks", "secondary": "Maintain focus", "prep": "Prepare for focus time"},
    "planning": {"primary": "Break it into steps", "secondary": "Plan your approach", "prep": "Create your sequence"},
}


def _barrier_template(barrier: str, supporter: bool, goal: str, time_text: str) -> Dict[str, str]:
    if supporter:
        templates = {
            "initiation": {
                "activation": f"At {time_text}, their only goal is to touch the tool they need (open the book, press play).",
                "prep": f"Put the main tool on the work surface before {time_text} so nothing has to be found.",
            },
            "time": {
                "activation": f"At {time_text}, start a visible 20 minute timer so the time is easy to see.",
                "prep": f"Place a visual cue in their line of sight one hour before {time_text}.",
            },
            "attention": {
                "activation": f"Their task: finish one small, defined part of {goal}, then stop.",
                "prep": "Make sure they stand up and stretch when the 25 minute timer rings.",
            },
            "planning": {
                "activation": "Start by writing the 3-step sequence on a whiteboard together, not the work itself.",
                "prep": "Five minutes before the end, help them plan the very first step for next time.",
            },
        }
        fallback = {"activation": f"Their task: finish one small part of {goal}, then take a 5 minute movement break."}
    else:
        templates = {
            "initiation": {
                "activation": f"At {time_text}, your only job is to touch the item needed for {goal} for 15 seconds.",
                "prep": "Right now, find the single object you need for this task and put it on the table.",
            },
            "time": {
                "activation": f"Set a recurring alarm for 5 minutes before {time_text}. Name it \"SHIFT NOW\".",
                "prep": "Put a sticky note on the last thing you usually look at before the start time.",
            },
            "attention": {
                "activation": "Set a timer for 25 minutes and focus only on this until it rings.",
                "prep": "When the timer rings, stand up and move away for 5 minutes.",
            },
            "planning": {
                "activation": f"Write down the next three things you need to do for {goal}. Stop there.",
                "prep": "Before you finish, spend 2 minutes deciding your first step for next time.",
            },
        }
        fallback = {"activation": "Set a timer for 25 minutes. When it rings, stand up and move for 5 minutes."}
    return templates.get(barrier, fallback)


def get_step_generator(
    settings: Settings = default_settings,
    rate_limiter: Optional[RateLimiter] = None,
) -> StepGenerator:
    limiter = rate_limiter or RateLimiter(settings.generation_min_interval_seconds)
    if settings.openai_api_key:
        return OpenAIStepGenerator(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout=settings.generation_call_timeout_seconds,
            rate_limiter=limiter,
        )
    logger.warning("OPENAI_API_KEY missing; using template step generator.")
    return TemplateStepGenerator(rate_limiter=limiter)


@lru_cache
def get_default_step_generator() -> StepGenerator:
    """Process-wide client so the throttle spans concurrent requests."""
    return get_step_generator(default_settings)
