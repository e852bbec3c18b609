from __future__ import annotations

from ...core import metrics
from ...core.logging import get_logger
from ..classifier import ExecutionMode
from .base import DeliberationResult, ModeExecutor, PhaseContext, require_ok

logger = get_logger(name=__name__)

GENERATOR_SYSTEM = (
    "You are an expert developer. Give brief, concrete answers of at most 300 words. "
    "Prefer conclusions and recommendations in plain words over code blocks."
)
REVIEWER_SYSTEM = "You are a reviewer. Be brief. At most 100 words."


def is_approved(review: str) -> bool:
    return "APPROVED" in review.upper()


class DeliberationModeExecutor(ModeExecutor):
    """Generator drafts, reviewer approves or returns issues, for at most K rounds."""

    mode = ExecutionMode.DELIBERATION

    def __init__(self, *, max_rounds: int | None = None) -> None:
        self._max_rounds = max_rounds

    async def execute(self, context: PhaseContext) -> DeliberationResult:
        max_rounds = max(1, self._max_rounds or context.settings.deliberation_max_rounds)
        models = context.models
        generator = models[0] if models else None
        reviewer = next(
            (provider for provider in models[1:] if provider != generator and context.available(provider)),
            None,
        )
        task = context.task_prompt()

        draft = ""
        feedback: list[str] = []
        approved = False
        rounds = 0
        for round_index in range(max_rounds):
            if round_index == 0:
                prompt = (
                    f"Task: {task}\n\nGive a brief answer: key decisions, the plan and short code "
                    "fragments (up to 20 lines). Do not write complete modules."
                )
            else:
                prompt = (
                    f"Task: {task}\n\nPrevious answer:\n{draft}\n\n"
                    f"Reviewer feedback:\n{feedback[-1]}\n\nImprove the answer. Be brief, at most 300 words."
                )
            result = await context.gateway.generate(
                prompt,
                providers=[generator] if generator else [],
                system_prompt=GENERATOR_SYSTEM,
                max_tokens=2000,
                recorder=context.recorder,
            )
            if round_index == 0:
                draft = require_ok(self, context, result, "deliberation draft")
            elif result.ok:
                draft = result.content
            else:
                logger.warning("deliberation_revision_failed", round=round_index, error_kind=result.error_kind)
                break
            rounds = round_index + 1

            if reviewer is None:
                approved = True
                break

            review = await context.gateway.generate(
                "Check this answer for correctness and completeness:\n\n"
                f"{draft[: context.settings.review_excerpt_chars]}\n\n"
                'Reply "APPROVED" if the answer is good, or briefly (up to 100 words) list what to fix.',
                providers=[reviewer],
                system_prompt=REVIEWER_SYSTEM,
                max_tokens=500,
                allow_fallback=False,
                recorder=context.recorder,
            )
            await context.report_progress(10 + int(80 * rounds / max_rounds))
            if not review.ok:
                logger.warning("deliberation_review_failed", reviewer=reviewer, error_kind=review.error_kind)
                break
            feedback.append(review.content)
            if is_approved(review.content):
                approved = True
                break

        metrics.observe_deliberation_rounds(rounds)
        logger.info("deliberation_completed", rounds=rounds, approved=approved, reviewer=reviewer)
        return DeliberationResult(
            content=draft,
            providers=[provider for provider in (generator, reviewer) if provider],
            approved=approved,
            rounds=rounds,
            feedback=feedback,
        )
