from __future__ import annotations

import re

from ...core.logging import get_logger
from ..classifier import ExecutionMode
from .base import DebateArgument, DebateResult, ModeExecutor, PhaseContext, require_ok

logger = get_logger(name=__name__)

PRO_SYSTEM = "You are a skilled debater arguing FOR the position. Be persuasive but honest."
CON_SYSTEM = "You are a skilled debater arguing AGAINST the position. Be persuasive but honest."
JUDGE_SYSTEM = "You are a fair and impartial judge. Evaluate arguments on their merit, logic, and evidence."

JUDGE_PROMPT = """You are an impartial judge evaluating a debate.

Question being debated: {question}

Full debate transcript:
{transcript}

Evaluate both sides fairly and provide:
1. Your verdict: PRO or CON (which side made the stronger case)
2. Brief reasoning (2-3 sentences)

Format your response as:
VERDICT: [PRO/CON]
REASONING: [your explanation]"""

_VERDICT = re.compile(r"VERDICT:\s*(PRO|CON)", re.IGNORECASE)
_VERDICT_REASONING = re.compile(r"REASONING:\s*(.+)", re.IGNORECASE | re.DOTALL)

DEFAULT_VERDICT = "PRO"
NO_JUDGE_REASONING = "No judge model available. Defaulting to PRO based on first-mover advantage."


def parse_verdict(content: str) -> tuple[str, str]:
    verdict = _VERDICT.search(content)
    reasoning = _VERDICT_REASONING.search(content)
    return (
        verdict.group(1).upper() if verdict else DEFAULT_VERDICT,
        reasoning.group(1).strip() if reasoning else content.strip(),
    )


class DebateModeExecutor(ModeExecutor):
    """PRO and CON argue over a shared transcript; an optional judge decides."""

    mode = ExecutionMode.DEBATE

    def __init__(self, *, rounds: int | None = None) -> None:
        self._rounds = rounds

    async def execute(self, context: PhaseContext) -> DebateResult:
        models = context.models
        if len(models) < 2 or not (context.available(models[0]) and context.available(models[1])):
            raise self.fail(context, "debate needs two available backends")
        pro, con = models[0], models[1]
        judge = models[2] if len(models) > 2 and context.available(models[2]) else None
        rounds = max(1, self._rounds or context.settings.debate_rounds)
        question = context.original_message

        arguments: list[DebateArgument] = []
        transcript = ""
        for round_number in range(1, rounds + 1):
            if round_number == 1:
                pro_prompt = (
                    "You are arguing IN FAVOR of the following position. Make your strongest case.\n\n"
                    f"Question: {question}\n\nProvide 2-3 compelling arguments supporting this position."
                )
            else:
                pro_prompt = (
                    "You are arguing IN FAVOR. Counter the opposing arguments and strengthen your position.\n\n"
                    f"Question: {question}\n\nPrevious arguments:\n{transcript}\n\n"
                    "Provide your rebuttal and additional supporting arguments."
                )
            pro_argument = await self._argue(context, pro, pro_prompt, PRO_SYSTEM, "PRO")
            arguments.append(DebateArgument(provider=pro, position="pro", round=round_number, argument=pro_argument))
            transcript += f"\n\n[PRO Round {round_number}]: {pro_argument}"

            if round_number == 1:
                con_prompt = (
                    "You are arguing AGAINST the following position. Make your strongest case.\n\n"
                    f"Question: {question}\n\nPrevious PRO argument:\n{pro_argument}\n\n"
                    "Provide 2-3 compelling arguments against this position."
                )
            else:
                con_prompt = (
                    "You are arguing AGAINST. Counter the supporting arguments.\n\n"
                    f"Question: {question}\n\nPrevious arguments:\n{transcript}\n\n"
                    "Provide your rebuttal and additional opposing arguments."
                )
            con_argument = await self._argue(context, con, con_prompt, CON_SYSTEM, "CON")
            arguments.append(DebateArgument(provider=con, position="con", round=round_number, argument=con_argument))
            transcript += f"\n\n[CON Round {round_number}]: {con_argument}"
            await context.report_progress(10 + int(70 * round_number / rounds))

        verdict, reasoning, judged = DEFAULT_VERDICT, NO_JUDGE_REASONING, False
        if judge is not None:
            result = await context.gateway.generate(
                JUDGE_PROMPT.format(question=question, transcript=transcript),
                providers=[judge],
                system_prompt=JUDGE_SYSTEM,
                allow_fallback=False,
                recorder=context.recorder,
            )
            if result.ok:
                verdict, reasoning = parse_verdict(result.content)
                judged = True
            else:
                logger.warning("debate_judge_failed", judge=judge, error_kind=result.error_kind)

        logger.info("debate_completed", rounds=rounds, verdict=verdict, judged=judged)
        return DebateResult(
            content=f"Verdict: {verdict}\n\n{reasoning}",
            providers=[provider for provider in (pro, con, judge) if provider],
            arguments=arguments,
            transcript=transcript.strip(),
            verdict=verdict,
            reasoning=reasoning,
            judged=judged,
        )

    async def _argue(self, context: PhaseContext, provider: str, prompt: str, system: str, side: str) -> str:
        result = await context.gateway.generate(
            prompt,
            providers=[provider],
            system_prompt=system,
            allow_fallback=False,
            recorder=context.recorder,
        )
        return require_ok(self, context, result, f"{side} argument")
