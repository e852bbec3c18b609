from __future__ import annotations

import re
from typing import Sequence

from ...core import metrics
from ...core.logging import get_logger
from ...services.gateway import ModelCallResult
from ..classifier import ExecutionMode
from ..team import TeamRole
from .base import CouncilResult, CouncilVote, ModeExecutor, PhaseContext

logger = get_logger(name=__name__)

SIMPLE_VOTE_PROMPT = """You are taking part in a council vote. Answer briefly.

Question: {question}

Give your recommendation in one or two sentences. Be specific."""

SIMPLE_VOTE_SYSTEM = "You are an expert assistant. Answer briefly and to the point. No code blocks. At most 150 words."

ADVANCED_VOTE_PROMPT = """You are participating in an architecture council. Analyze the question and provide your expert recommendation.

Context: {context}

Question: {question}

Respond in this format:
RECOMMENDATION: [your specific recommendation]
REASONING: [2-3 sentences explaining why]
CONFIDENCE: [HIGH/MEDIUM/LOW]"""

ADVANCED_VOTE_SYSTEM = "You are a senior architect. Provide thoughtful, well-reasoned recommendations."

SYNTHESIS_SYSTEM = "You are the lead architect. Synthesize team input into a clear, actionable recommendation."

_RECOMMENDATION = re.compile(r"RECOMMENDATION:\s*(.+?)(?=REASONING:|$)", re.IGNORECASE | re.DOTALL)
_REASONING = re.compile(r"REASONING:\s*(.+?)(?=CONFIDENCE:|$)", re.IGNORECASE | re.DOTALL)
_CONFIDENCE = re.compile(r"CONFIDENCE:\s*(HIGH|MEDIUM|LOW)", re.IGNORECASE)

CONFIDENCE_LEVELS = {"HIGH": 0.9, "MEDIUM": 0.7, "LOW": 0.5}
DEFAULT_CONFIDENCE = 0.7


def vote_bucket(vote: str, width: int = 50) -> str:
    return " ".join(vote.lower().split())[:width]


def consensus_score(votes: Sequence[str], *, bucket_chars: int = 50) -> float:
    """``1 - (distinct - 1) / total`` over near-duplicate buckets; 0.0 with no votes."""
    if not votes:
        return 0.0
    distinct = {vote_bucket(vote, bucket_chars) for vote in votes}
    return 1 - (len(distinct) - 1) / len(votes)


def parse_vote(provider: str, content: str) -> CouncilVote:
    recommendation = _RECOMMENDATION.search(content)
    reasoning = _REASONING.search(content)
    confidence = _CONFIDENCE.search(content)
    return CouncilVote(
        provider=provider,
        vote=recommendation.group(1).strip() if recommendation else content.strip(),
        reasoning=reasoning.group(1).strip() if reasoning else "",
        confidence=CONFIDENCE_LEVELS.get(confidence.group(1).upper(), DEFAULT_CONFIDENCE)
        if confidence
        else DEFAULT_CONFIDENCE,
    )


class CouncilModeExecutor(ModeExecutor):
    """Fan the same question out to every available backend and combine the votes."""

    mode = ExecutionMode.COUNCIL

    def __init__(self, *, variant: str | None = None) -> None:
        self._variant = variant

    async def execute(self, context: PhaseContext) -> CouncilResult:
        variant = self._variant or context.settings.council_variant
        members = context.available_models()
        if not members:
            raise self.fail(context, "no council members are available")

        question = context.original_message
        if variant == "simple":
            prompt, system = SIMPLE_VOTE_PROMPT.format(question=question), SIMPLE_VOTE_SYSTEM
        else:
            prompt = ADVANCED_VOTE_PROMPT.format(context=context.task_prompt(), question=question)
            system = ADVANCED_VOTE_SYSTEM

        arrivals: list[str] = []

        def _job(provider: str):
            async def _vote() -> ModelCallResult:
                result = await context.gateway.generate(
                    prompt,
                    providers=[provider],
                    system_prompt=system,
                    max_tokens=1000,
                    allow_fallback=False,
                    recorder=context.recorder,
                )
                if result.ok:
                    arrivals.append(provider)
                return result

            return _vote

        await context.report_progress(10)
        outcomes = await context.batch_runner.run([_job(provider) for provider in members])
        responses: dict[str, str] = {}
        for provider, outcome in zip(members, outcomes):
            if outcome.ok and outcome.value is not None and outcome.value.ok:
                responses[provider] = outcome.value.content
            else:
                logger.info("council_vote_missing", provider=provider)
        await context.report_progress(60)

        if not responses:
            raise self.fail(context, "no council member returned a vote")

        ordered = [provider for provider in arrivals if provider in responses]
        if variant == "simple":
            votes = [CouncilVote(provider=provider, vote=responses[provider]) for provider in ordered]
        else:
            votes = [parse_vote(provider, responses[provider]) for provider in members if provider in responses]

        consensus = consensus_score([vote.vote for vote in votes], bucket_chars=context.settings.vote_bucket_chars)
        metrics.observe_council_consensus(consensus)

        if variant == "simple":
            winner = votes[0].vote
            content = "\n\n".join(f"**{vote.provider}:** {vote.vote}" for vote in votes)
        else:
            winner = votes[0].vote
            content = winner
            if len(votes) > 1:
                content = await self._synthesize(context, votes) or winner

        logger.info("council_completed", variant=variant, votes=len(votes), consensus=round(consensus, 3))
        return CouncilResult(
            content=content,
            providers=[vote.provider for vote in votes],
            variant=variant,
            votes=votes,
            winner=winner,
            consensus=consensus,
        )

    async def _synthesize(self, context: PhaseContext, votes: Sequence[CouncilVote]) -> str | None:
        resolved = context.team.resolve_model(TeamRole.LEAD_ARCHITECT)
        lead = resolved[0] if resolved else votes[0].provider
        ballots = "\n\n---\n\n".join(
            f"**{vote.provider}** (confidence: {vote.confidence}):\n{vote.vote}\nReasoning: {vote.reasoning}"
            for vote in votes
        )
        result = await context.gateway.generate(
            "As lead architect, synthesize these council votes into a final recommendation:\n\n"
            f"{ballots}\n\n"
            "Provide a unified recommendation that incorporates the best insights from each expert.",
            providers=[lead],
            system_prompt=SYNTHESIS_SYSTEM,
            recorder=context.recorder,
        )
        if not result.ok:
            logger.warning("council_synthesis_failed", provider=lead, error_kind=result.error_kind)
            return None
        return result.content
