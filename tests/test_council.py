from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from chimera.core.errors import PhaseExecutionError
from chimera.orchestration.classifier import ExecutionMode
from chimera.orchestration.modes.council import SYNTHESIS_SYSTEM, CouncilModeExecutor, consensus_score, parse_vote
from tests.helpers.stubs import ScriptedBackend, failing, make_context


def _voter(provider: str, recommendation: str, *, synthesis: str = "unified plan") -> ScriptedBackend:
    def reply(request):
        if request.system_prompt == SYNTHESIS_SYSTEM:
            return synthesis
        return f"RECOMMENDATION: {recommendation}\nREASONING: {provider} thinks so.\nCONFIDENCE: HIGH"

    return ScriptedBackend(provider, default=reply)


def test_consensus_score_buckets_near_duplicates():
    assert consensus_score([]) == 0.0
    assert consensus_score(["Use Redis", "use   redis", "USE REDIS"]) == pytest.approx(1.0)
    assert consensus_score(["a", "b", "a"]) == pytest.approx(2 / 3)
    assert consensus_score(["a", "b", "c"]) == pytest.approx(1 / 3)


def test_parse_vote_reads_structured_reply():
    vote = parse_vote("claude", "RECOMMENDATION: Use Redis\nREASONING: fast and simple\nCONFIDENCE: low")

    assert vote.vote == "Use Redis"
    assert vote.reasoning == "fast and simple"
    assert vote.confidence == pytest.approx(0.5)


def test_parse_vote_unstructured_reply_uses_whole_text():
    vote = parse_vote("claude", "  Just use Redis.  ")

    assert vote.vote == "Just use Redis."
    assert vote.confidence == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_advanced_council_votes_and_synthesizes():
    context = make_context(
        ExecutionMode.COUNCIL,
        ["claude", "openai", "gemini"],
        _voter("claude", "Use Redis"),
        _voter("openai", "Use Redis"),
        _voter("gemini", "Use Memcached"),
    )
    before = REGISTRY.get_sample_value("chimera_council_consensus_count") or 0.0

    result = await CouncilModeExecutor().execute(context)

    assert result.variant == "advanced"
    assert [vote.provider for vote in result.votes] == ["claude", "openai", "gemini"]
    assert result.consensus == pytest.approx(2 / 3)
    assert result.winner == "Use Redis"
    assert result.content == "unified plan"
    assert REGISTRY.get_sample_value("chimera_council_consensus_count") == pytest.approx(before + 1.0)
    assert context.report_progress.values == [10, 60]


@pytest.mark.asyncio
async def test_simple_council_lists_votes_without_synthesis():
    claude = _voter("claude", "Use Redis")
    context = make_context(
        ExecutionMode.COUNCIL,
        ["claude", "openai"],
        claude,
        ScriptedBackend("openai", default="Use Redis"),
    )

    result = await CouncilModeExecutor(variant="simple").execute(context)

    assert result.variant == "simple"
    assert "**openai:** Use Redis" in result.content
    assert all(call.system_prompt != SYNTHESIS_SYSTEM for call in claude.calls)


@pytest.mark.asyncio
async def test_council_tolerates_missing_votes():
    context = make_context(
        ExecutionMode.COUNCIL,
        ["claude", "openai"],
        _voter("claude", "Use Redis"),
        ScriptedBackend("openai", default=failing("openai")),
    )

    result = await CouncilModeExecutor().execute(context)

    assert [vote.provider for vote in result.votes] == ["claude"]
    assert result.consensus == pytest.approx(1.0)
    assert result.content == "Use Redis"


@pytest.mark.asyncio
async def test_council_with_no_votes_fails_the_phase():
    context = make_context(
        ExecutionMode.COUNCIL,
        ["claude", "openai"],
        ScriptedBackend("claude", default=failing("claude")),
        ScriptedBackend("openai", default=failing("openai")),
    )

    with pytest.raises(PhaseExecutionError, match="no council member returned a vote"):
        await CouncilModeExecutor().execute(context)


@pytest.mark.asyncio
async def test_failed_synthesis_returns_winning_vote():
    def reply(request):
        if request.system_prompt == SYNTHESIS_SYSTEM:
            raise failing("claude")
        return "RECOMMENDATION: Use Redis\nREASONING: ok\nCONFIDENCE: MEDIUM"

    context = make_context(
        ExecutionMode.COUNCIL,
        ["claude", "openai"],
        ScriptedBackend("claude", default=reply),
        ScriptedBackend("openai", default=reply),
    )

    result = await CouncilModeExecutor().execute(context)

    assert result.content == "Use Redis"
    assert result.winner == "Use Redis"
