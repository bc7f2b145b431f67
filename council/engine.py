"""Council orchestration: several agent roles deliberate over shared context.

Strategies:
  - consensus: every role answers concurrently, then one synthesis call
    merges the panel into the final answer
  - deliberate: ``rounds`` sequential rounds; from round 2 on each role
    also sees the previous round's notes. Roles within a round still run
    concurrently. One synthesis call over the whole panel at the end
  - critic: consensus, then one critic call reviewing the panel and the
    proposed answer. The critic's note is appended to the panel; the
    final answer is not revised

Role notes are always assembled in role-declaration order, regardless of
which call finishes first. A failed role call aborts consensus and
deliberate runs; a failed critic call only drops the critic note.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from council.models import (
    CouncilContext,
    CouncilNote,
    CouncilResult,
    CouncilRole,
    Strategy,
    default_roles,
)
from llm.citations import dedupe_citations, parse_citations
from llm.client import ChatResponse, ChatUsage, LLMClient
from rag.prompts import (
    CRITIC_USER,
    SYNTHESIS_USER,
    build_critic_prompt,
    build_previous_round_section,
    build_role_prompt,
    build_synthesis_prompt,
)

logger = logging.getLogger(__name__)

DEFAULT_ROUNDS = 2
CRITIC_ROLE_NAME = "Critic"


class CouncilError(Exception):
    """A council run could not produce a result."""


class CouncilRoleError(CouncilError):
    """One role's chat call failed; the whole run is aborted."""

    def __init__(self, role: str, round_index: int, cause: BaseException):
        super().__init__(f"Council role '{role}' failed in round {round_index + 1}: {cause}")
        self.role = role
        self.round = round_index
        self.cause = cause


@dataclass(frozen=True)
class _CallOptions:
    tools: Optional[list[dict]] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class _RoleOutcome:
    note: CouncilNote
    usage: ChatUsage


def _tokens_used(usage: ChatUsage) -> int:
    return usage.total_tokens or (usage.prompt_tokens + usage.completion_tokens)


class Council:
    """Runs council strategies against one language-model client."""

    def __init__(self, client: LLMClient):
        self.client = client

    async def run(
        self,
        context: CouncilContext,
        roles: Optional[list[CouncilRole]] = None,
        strategy: str = Strategy.CONSENSUS.value,
        rounds: int = DEFAULT_ROUNDS,
        tools: Optional[list[dict]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> CouncilResult:
        """Run one council deliberation.

        Args:
            context: Query, rendered retrieved context and org name.
            roles: Participating roles; defaults to Researcher, Analyst, Editor.
            strategy: ``consensus``, ``deliberate`` or ``critic``.
            rounds: Number of rounds for ``deliberate``.
            tools, temperature, max_tokens: Forwarded to every chat call.

        Raises:
            ValueError: empty role list, ``rounds < 1`` or unknown strategy.
            CouncilRoleError: a role call failed (consensus and deliberate).
            CouncilError: the synthesis call failed.
        """
        strategy = Strategy(strategy)
        roles = default_roles() if roles is None else list(roles)
        if not roles:
            raise ValueError("A council needs at least one role")
        if rounds < 1:
            raise ValueError(f"rounds must be >= 1, got {rounds}")

        options = _CallOptions(tools=tools, temperature=temperature, max_tokens=max_tokens)
        t0 = time.perf_counter()
        logger.info(
            "Council run: strategy=%s roles=%s rounds=%d",
            strategy.value, [r.name for r in roles], rounds if strategy == Strategy.DELIBERATE else 1,
        )

        if strategy == Strategy.DELIBERATE:
            result = await self._run_deliberate(context, roles, rounds, options)
        elif strategy == Strategy.CRITIC:
            result = await self._run_critic(context, roles, options)
        else:
            result = await self._run_consensus(context, roles, options)

        logger.info(
            "Council %s done in %.1fs: %d notes, %d citations, tokens in=%d out=%d",
            result.strategy, time.perf_counter() - t0, len(result.panel),
            len(result.all_citations), result.total_tokens_in, result.total_tokens_out,
        )
        return result

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _run_consensus(
        self,
        context: CouncilContext,
        roles: list[CouncilRole],
        options: _CallOptions,
    ) -> CouncilResult:
        outcomes = await self._run_round(context, roles, 0, [], options)
        panel = [o.note for o in outcomes]
        return await self._finish(context, panel, outcomes, options, Strategy.CONSENSUS)

    async def _run_deliberate(
        self,
        context: CouncilContext,
        roles: list[CouncilRole],
        rounds: int,
        options: _CallOptions,
    ) -> CouncilResult:
        panel: list[CouncilNote] = []
        all_outcomes: list[_RoleOutcome] = []
        previous: list[CouncilNote] = []

        for round_index in range(rounds):
            outcomes = await self._run_round(context, roles, round_index, previous, options)
            previous = [o.note for o in outcomes]
            panel.extend(previous)
            all_outcomes.extend(outcomes)
            logger.debug("Deliberation round %d/%d complete", round_index + 1, rounds)

        return await self._finish(context, panel, all_outcomes, options, Strategy.DELIBERATE)

    async def _run_critic(
        self,
        context: CouncilContext,
        roles: list[CouncilRole],
        options: _CallOptions,
    ) -> CouncilResult:
        result = await self._run_consensus(context, roles, options)
        result.strategy = Strategy.CRITIC.value

        system = build_critic_prompt(
            context.org_name, context.retrieved_context, result.panel, result.final
        )
        try:
            response = await self._chat(system, CRITIC_USER, options)
        except Exception as e:
            # The critic note is additive; the consensus answer stands without it
            logger.warning("Critic review failed, returning consensus result: %s", e)
            return result

        critic_note = CouncilNote(
            role=CRITIC_ROLE_NAME,
            notes=response.content,
            citations=parse_citations(response.content),
            tokens_used=_tokens_used(response.usage),
            round=1,
        )
        result.panel.append(critic_note)
        result.all_citations = dedupe_citations(c for note in result.panel for c in note.citations)
        result.total_tokens_in += response.usage.prompt_tokens
        result.total_tokens_out += response.usage.completion_tokens
        return result

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _chat(self, system: str, user: str, options: _CallOptions) -> ChatResponse:
        return await self.client.chat(
            [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            tools=options.tools,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
        )

    async def _invoke_role(
        self,
        context: CouncilContext,
        role: CouncilRole,
        round_index: int,
        previous: list[CouncilNote],
        options: _CallOptions,
    ) -> _RoleOutcome:
        system = build_role_prompt(
            role.kind.value, context.org_name, context.retrieved_context, role.instructions
        )
        if round_index > 0 and previous:
            system += build_previous_round_section(previous, round_index)

        try:
            response = await self._chat(system, context.query, options)
        except Exception as e:
            raise CouncilRoleError(role.name, round_index, e) from e

        note = CouncilNote(
            role=role.name,
            notes=response.content,
            citations=parse_citations(response.content),
            tokens_used=_tokens_used(response.usage),
            round=round_index,
        )
        return _RoleOutcome(note=note, usage=response.usage)

    async def _run_round(
        self,
        context: CouncilContext,
        roles: list[CouncilRole],
        round_index: int,
        previous: list[CouncilNote],
        options: _CallOptions,
    ) -> list[_RoleOutcome]:
        """All roles concurrently; outcomes in role order. First failure cancels the rest."""
        tasks = [
            asyncio.create_task(self._invoke_role(context, role, round_index, previous, options))
            for role in roles
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _synthesize(
        self,
        context: CouncilContext,
        panel: list[CouncilNote],
        options: _CallOptions,
    ) -> ChatResponse:
        system = build_synthesis_prompt(context.org_name, panel)
        try:
            return await self._chat(system, SYNTHESIS_USER.format(query=context.query), options)
        except Exception as e:
            raise CouncilError(f"Council synthesis failed: {e}") from e

    async def _finish(
        self,
        context: CouncilContext,
        panel: list[CouncilNote],
        outcomes: list[_RoleOutcome],
        options: _CallOptions,
        strategy: Strategy,
    ) -> CouncilResult:
        synthesis = await self._synthesize(context, panel, options)
        return CouncilResult(
            final=synthesis.content,
            panel=panel,
            all_citations=dedupe_citations(c for note in panel for c in note.citations),
            total_tokens_in=sum(o.usage.prompt_tokens for o in outcomes) + synthesis.usage.prompt_tokens,
            total_tokens_out=sum(o.usage.completion_tokens for o in outcomes) + synthesis.usage.completion_tokens,
            strategy=strategy.value,
        )
