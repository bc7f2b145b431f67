"""System and instruction prompts for cited answers and the council.

Every prompt that carries retrieved context asks the model to cite with
inline ``[CIT:doc_id:chunk_index]`` markers, the only citation format
the parsers understand.
"""

from typing import Iterable, Optional

CITATION_FORMAT = "[CIT:doc_id:chunk_index]"

# ---------------------------------------------------------------------------
# Single-shot cited answer
# ---------------------------------------------------------------------------

ANSWER_SYSTEM = """\
You are the AI assistant for {org_name}.

IMPORTANT RULES:
1. Answer ONLY from the retrieved context provided below.
2. Cite ALL sources using the format {citation_format} inline in your response.
3. If the context is insufficient, say "I don't have that information yet" rather \
than guessing.
4. Be precise, factual, and cite every claim.
5. Never make up information.

{context_section}

Provide your answer with inline citations."""

CONTEXT_SECTION = """\
RETRIEVED CONTEXT:
{context}
"""

NO_CONTEXT_SECTION = """\
RETRIEVED CONTEXT:
No relevant context is available for this question. Tell the user you do not \
have that information yet."""


def build_answer_prompt(org_name: str, context: str) -> str:
    if context.strip():
        context_section = CONTEXT_SECTION.format(context=context)
    else:
        context_section = NO_CONTEXT_SECTION
    return ANSWER_SYSTEM.format(
        org_name=org_name,
        citation_format=CITATION_FORMAT,
        context_section=context_section,
    )


# ---------------------------------------------------------------------------
# Council roles
# ---------------------------------------------------------------------------

ROLE_INSTRUCTIONS = {
    "researcher": """\
You are the Researcher for {org_name}. Your role is to:
- Find and extract relevant facts from the context
- List key information with citations {citation_format}
- Note any gaps or missing information
- Be thorough and systematic""",

    "analyst": """\
You are the Analyst for {org_name}. Your role is to:
- Synthesize facts into concise, actionable conclusions
- Provide citations {citation_format} for all claims
- Flag ambiguities or contradictions
- Offer clear recommendations""",

    "editor": """\
You are the Editor for {org_name}. Your role is to:
- Review and refine the analysis
- Ensure clarity and coherence
- Verify all citations are present
- Produce the final polished output""",

    "critic": """\
You are the Critic for {org_name}. Your role is to:
- Challenge assumptions and conclusions
- Check citation adequacy
- Identify logical flaws or gaps
- Propose clarifying questions""",
}

ROLE_PROMPT = """\
{instructions}

{context_section}
Provide your analysis with inline citations."""


def role_instructions(kind: str, org_name: str, custom: Optional[str] = None) -> str:
    """Archetype instructions for ``kind``; unknown kinds get the analyst's."""
    if custom:
        return custom.replace("{org_name}", org_name)
    template = ROLE_INSTRUCTIONS.get(kind.lower(), ROLE_INSTRUCTIONS["analyst"])
    return template.format(org_name=org_name, citation_format=CITATION_FORMAT)


def build_role_prompt(
    kind: str,
    org_name: str,
    context: str = "",
    instructions: Optional[str] = None,
) -> str:
    context_section = CONTEXT_SECTION.format(context=context) if context else ""
    return ROLE_PROMPT.format(
        instructions=role_instructions(kind, org_name, instructions),
        context_section=context_section,
    )


PREVIOUS_ROUND_HEADER = "\n\nPREVIOUS ROUND NOTES:\n"
PREVIOUS_ROUND_FOOTER = "\nConsider these notes in your analysis for Round {round_number}."


def build_previous_round_section(notes: Iterable, round_index: int) -> str:
    """Transcript of the prior round's notes, appended to a role prompt.

    ``round_index`` is the zero-based index of the round being prompted.
    """
    lines = [PREVIOUS_ROUND_HEADER]
    for note in notes:
        lines.append(f"\n{note.role}:\n{note.notes}\n")
    lines.append(PREVIOUS_ROUND_FOOTER.format(round_number=round_index + 1))
    return "".join(lines)


def format_panel(notes: Iterable, separator: str = "\n\n---\n\n") -> str:
    return separator.join(f"{note.role}:\n{note.notes}" for note in notes)


# ---------------------------------------------------------------------------
# Synthesis and critic review
# ---------------------------------------------------------------------------

SYNTHESIS_SYSTEM = """\
You are the Editor for {org_name}. Synthesize the panel's notes into a clear, \
comprehensive final answer.

PANEL NOTES:
{panel}

Your task:
1. Combine insights from all panel members
2. Resolve any contradictions
3. Ensure all claims have citations {citation_format}
4. Produce a polished, coherent final answer
5. Be concise but complete"""

SYNTHESIS_USER = "Synthesize the panel's analysis for: {query}"


def build_synthesis_prompt(org_name: str, notes: Iterable) -> str:
    return SYNTHESIS_SYSTEM.format(
        org_name=org_name,
        panel=format_panel(notes),
        citation_format=CITATION_FORMAT,
    )


CRITIC_REVIEW_SECTION = """

PANEL NOTES TO REVIEW:
{panel}

PROPOSED FINAL ANSWER:
{final}"""

CRITIC_USER = (
    "Review the panel notes and proposed answer. "
    "Identify any issues, gaps, or improvements needed."
)


def build_critic_prompt(org_name: str, context: str, notes: Iterable, final: str) -> str:
    return build_role_prompt("critic", org_name, context) + CRITIC_REVIEW_SECTION.format(
        panel=format_panel(notes, separator="\n\n"),
        final=final,
    )
