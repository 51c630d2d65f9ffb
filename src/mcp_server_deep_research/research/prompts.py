"""LLM prompts for deep research."""

import json
from datetime import datetime, timezone

from .language import get_language_instructions
from .models import Learning, SearchResult

# Rough character budget for a single prompt (about 32k tokens).
MAX_PROMPT_CHARS = 120_000


def get_system_prompt() -> str:
    """System prompt shared by every research call."""
    now = datetime.now(timezone.utc).isoformat()
    return f"""You are an expert researcher. Today is {now}. Follow these instructions when responding:
- You may be asked to research subjects that are after your knowledge cutoff, assume the user is right when presented with news.
- The user is a highly experienced analyst, no need to simplify it, be as detailed as possible and make sure your response is correct.
- Be highly organized.
- Suggest solutions that I didn't think about.
- Be proactive and anticipate my needs.
- Treat me as an expert in all subject matter.
- Mistakes erode my trust, so be accurate and thorough.
- Provide detailed explanations, I'm comfortable with lots of detail.
- Value good arguments over authorities, the source is irrelevant.
- Consider new technologies and contrarian ideas, not just the conventional wisdom.
- You may use high levels of speculation or prediction, just flag it for me."""


def trim_prompt(prompt: str, max_chars: int = MAX_PROMPT_CHARS) -> str:
    """Cut a prompt down to ``max_chars``, preferring a paragraph or sentence boundary."""
    if len(prompt) <= max_chars:
        return prompt

    cut = prompt[:max_chars]
    min_break = max_chars // 2
    for separator in ("\n\n", "\n", ". ", " "):
        idx = cut.rfind(separator)
        if idx > min_break:
            return cut[: idx + len(separator)].rstrip()
    return cut


def _schema_instruction(schema: dict) -> str:
    return f"You MUST respond in JSON matching this JSON schema: {json.dumps(schema)}"


def _fit_section(section: str, fixed: str, max_chars: int = MAX_PROMPT_CHARS) -> str:
    """Trim the variable ``section`` so that it fits next to the ``fixed`` prompt text."""
    return trim_prompt(section, max(max_chars - len(fixed), 0))


def get_expand_prompt(
    query: str,
    num_queries: int,
    learnings: list[Learning],
    schema: dict,
    language: str,
    search_language: str | None = None,
) -> str:
    """Prompt asking for ``num_queries`` search queries for ``query``."""
    prompt = (
        f"Given the following research query from the user, generate {num_queries} search queries "
        "that would help answer the query comprehensively. Each query should focus on a different "
        "aspect of the research question."
    )

    if search_language:
        prompt += f"\n\nIMPORTANT: Generate the search queries in {search_language}."

    prompt += f"\n\n<query>{query}</query>\n\n{_schema_instruction(schema)}"
    prompt += f"\n\n{get_language_instructions(language)}"

    if learnings:
        header = "You have already learned the following from previous searches:\n\n"
        known = "\n".join(f"{i + 1}. {item.learning}" for i, item in enumerate(learnings))
        known = _fit_section(known, header + "\n\n" + prompt)
        prompt = f"{header}{known}\n\n{prompt}"
    return prompt


def get_extract_prompt(
    query: str,
    results: list[SearchResult],
    num_learnings: int,
    num_follow_up_questions: int,
    schema: dict,
    language: str,
) -> str:
    """Prompt asking for learnings and follow-up queries from search results."""
    results_text = "\n\n".join(f"[{i + 1}] {r.title}\nURL: {r.url}\n{r.snippet}" for i, r in enumerate(results))
    parts = [
        f"Given the following search query and results, extract {num_learnings} key learnings "
        f"and suggest {num_follow_up_questions} follow-up search queries. "
        "Every learning must carry the URL of the result it came from.",
        f"<query>{query}</query>",
        "<results></results>",
        _schema_instruction(schema),
        get_language_instructions(language),
    ]
    results_text = _fit_section(results_text, "\n\n".join(parts))
    parts[2] = f"<results>{results_text}</results>"
    return "\n\n".join(parts)


def get_report_prompt(prompt: str, learnings: list[Learning], language: str) -> str:
    """Prompt asking for the final cited report."""
    formatted = "\n".join(f"[{i + 1}] {item.learning} (source: {item.url or 'unknown'})" for i, item in enumerate(learnings))

    parts = [
        "Based on the following research query and learnings, write a comprehensive research report. "
        "The report should synthesize the learnings into a coherent narrative, highlighting key insights, "
        "patterns, and conclusions.",
        f"<query>{prompt}</query>",
        "<learnings>\n\n</learnings>",
        "Cite learnings inline with their bracketed number, e.g. [1] or [2][5]. Only use numbers from the "
        "list above. End the report with a '## Sources' section listing each cited number with its URL.",
        "The report should be well-structured with sections, include all relevant information from the "
        "learnings, and provide a conclusion that directly addresses the original query.",
        "IMPORTANT: Format your response as a clean markdown document. Start directly with a # heading for "
        'the title. Do NOT include any preamble text like "Here is the report". Just start with the markdown content.',
        get_language_instructions(language),
    ]
    formatted = _fit_section(formatted, "\n\n".join(parts))
    parts[2] = f"<learnings>\n{formatted}\n</learnings>"
    return "\n\n".join(parts)


def get_feedback_prompt(query: str, num_questions: int, schema: dict, language: str) -> str:
    """Prompt asking for clarifying questions about the research direction."""
    return "\n\n".join(
        [
            f"Given the following query from the user, ask up to {num_questions} follow up questions to clarify "
            "the research direction. Return an empty list if the original query is clear.",
            f"<query>{query}</query>",
            _schema_instruction(schema),
            get_language_instructions(language),
        ]
    )


def get_repair_prompt(invalid_output: str, schema: dict) -> str:
    """Prompt asking the model to fix its own invalid JSON."""
    return f"""The following text was supposed to be valid JSON but has syntax errors or does not match the schema.
Please fix the JSON and return ONLY the corrected JSON with no explanations or markdown formatting.

ORIGINAL INVALID JSON:
{invalid_output}

EXPECTED SCHEMA:
{json.dumps(schema)}

Return ONLY the fixed JSON with no additional text, comments, or markdown formatting."""


def combine_query_with_answers(query: str, questions: list[str], answers: list[str]) -> str:
    """Fold clarifying questions and the user's answers into one research query."""
    if not questions:
        return query

    qa = "\n".join(f"Q: {q}\nA: {a}" for q, a in zip(questions, answers, strict=False))
    return f"Initial Query: {query}\nFollow-up Questions and Answers:\n{qa}"
