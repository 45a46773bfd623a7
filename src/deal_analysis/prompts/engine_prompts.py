"""
Prompts for the specialized analysis engines.

Each engine scores one dimension of a deal from the facts it is given.
The response model is EngineAssessment (deal_analysis.pipeline.engines).
"""

import json
from typing import Any


# =============================================================================
# Engine focus areas
# =============================================================================

ENGINE_FOCUS: dict[str, dict[str, Any]] = {
    'founder_team_strength': {
        'title': 'Founder & Team Strength',
        'areas': [
            'Founder-market fit',
            'Previous experience and exits',
            'Technical expertise',
            'Execution track record',
        ],
    },
    'market_attractiveness': {
        'title': 'Market Attractiveness',
        'areas': [
            'Market size (TAM)',
            'Market growth rate',
            'Market timing',
            'Competitive landscape',
            'Customer acquisition and traction',
            'Barriers to entry and regulation',
        ],
    },
    'product_strength_ip': {
        'title': 'Product Strength & IP',
        'areas': [
            'Product-market fit',
            'Technology moat and intellectual property',
            'Scalability',
        ],
    },
    'financial_feasibility': {
        'title': 'Financial Feasibility',
        'areas': [
            'Revenue model',
            'Revenue growth',
            'Unit economics',
            'Burn rate and runway',
            'Capital efficiency',
            'Valuation relative to round size',
        ],
    },
    'investment_thesis_alignment': {
        'title': 'Investment Thesis Alignment',
        'areas': [
            'Fit with the fund strategy and stage',
            'Portfolio synergies',
            'Value-add opportunity for the fund',
        ],
    },
}


# =============================================================================
# System Prompt
# =============================================================================

ENGINE_SYSTEM_PROMPT = """You are an investment analyst on a {fund_type} fund's deal team.

You are responsible for ONE dimension of the deal assessment: **{title}**.

## Focus Areas
{areas}

## Scoring Rules

- Score the dimension from 0 to 100 using ONLY the facts provided
- Do NOT fabricate or infer information that the facts do not support
- If the facts contain no evidence for this dimension, set `score` to null and
  `has_evidence` to false. Never guess a default score.
- `confidence` (0-100) reflects how much of the focus area the facts cover
- `quality_score` (0-100) reflects how specific and well-sourced the facts are
- List concrete strengths and concerns; each should reference a fact
- Cite where each fact came from in `sources` when the facts name a source
"""

ENGINE_USER_PROMPT_TEMPLATE = """Assess the following deal.

## Company
{company_name}

## Deal Facts
```json
{facts_json}
```
{enrichment_section}
Return your assessment of **{title}** only."""


def build_engine_prompt(
    engine_name: str,
    company_name: str,
    facts: dict[str, Any],
    enrichment: dict[str, Any] | None = None,
    fund_type: str = 'vc',
) -> list[dict[str, str]]:
    """
    Build the prompt messages for one specialized engine.

    Args:
        engine_name: Key into ENGINE_FOCUS
        company_name: Company under analysis
        facts: Raw deal facts
        enrichment: Facts added by the enrichment stage, if any
        fund_type: "vc" or "pe"

    Returns:
        List of message dicts for OpenAI chat completion
    """
    focus = ENGINE_FOCUS.get(
        engine_name,
        {'title': engine_name.replace('_', ' ').title(), 'areas': []},
    )
    areas = '\n'.join(f'- {area}' for area in focus['areas']) or '- General assessment'

    enrichment_section = ''
    if enrichment:
        enrichment_section = (
            '\n## Enrichment Data\n```json\n'
            f'{json.dumps(enrichment, indent=2, default=str)}\n```\n'
        )

    system_prompt = ENGINE_SYSTEM_PROMPT.format(
        fund_type=fund_type.upper(),
        title=focus['title'],
        areas=areas,
    )
    user_prompt = ENGINE_USER_PROMPT_TEMPLATE.format(
        company_name=company_name or 'Unnamed company',
        facts_json=json.dumps(
            {k: v for k, v in facts.items() if v is not None}, indent=2, default=str
        ),
        enrichment_section=enrichment_section,
        title=focus['title'],
    )

    return [
        {'role': 'system', 'content': system_prompt},
        {'role': 'user', 'content': user_prompt},
    ]


# =============================================================================
# Executive summary
# =============================================================================

SUMMARY_SYSTEM_PROMPT = """You write executive summaries for an investment committee.

Write 2-3 sentences. State the overall score and band, the strongest dimension,
and the most important risk. Use only the data provided; do not add facts."""


def build_summary_prompt(
    company_name: str,
    overall_score: int,
    rag_label: str,
    engine_scores: dict[str, float | None],
    risk_factors: list[str],
) -> list[dict[str, str]]:
    """Build the prompt messages for the executive summary."""
    scored = {
        ENGINE_FOCUS.get(name, {}).get('title', name): score
        for name, score in engine_scores.items()
        if score is not None
    }
    lines = [
        f'Company: {company_name}',
        f'Overall score: {overall_score}/100 ({rag_label})',
        'Dimension scores:',
        *(f'- {title}: {round(score)}' for title, score in scored.items()),
    ]
    if risk_factors:
        lines.append('Risk factors:')
        lines.extend(f'- {risk}' for risk in risk_factors[:5])

    return [
        {'role': 'system', 'content': SUMMARY_SYSTEM_PROMPT},
        {'role': 'user', 'content': '\n'.join(lines)},
    ]
