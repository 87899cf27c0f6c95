"""
Forge Requirement Q&A

Coverage bookkeeping and prompts for the clarify stage. Each decision is
filed under one fixed area; an area is covered once it holds its expected
number of decisions.
"""
from __future__ import annotations

import dataclasses
from typing import Any, Dict, List, Optional

REFINEMENT_GREENFIELD = {
    "Functional requirements": 6,
    "Acceptance criteria": 4,
    "Technical constraints": 3,
    "Scope": 3,
    "Edge cases": 3,
    "UX/interface": 3,
}

REFINEMENT_BROWNFIELD = {
    "Change target": 3,
    "Functional requirements": 5,
    "Acceptance criteria": 3,
    "Constraints": 3,
    "Impact scope": 3,
    "Edge cases": 3,
}

SECTION_TITLES = {
    "Functional requirements": "Functional Requirements",
    "Acceptance criteria": "Acceptance Criteria",
    "Technical constraints": "Technical Constraints",
    "Constraints": "Technical Constraints",
    "Edge cases": "Edge Cases",
    "Impact scope": "Impact Scope",
    "UX/interface": "UX / Interface",
    "Scope": "Scope",
    "Change target": "Implementation Hints",
}

OTHER_AREA = "Other"


@dataclasses.dataclass
class Decision:
    area: str
    question: str
    answer: str
    reason: str = ""
    requirement: str = ""

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Decision":
        return cls(
            area=str(d.get("area") or OTHER_AREA),
            question=str(d.get("question", "")),
            answer=str(d.get("answer", "")),
            reason=str(d.get("reason", "") or ""),
            requirement=str(d.get("requirement", "") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def expected_areas(brownfield: bool) -> Dict[str, int]:
    return REFINEMENT_BROWNFIELD if brownfield else REFINEMENT_GREENFIELD


def compute_coverage(decisions: List[Decision], expected: Dict[str, int]) -> Dict[str, float]:
    return {
        area: min(1.0, sum(1 for d in decisions if d.area == area) / count)
        for area, count in expected.items()
    }


def is_fully_covered(coverage: Dict[str, float]) -> bool:
    return all(v >= 1.0 for v in coverage.values())


def _coverage_lines(coverage: Dict[str, float]) -> str:
    return "\n".join(f"- {area}: {round(v * 100)}%" for area, v in coverage.items())


def _decision_lines(decisions: List[Decision]) -> str:
    return "\n".join(f"- **[{d.area}]** {d.question} -> {d.answer}" for d in decisions)


def build_autopilot_prompt(
    title: str,
    description: str,
    decisions: List[Decision],
    brownfield: bool,
    repo_context: Optional[str] = None,
) -> str:
    """Prompt for one self-answered question."""
    expected = expected_areas(brownfield)
    coverage = compute_coverage(decisions, expected)
    areas = "\n".join(f"- {a} (expected questions: {n})" for a, n in expected.items())

    prompt = f"""You refine task requirements on your own: ask one question, answer it yourself,
and derive one concrete requirement from the exchange.

## Task
- Title: {title}
- Description: {description or "(none)"}

## Rules
1. Produce exactly one question and one answer.
2. Check the decisions collected so far and never cover the same ground twice.
3. Work on the least covered area first.
4. When every area is sufficiently covered, answer with done: true.
5. Ask about concrete behavior, inputs and outputs, acceptance checks, failure handling
   and impact on other parts. Avoid abstract design questions.
6. Go deeper on earlier answers instead of repeating surface-level questions.
7. Put a one-line requirement derived from this exchange in "requirement".

## Fixed areas (use these names only)
{areas}

## Current coverage
{_coverage_lines(coverage)}"""

    if repo_context:
        prompt += f"\n\n## Codebase context\n\n{repo_context}"
    else:
        prompt += "\n\n## No codebase context\n\nThere is no project path. Answer from general software design practice."

    if decisions:
        prompt += f"\n\n## Decisions so far\n\n{_decision_lines(decisions)}"

    prompt += """

## Response format (JSON only)

{"question": "...", "area": "one of the fixed areas", "answer": "...", "reason": "...", "requirement": "...", "done": false}

When every area is covered:
{"done": true}"""
    return prompt


def build_question_prompt(
    description: str,
    decisions: List[Decision],
    brownfield: bool,
    repo_context: Optional[str] = None,
) -> str:
    """Prompt for one multiple-choice question put to a human."""
    expected = expected_areas(brownfield)
    coverage = compute_coverage(decisions, expected)
    areas = "\n".join(f"- {a} (expected questions: {n})" for a, n in expected.items())

    prompt = f"""You help turn a task into concrete requirements by asking the user questions.

## Rules
1. Ask one question at a time with 3-4 options, each with a reason.
2. Never ask again about something already decided or mentioned in an answer.
3. Do not offer meta options such as "I will type my own answer".
4. Prioritize the least covered areas.
5. If an answer contradicts an earlier one, ask which one holds instead of moving on.
6. When every area is covered, answer with done: true.

## Fixed areas (use these names only)
{areas}

## Current coverage
{_coverage_lines(coverage)}"""

    if brownfield and repo_context:
        prompt += f"\n\n## Repository summary (already scanned, do not scan again)\n\n{repo_context}"
    if decisions:
        prompt += f"\n\n## Decisions so far (never ask these again)\n\n{_decision_lines(decisions)}"
    if description:
        prompt += f"\n\n## Task description\n\n{description}"

    prompt += """

## Response format (JSON only)

{"question": "...", "options": [{"label": "...", "reason": "..."}], "area": "one of the fixed areas", "done": false}

When every area is covered:
{"done": true}"""
    return prompt


def format_decisions(decisions: List[Decision], coverage: Dict[str, float]) -> str:
    md = "# Decisions\n\n"
    if coverage:
        md += "## Coverage\n\n"
        for area, value in coverage.items():
            filled = round(value * 10)
            md += f"- {area}: {'#' * filled}{'.' * (10 - filled)} {round(value * 100)}%\n"
        md += "\n"

    by_area: Dict[str, List[Decision]] = {}
    for d in decisions:
        by_area.setdefault(d.area, []).append(d)

    md += "## Decisions\n\n"
    for area, items in by_area.items():
        md += f"### {area}\n\n"
        for d in items:
            md += f"- **Q:** {d.question}\n  - **A:** {d.answer}\n"
            if d.reason:
                md += f"  - **Why:** {d.reason}\n"
        md += "\n"
    return md


def format_requirements(decisions: List[Decision]) -> str:
    """Group derived requirements into spec-ready sections."""
    sections: Dict[str, List[str]] = {}
    for d in decisions:
        title = SECTION_TITLES.get(d.area, "Functional Requirements")
        sections.setdefault(title, []).append(d.requirement or d.answer)

    md = "## Refined Requirements\n\n"
    for title in dict.fromkeys(SECTION_TITLES.values()):
        items = sections.get(title)
        if not items:
            continue
        md += f"### {title}\n\n"
        if title == "Functional Requirements":
            md += "".join(f"{i}. {r}\n" for i, r in enumerate(items, 1))
        else:
            md += "".join(f"- {r}\n" for r in items)
        md += "\n"
    return md
