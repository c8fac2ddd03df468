"""
Instruction text for each refinement round.
"""
from __future__ import annotations

import json
import textwrap
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .models import (
    QUESTIONING_KEY,
    SUGGESTING_KEY,
    PhaseFormatExample,
    Question,
    Suggestion,
    TechStack,
    answer_key,
)

USER_STORY_MARKER = "【User Story】"
ACCEPTANCE_CRITERIA_MARKER = "【Acceptance Criteria】"

NO_SUGGESTIONS_ACCEPTED = "(No suggestions were accepted this round.)"

_JSON_ONLY_DIRECTIVE = (
    "Do not add any explanation, heading or bullet list. Reply with the JSON array only."
)
_SUGGESTING_DIRECTIVE = (
    "Do not ask any further questions. Do not add any explanation, heading or bullet list. "
    "Reply with the JSON array only."
)

_GUIDELINES = textwrap.dedent(
    """
    IMPORTANT GUIDELINES:
    1. All your questions and suggestions must be directly related to this specific user story
    2. Focus on clarifying implementation details, edge cases, and factors that could impact the successful delivery of THIS user story
    3. Consider the product context deeply - understand the target users, core values, and business goals
    4. Ask specific, actionable questions that can be answered with concrete information
    5. Provide suggestions that are measurable, implementable, and aligned with the product vision
    6. Avoid generic or theoretical questions/suggestions
    """
).strip()

ASSISTANT_INSTRUCTIONS = (
    "You are a multi-role requirement refinement assistant. Your goal is to help a Product Manager "
    "refine a user story. Each conversation thread carries its own product context, user story and "
    "role perspectives; follow the format instructions given in the latest message exactly."
)


def render_role_lines(selected_roles: Sequence[str], role_prompts: Mapping[str, str]) -> str:
    lines = [f"- {role}: {role_prompts[role]}" for role in selected_roles if role in role_prompts]
    return "".join(line + "\n" for line in lines)


def filter_format_examples(
    phase_key: str,
    selected_roles: Sequence[str],
    phase_format_examples: Mapping[str, Sequence[PhaseFormatExample]],
) -> List[PhaseFormatExample]:
    selected = set(selected_roles)
    return [example for example in phase_format_examples.get(phase_key) or [] if example.role in selected]


def fence_json(value: Any) -> str:
    return "```json\n" + json.dumps(value, ensure_ascii=False) + "\n```"


def render_format_example(examples: Iterable[PhaseFormatExample]) -> str:
    return fence_json([example.to_dict() for example in examples])


def build_phase_instruction(
    phase_key: str,
    selected_roles: Sequence[str],
    role_prompts: Mapping[str, str],
    phase_prompts: Mapping[str, str],
    phase_format_examples: Mapping[str, Sequence[PhaseFormatExample]],
    additional_info: Optional[str] = None,
) -> str:
    """
    Compose the instruction that asks the assistant for the next questions or suggestions.

    The exemplar is embedded as literal JSON so the assistant copies its shape; replies
    still go through the tolerant parser because the directive is not always obeyed.
    """
    role_lines = render_role_lines(selected_roles, role_prompts)
    phase_desc = phase_prompts.get(phase_key, "") if phase_prompts else ""
    example = render_format_example(filter_format_examples(phase_key, selected_roles, phase_format_examples or {}))
    directive = _SUGGESTING_DIRECTIVE if phase_key == SUGGESTING_KEY else _JSON_ONLY_DIRECTIVE

    instruction = (
        "Based on the current user story and the conversation so far, respond from the perspective "
        "of each of the following roles:\n"
        f"{role_lines}\n"
        f"{phase_desc}\n"
        f"Format example:\n{example}\n"
        f"{directive}"
    )
    return with_additional_info(instruction, additional_info)


def with_additional_info(instruction: str, additional_info: Optional[str]) -> str:
    if additional_info and additional_info.strip():
        return f"Supplementary info:\n{additional_info.strip()}\n\n{instruction}"
    return instruction


def build_opening_context(
    product_context: str,
    user_story: str,
    selected_roles: Sequence[str],
    role_prompts: Mapping[str, str],
    phase_prompts: Mapping[str, str],
    phase_format_examples: Mapping[str, Sequence[PhaseFormatExample]],
    tech_stack: Optional[TechStack] = None,
) -> str:
    parts = [
        "You are a multi-role requirement refinement assistant. Your goal is to help a Product Manager refine a user story.",
        f"Product Context: {product_context}",
        f'Current User Story to Refine: "{user_story}"',
    ]
    if tech_stack is not None and not tech_stack.is_empty():
        parts.append(
            "Tech Stack: "
            f"frontend={tech_stack.frontend or '-'}, backend={tech_stack.backend or '-'}, agent={tech_stack.agent or '-'}"
        )
    parts.append(_GUIDELINES)
    parts.append(
        build_phase_instruction(
            QUESTIONING_KEY,
            selected_roles,
            role_prompts,
            phase_prompts,
            phase_format_examples,
        )
    )
    return "\n\n".join(parts)


def build_answer_transcript(questions: Sequence[Question], answers: Mapping[str, str]) -> str:
    lines = []
    for question in questions:
        for prompt in question.prompt:
            key = answer_key(question.role, prompt)
            if key in answers:
                lines.append(f'PM Answer to {question.role}\'s question "{prompt}": {answers[key]}')
    return "".join(line + "\n" for line in lines)


def build_accepted_suggestions(accepted: Sequence[Suggestion]) -> str:
    lines = ["[Accepted suggestions]"]
    if not accepted:
        lines.append(NO_SUGGESTIONS_ACCEPTED)
    for suggestion in accepted:
        for prompt in suggestion.prompt:
            lines.append(f"- {suggestion.role}: {prompt}")
    return "\n".join(lines) + "\n"


def build_modification_note(note: str) -> str:
    return f"[Modification request]\n{note.strip()}"


def build_finalize_instruction() -> str:
    return textwrap.dedent(
        f"""
        Using the complete conversation history in this thread, rewrite an improved version of the user story.

        Analyse carefully:
        1. What the original user story was
        2. Which questions each role raised
        3. How the product manager answered them
        4. Which suggestions each role offered
        5. Which suggestions the product manager accepted

        Based on that conversation:
        - Integrate every valuable piece of information and requirement
        - Resolve the problems and concerns raised in the conversation
        - Incorporate the accepted suggestions
        - Make the new user story more complete, specific and actionable
        - Keep the user story aligned with the core values and user needs in the product context
        - Make the acceptance criteria specific, measurable and testable

        Requirements:
        1. Do not simply repeat the original user story; improve and extend it substantively
        2. The user story must state a clear user role, goal and value
        3. The acceptance criteria must cover functional completeness, user experience, technical requirements and business value

        Reply in exactly this format:

        {USER_STORY_MARKER}
        The improved user story

        {ACCEPTANCE_CRITERIA_MARKER}
        1. Acceptance criterion 1 (specific, measurable)
        2. Acceptance criterion 2 (specific, measurable)
        3. Acceptance criterion 3 (specific, measurable)
        4. Acceptance criterion 4 (specific, measurable)
        5. Acceptance criterion 5 (specific, measurable)
        """
    ).strip()
