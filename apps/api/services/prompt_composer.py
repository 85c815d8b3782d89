"""Prompt composition for quiz/study answers.

Pure functions only: the system prompt (template per answer mode or the
session's custom text), the knowledge block, the ordered user turn, and the
advisory generation hints (thinking effort and caching eligibility) derived
from a model-family capability table.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from models.enums import AnswerMode
from services.knowledge import KnowledgeDocument

ROLE_LINE = (
    "You are Genova AI, an intelligent quiz and study assistant designed to help students learn effectively."
)

BASE_INSTRUCTIONS = [
    "Answer questions accurately based on the provided knowledge base and context.",
    "For quiz questions (multiple choice, true/false, essay), provide clear and concise answers.",
    "Focus on educational value and helping students understand the material.",
    "Use the knowledge base as your primary source of information.",
]

BEHAVIOR_RULES = [
    "If a knowledge base is provided, use it as your primary reference.",
    "If the question cannot be answered from the knowledge base, state this clearly.",
    "For quiz questions, prioritize accuracy over elaboration.",
    "Maintain a helpful and educational tone.",
    "Never make up information - only use what's in the context or your training.",
]

ANSWER_MODE_CONSTRAINTS: Dict[AnswerMode, List[str]] = {
    AnswerMode.SINGLE: [
        "Provide ONLY the answer letter or option without any explanation.",
        'For multiple choice (A/B/C/D): respond with ONLY the letter. Example: "A"',
        'For true/false: respond with only "True" or "False".',
        "For short answer questions: provide only the direct answer (1-3 words).",
        "For essay questions: this mode is not applicable, use short mode instead.",
        "Do not include any punctuation, explanations, reasoning, or additional text.",
    ],
    AnswerMode.SHORT: [
        "Provide the answer with a brief explanation.",
        'For multiple choice: format as "A. Brief explanation" (answer letter + brief explanation).',
        'For true/false: format as "True. Brief reason" or "False. Brief reason".',
        "For short answer: provide a concise response (1-2 sentences).",
        "For essay: provide a brief summary (2-3 sentences).",
        "Keep explanations very brief and to the point.",
    ],
    AnswerMode.MEDIUM: [
        "Provide the answer with a moderate explanation.",
        'For multiple choice: format as "A. This is correct because [2-3 sentence explanation]".',
        "For true/false: provide the answer with clear reasoning (2-3 sentences).",
        "For short answer: give a complete explanation (3-5 sentences).",
        "For essay: provide a structured response (1 paragraph).",
        "Include key concepts and reasoning.",
    ],
    AnswerMode.LONG: [
        "Provide a comprehensive answer with a detailed explanation.",
        'For multiple choice: format as "The correct answer is A. [Detailed explanation]. The reason is [full reasoning]".',
        "Explain WHY the correct answer is right.",
        "Explain WHY the other options are incorrect (if applicable).",
        "For essay: provide a well-structured response with multiple paragraphs.",
        "For short answer: give a thorough explanation with examples.",
        "Include context, examples, and connections to concepts.",
        "Use clear, educational language.",
    ],
}

ANSWER_MODE_FORMATS: Dict[AnswerMode, str] = {
    AnswerMode.SINGLE: "Format: Just the answer letter/option. Example: A",
    AnswerMode.SHORT: "Format: A. Brief explanation (answer + brief reason)",
    AnswerMode.MEDIUM: "Format: A. This is correct because [explanation of 5-10 words]",
    AnswerMode.LONG: "Format: The correct answer is A. [Explanation]. The reason is [detailed reasoning]. Option B is wrong because [reason].",
}


class ModelFamily(str, enum.Enum):
    GEMINI_3_PRO = "gemini-3-pro"
    GEMINI_3 = "gemini-3"
    GEMINI_2_5_PRO = "gemini-2.5-pro"
    GEMINI_2_5_FLASH = "gemini-2.5-flash"
    GEMINI_2_0_FLASH = "gemini-2.0-flash"
    GEMINI_1_5_PRO = "gemini-1.5-pro"
    GEMINI_1_5_FLASH = "gemini-1.5-flash"
    OTHER = "other"


# Ordered from most to least specific; first substring match wins.
_FAMILY_MARKERS = [
    ("gemini-3-pro", ModelFamily.GEMINI_3_PRO),
    ("gemini-3", ModelFamily.GEMINI_3),
    ("gemini-2.5-pro", ModelFamily.GEMINI_2_5_PRO),
    ("gemini-2.5-flash", ModelFamily.GEMINI_2_5_FLASH),
    ("gemini-2.0-flash", ModelFamily.GEMINI_2_0_FLASH),
    ("gemini-1.5-pro", ModelFamily.GEMINI_1_5_PRO),
    ("gemini-1.5-flash", ModelFamily.GEMINI_1_5_FLASH),
]

CACHE_TTL_SECONDS = 3600
DEFAULT_CACHE_MIN_TOKENS = 4096

CACHE_MIN_TOKENS: Dict[ModelFamily, int] = {
    ModelFamily.GEMINI_3_PRO: 2048,
    ModelFamily.GEMINI_3: 2048,
    ModelFamily.GEMINI_2_5_PRO: 4096,
    ModelFamily.GEMINI_2_5_FLASH: 1024,
    ModelFamily.GEMINI_2_0_FLASH: 1024,
    ModelFamily.GEMINI_1_5_PRO: 4096,
    ModelFamily.GEMINI_1_5_FLASH: 1024,
}

_LEVEL_FAMILIES = {ModelFamily.GEMINI_3_PRO, ModelFamily.GEMINI_3}
_BUDGET_FAMILIES = {ModelFamily.GEMINI_2_5_PRO, ModelFamily.GEMINI_2_5_FLASH}

THINKING_BUDGETS: Dict[AnswerMode, int] = {
    AnswerMode.SINGLE: 0,
    AnswerMode.SHORT: 4096,
    AnswerMode.MEDIUM: 8192,
    AnswerMode.LONG: 8192,
}


@dataclass(frozen=True)
class ThinkingConfig:
    thinking_level: Optional[str] = None
    thinking_budget: Optional[int] = None


@dataclass(frozen=True)
class CachingConfig:
    enabled: bool
    min_tokens: int
    ttl_seconds: int = CACHE_TTL_SECONDS


@dataclass(frozen=True)
class FewShotExample:
    question: str
    answer: str


@dataclass
class ComposedPrompt:
    system_prompt: str
    user_prompt: str
    user_parts: List[str]
    knowledge_context: str
    answer_mode: AnswerMode
    thinking: ThinkingConfig
    caching: CachingConfig
    file_ids: List[str] = field(default_factory=list)


def coerce_answer_mode(value: Optional[str]) -> AnswerMode:
    try:
        return AnswerMode(value or AnswerMode.SHORT.value)
    except ValueError:
        return AnswerMode.SHORT


def _numbered(lines: Sequence[str]) -> str:
    return "\n".join(f"{index}. {line}" for index, line in enumerate(lines, start=1))


def build_system_prompt(answer_mode: AnswerMode) -> str:
    """Role, instructions, constraints, output format, behaviour."""
    return (
        f"<role>\n{ROLE_LINE}\n</role>\n\n"
        f"<instructions>\n{_numbered(BASE_INSTRUCTIONS)}\n</instructions>\n\n"
        f"<constraints>\n{_numbered(ANSWER_MODE_CONSTRAINTS[answer_mode])}\n</constraints>\n\n"
        f"<output_format>\n{ANSWER_MODE_FORMATS[answer_mode]}\n</output_format>\n\n"
        "<behavior>\n" + "\n".join(f"- {rule}" for rule in BEHAVIOR_RULES) + "\n</behavior>"
    )


def resolve_system_prompt(use_custom_prompt: bool, custom_prompt: Optional[str], answer_mode: AnswerMode) -> str:
    if use_custom_prompt and custom_prompt and custom_prompt.strip():
        return custom_prompt
    return build_system_prompt(answer_mode)


def format_knowledge_context(
    manual_context: Optional[str],
    files: Sequence[KnowledgeDocument] = (),
) -> str:
    """Manual context and uploaded file text; empty inputs produce no block."""
    manual = (manual_context or "").strip()
    file_sections = [
        f"--- File {index}: {doc.file_name} ({doc.file_type}) ---\n{doc.extracted_text or ''}"
        for index, doc in enumerate(files, start=1)
    ]
    if not manual and not file_sections:
        return ""

    blocks = []
    if manual:
        blocks.append(f"<knowledge_base>\n{manual}\n</knowledge_base>")
    if file_sections:
        blocks.append("<uploaded_files>\n" + "\n\n".join(file_sections) + "\n</uploaded_files>")
    return "\n\n".join(blocks)


def format_user_parts(
    question: str,
    knowledge_context: str = "",
    few_shot_examples: Optional[Sequence[FewShotExample]] = None,
    output_format: Optional[str] = None,
) -> List[str]:
    """Knowledge, examples, format instructions, then the task, each only when present."""
    parts: List[str] = []
    if knowledge_context:
        parts.append(knowledge_context)

    if few_shot_examples:
        lines = []
        for index, example in enumerate(few_shot_examples, start=1):
            lines.append(f"Example {index}:\nQuestion: {example.question}\nAnswer: {example.answer}")
        parts.append("<examples>\n" + "\n\n".join(lines) + "\n</examples>")

    if output_format and output_format.strip():
        parts.append(f"<format_instructions>\n{output_format.strip()}\n</format_instructions>")

    parts.append(f"<task>\n{question}\n</task>")
    return parts


def format_user_question(
    question: str,
    knowledge_context: str = "",
    few_shot_examples: Optional[Sequence[FewShotExample]] = None,
    output_format: Optional[str] = None,
) -> str:
    return "\n\n".join(format_user_parts(question, knowledge_context, few_shot_examples, output_format))


def model_family(model: Optional[str]) -> ModelFamily:
    name = (model or "").lower()
    for marker, family in _FAMILY_MARKERS:
        if marker in name:
            return family
    return ModelFamily.OTHER


def get_thinking_config(model: Optional[str], answer_mode: AnswerMode) -> ThinkingConfig:
    """Lower effort for single/short, higher for medium/long."""
    family = model_family(model)
    if family in _LEVEL_FAMILIES:
        low = answer_mode in (AnswerMode.SINGLE, AnswerMode.SHORT)
        return ThinkingConfig(thinking_level="low" if low else "high")
    if family in _BUDGET_FAMILIES:
        return ThinkingConfig(thinking_budget=THINKING_BUDGETS[answer_mode])
    return ThinkingConfig()


def get_caching_config(model: Optional[str], context_length: int) -> CachingConfig:
    min_tokens = CACHE_MIN_TOKENS.get(model_family(model), DEFAULT_CACHE_MIN_TOKENS)
    estimated_tokens = max(int(context_length), 0) // 4
    return CachingConfig(enabled=estimated_tokens >= min_tokens, min_tokens=min_tokens)


def compose(
    *,
    question: str,
    answer_mode: AnswerMode,
    model: Optional[str],
    use_custom_prompt: bool = False,
    custom_prompt: Optional[str] = None,
    manual_context: Optional[str] = None,
    files: Sequence[KnowledgeDocument] = (),
    few_shot_examples: Optional[Sequence[FewShotExample]] = None,
    output_format: Optional[str] = None,
) -> ComposedPrompt:
    knowledge = format_knowledge_context(manual_context, files)
    parts = format_user_parts(question, knowledge, few_shot_examples, output_format)
    return ComposedPrompt(
        system_prompt=resolve_system_prompt(use_custom_prompt, custom_prompt, answer_mode),
        user_prompt="\n\n".join(parts),
        user_parts=parts,
        knowledge_context=knowledge,
        answer_mode=answer_mode,
        thinking=get_thinking_config(model, answer_mode),
        caching=get_caching_config(model, len(knowledge)),
        file_ids=[doc.file_id for doc in files],
    )
