from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from ..core.logging import get_logger
from .intent import Intent, IntentAction, IntentScope

logger = get_logger(name=__name__)


class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class ExecutionMode(str, Enum):
    SINGLE = "single"
    COUNCIL = "council"
    SWARM = "swarm"
    DELIBERATION = "deliberation"
    DEBATE = "debate"


class TaskClassification(BaseModel):
    model_config = ConfigDict(frozen=True)

    complexity: Complexity
    recommended_mode: ExecutionMode
    estimated_subtasks: int = Field(ge=1)
    needs_architecture: bool = False


ARCHITECTURE_SIGNAL = re.compile(
    r"архитектур|структур|дизайн|\bdesign|\barchitect|implement.*system|создать.*проект|refactor|рефакторинг",
    re.IGNORECASE,
)
MULTI_PART_SIGNAL = re.compile(
    r"несколько|\bmultiple\b|добавь.*и.*и|create.*\band\b.*\band\b|а также|а ещё|а еще|кроме того|плюс|и ещё|и еще|as well as",
    re.IGNORECASE,
)
ANALYSIS_SIGNAL = re.compile(
    r"анализ|ревизи|\breview|проверь|оцени|сравни|\bcompare|\baudit|аудит|оптимиз|\boptimi[sz]e",
    re.IGNORECASE,
)
CODING_SIGNAL = re.compile(
    r"напиши|создай|реализуй|\bimplement|\bwrite|\bbuild|сделай|разработай|\bdevelop|добавь функци|add feature",
    re.IGNORECASE,
)
RESEARCH_SIGNAL = re.compile(
    r"исследуй|\bresearch|найди.*способ|find.*way|предложи.*вариант|\bsuggest|объясни.*как|explain.*how",
    re.IGNORECASE,
)

ANALYSIS_MIN_LENGTH = 50
CODING_MIN_LENGTH = 80


def classify(intent: Intent, text: str) -> TaskClassification:
    """Map an intent and its raw text to a complexity tier and recommended mode.

    The first matching signal decides the tier: architecture vocabulary makes the task
    complex; multi-part connectives, full scope, long analysis or coding requests and
    research questions make it medium; everything else is simple.
    """
    needs_architecture = bool(ARCHITECTURE_SIGNAL.search(text))
    length = len(text)

    complexity = Complexity.SIMPLE
    subtasks = 1
    if needs_architecture:
        complexity, subtasks = Complexity.COMPLEX, 5
    elif MULTI_PART_SIGNAL.search(text):
        complexity, subtasks = Complexity.MEDIUM, 3
    elif intent.scope is IntentScope.FULL:
        complexity, subtasks = Complexity.MEDIUM, 4
    elif ANALYSIS_SIGNAL.search(text) and length > ANALYSIS_MIN_LENGTH:
        complexity, subtasks = Complexity.MEDIUM, 3
    elif CODING_SIGNAL.search(text) and length > CODING_MIN_LENGTH:
        complexity, subtasks = Complexity.MEDIUM, 3
    elif RESEARCH_SIGNAL.search(text):
        complexity, subtasks = Complexity.MEDIUM, 2

    if complexity is Complexity.COMPLEX:
        mode = ExecutionMode.COUNCIL
    elif complexity is Complexity.MEDIUM:
        mode = ExecutionMode.SWARM
        subtasks = max(subtasks, 2)
    elif intent.action in {IntentAction.ANALYZE, IntentAction.FIX}:
        mode = ExecutionMode.DELIBERATION
    else:
        mode = ExecutionMode.SINGLE

    classification = TaskClassification(
        complexity=complexity,
        recommended_mode=mode,
        estimated_subtasks=subtasks,
        needs_architecture=needs_architecture,
    )
    logger.info(
        "task_classified",
        complexity=complexity.value,
        mode=mode.value,
        subtasks=subtasks,
        needs_architecture=needs_architecture,
    )
    return classification
