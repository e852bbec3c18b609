from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterable, Sequence

from pydantic import BaseModel, ConfigDict, Field

from ..core.config import AmbiguitySettings
from ..core.logging import get_logger

logger = get_logger(name=__name__)


class IntentAction(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    FIX = "fix"
    EXPLAIN = "explain"
    ANALYZE = "analyze"


class IntentScope(str, Enum):
    MINIMAL = "minimal"
    MODERATE = "moderate"
    FULL = "full"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class Intent(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: IntentAction
    object: str = Field(min_length=1)
    scope: IntentScope | None = None
    confidence: float = Field(ge=0.0, le=1.0)


class Ambiguity(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    term: str
    question: str
    candidates: list[str] = Field(default_factory=list)
    severity: Severity = Severity.LOW
    rule: str | None = None


class ClarificationOption(BaseModel):
    value: str
    label: str
    recommended: bool = False


class ClarificationQuestion(BaseModel):
    id: str
    question: str
    kind: str
    options: list[ClarificationOption] = Field(default_factory=list)
    allow_custom: bool = True


class ClarificationRequest(BaseModel):
    questions: list[ClarificationQuestion] = Field(min_length=1, max_length=3)
    context: str = "To carry out this task correctly, please clarify:"


DESTRUCTIVE_VERBS = re.compile(r"удали|\bdelete|\bremove|убери|\berase|\bwipe", re.IGNORECASE)

# Ordered: the first matching action wins.
_ACTION_PATTERNS: tuple[tuple[IntentAction, re.Pattern[str]], ...] = (
    (IntentAction.FIX, re.compile(r"исправ|\bfix|\bbug|ошибк|\berror", re.IGNORECASE)),
    (IntentAction.DELETE, DESTRUCTIVE_VERBS),
    (IntentAction.MODIFY, re.compile(r"измени|\bupdate|\bmodify|обнови|поменяй|\bchange\b", re.IGNORECASE)),
    (IntentAction.EXPLAIN, re.compile(r"объясни|\bexplain|расскаж|\bwhat is\b", re.IGNORECASE)),
    (IntentAction.ANALYZE, re.compile(r"анализ|\banaly[sz]e|проверь|\breview", re.IGNORECASE)),
    (IntentAction.CREATE, re.compile(r"добав|\bcreate|сделай|\badd\b|\bimplement|напиши", re.IGNORECASE)),
)

BROAD_SCOPE = re.compile(r"\b(?:everywhere|all|entire|whole|везде|все|всё|весь|полностью|целиком)\b", re.IGNORECASE)
NARROW_SCOPE = re.compile(r"\b(?:only|just|specific|только|именно|конкретно|один)\b", re.IGNORECASE)
MODERATE_SCOPE = re.compile(r"\b(?:several|some|a few|module|section|несколько)\b", re.IGNORECASE)

VAGUE_TERMS: tuple[str, ...] = ("the button", "the form", "the page", "как надо", "как обычно", "стандартно")
CONVENTION_TERMS = re.compile(r"\b(?:as usual|the usual way|the standard way)\b|как обычно|как надо|стандартно", re.IGNORECASE)

SPECIFIC_TARGET = re.compile(r"\b(?:файл|file|функци\w*|function|компонент|component|страниц\w*|page)\s+\w+", re.IGNORECASE)

_OBJECT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?:файл|\bfile)\s+[\"']?([^\"'\s]+)[\"']?", re.IGNORECASE),
    re.compile(r"(?:функци[юя]|\bfunction)\s+[\"']?(\w+)[\"']?", re.IGNORECASE),
    re.compile(r"(?:компонент|\bcomponent)\s+[\"']?(\w+)[\"']?", re.IGNORECASE),
    re.compile(r"(?:страниц[уа]|\bpage)\s+[\"']?(\w+)[\"']?", re.IGNORECASE),
    re.compile(r"(?:кнопк[уа]|\bbutton)\s+[\"']?([^\"'\s]+)[\"']?", re.IGNORECASE),
    re.compile(r"(?:форм[уа]|\bform)\s+[\"']?([^\"'\s]+)[\"']?", re.IGNORECASE),
)

BARE_REFERENCE = re.compile(
    r"^\s*(?:please\s+)?(?:delete|remove|erase|wipe|удали|убери)\s+(?:it|this|that|them|these|those|это|его|их)\s*[.!?]*\s*$",
    re.IGNORECASE,
)


def extract_object(text: str) -> str:
    for pattern in _OBJECT_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return "target"


def detect_action(text: str) -> IntentAction:
    for action, pattern in _ACTION_PATTERNS:
        if pattern.search(text):
            return action
    return IntentAction.CREATE


def detect_scope(text: str) -> IntentScope | None:
    if BROAD_SCOPE.search(text):
        return IntentScope.FULL
    if NARROW_SCOPE.search(text):
        return IntentScope.MINIMAL
    if MODERATE_SCOPE.search(text):
        return IntentScope.MODERATE
    return None


Detector = Callable[[str, Intent], "str | None"]


@dataclass(frozen=True, slots=True)
class AmbiguityRule:
    """One explicit ambiguity check.

    ``detect`` returns the offending term when the rule fires, otherwise ``None``.
    ``question`` may contain ``{term}`` which is filled from the detected term.
    """

    name: str
    kind: str
    severity: Severity
    detect: Detector
    question: str
    candidates: tuple[str, ...] = ()

    def evaluate(self, text: str, intent: Intent) -> Ambiguity | None:
        term = self.detect(text, intent)
        if term is None:
            return None
        return Ambiguity(
            kind=self.kind,
            term=term,
            question=self.question.format(term=term),
            candidates=list(self.candidates),
            severity=self.severity,
            rule=self.name,
        )


def _destructive_scope(text: str, intent: Intent) -> str | None:
    if not DESTRUCTIVE_VERBS.search(text):
        return None
    broad = BROAD_SCOPE.search(text)
    if broad is None or NARROW_SCOPE.search(text) or SPECIFIC_TARGET.search(text):
        return None
    return broad.group(0)


def _bare_reference(text: str, intent: Intent) -> str | None:
    match = BARE_REFERENCE.match(text)
    return match.group(0).strip() if match else None


def _vague_target(text: str, intent: Intent) -> str | None:
    lowered = text.lower()
    for term in VAGUE_TERMS[:3]:
        if term in lowered:
            return term
    return None


def _implicit_convention(text: str, intent: Intent) -> str | None:
    match = CONVENTION_TERMS.search(text)
    return match.group(0) if match else None


DEFAULT_RULES: tuple[AmbiguityRule, ...] = (
    AmbiguityRule(
        name="destructive_scope",
        kind="scope",
        severity=Severity.HIGH,
        detect=_destructive_scope,
        question="Please confirm how much should be deleted ('{term}'):",
        candidates=(
            "Only the items explicitly named",
            "Everything related, including dependencies",
            "A complete wipe",
        ),
    ),
    AmbiguityRule(
        name="unresolved_reference",
        kind="reference",
        severity=Severity.HIGH,
        detect=_bare_reference,
        question="What exactly should be deleted?",
        candidates=("The item discussed most recently", "I will name it explicitly"),
    ),
    AmbiguityRule(
        name="vague_target",
        kind="target",
        severity=Severity.LOW,
        detect=_vague_target,
        question="Which one do you mean by '{term}'?",
        candidates=("The most prominent one", "All of them"),
    ),
    AmbiguityRule(
        name="implicit_convention",
        kind="convention",
        severity=Severity.LOW,
        detect=_implicit_convention,
        question="Which conventions should '{term}' follow?",
        candidates=("The project's existing conventions", "Common community defaults"),
    ),
)


class AmbiguityRuleSet:
    """Ordered, replaceable collection of ambiguity rules."""

    def __init__(self, rules: Iterable[AmbiguityRule] = DEFAULT_RULES) -> None:
        self._rules: tuple[AmbiguityRule, ...] = tuple(rules)

    def __iter__(self):
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    @property
    def names(self) -> list[str]:
        return [rule.name for rule in self._rules]

    def with_rule(self, rule: AmbiguityRule) -> "AmbiguityRuleSet":
        return AmbiguityRuleSet([existing for existing in self._rules if existing.name != rule.name] + [rule])

    def without(self, *names: str) -> "AmbiguityRuleSet":
        return AmbiguityRuleSet(rule for rule in self._rules if rule.name not in names)

    def with_severity(self, name: str, severity: Severity) -> "AmbiguityRuleSet":
        return AmbiguityRuleSet(
            replace(rule, severity=severity) if rule.name == name else rule for rule in self._rules
        )


class IntentAnalyzer:
    """Keyword/pattern intent extraction plus rule-driven ambiguity gating."""

    def __init__(
        self,
        *,
        rules: AmbiguityRuleSet | None = None,
        block_severity: Severity = Severity.HIGH,
        max_questions: int = 3,
    ) -> None:
        self._rules = rules or AmbiguityRuleSet()
        self._block_severity = block_severity
        self._max_questions = max(1, min(3, max_questions))

    @classmethod
    def from_settings(cls, settings: AmbiguitySettings, *, rules: AmbiguityRuleSet | None = None) -> "IntentAnalyzer":
        return cls(
            rules=rules,
            block_severity=Severity(settings.block_severity),
            max_questions=settings.max_questions,
        )

    @property
    def rules(self) -> AmbiguityRuleSet:
        return self._rules

    @property
    def block_severity(self) -> Severity:
        return self._block_severity

    def analyze(self, text: str) -> Intent:
        action = detect_action(text)
        scope = detect_scope(text)
        lowered = text.lower()

        confidence = 0.9
        if any(term in lowered for term in VAGUE_TERMS):
            confidence -= 0.3
        if SPECIFIC_TARGET.search(text):
            confidence += 0.05
        if scope is not None:
            confidence += 0.05

        intent = Intent(
            action=action,
            object=extract_object(text),
            scope=scope,
            confidence=round(max(0.0, min(confidence, 1.0)), 4),
        )
        logger.debug("intent_parsed", action=intent.action.value, scope=scope.value if scope else None, confidence=intent.confidence)
        return intent

    def detect_ambiguities(self, text: str, intent: Intent) -> list[Ambiguity]:
        found: list[Ambiguity] = []
        for rule in self._rules:
            ambiguity = rule.evaluate(text, intent)
            if ambiguity is not None:
                found.append(ambiguity)
        if found:
            logger.info(
                "ambiguities_detected",
                rules=[item.rule for item in found],
                severities=[item.severity.value for item in found],
            )
        return found

    def blocking(self, ambiguities: Sequence[Ambiguity]) -> list[Ambiguity]:
        return [item for item in ambiguities if item.severity.at_least(self._block_severity)]

    def clarification(self, ambiguities: Sequence[Ambiguity]) -> ClarificationRequest | None:
        """Build at most ``max_questions`` questions from the blocking ambiguities."""
        blocking = self.blocking(ambiguities)[: self._max_questions]
        if not blocking:
            return None
        questions = [
            ClarificationQuestion(
                id=f"q-{index}",
                question=item.question,
                kind=item.kind,
                options=[
                    ClarificationOption(value=f"opt-{position}", label=label, recommended=position == 0)
                    for position, label in enumerate(item.candidates)
                ],
            )
            for index, item in enumerate(blocking)
        ]
        return ClarificationRequest(questions=questions)
