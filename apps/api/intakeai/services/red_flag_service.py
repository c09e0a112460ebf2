"""Deterministic red-flag detection over a submitted intake.

Pure functions only: no database, no network. The same submission always
yields the same flags in the same order, so detection can run inline on the
submission path and be re-run in tests for comparison.

Ordering contract:
- fields are scanned in ``_candidates`` order, matches within a field by
  clause, then position, then rule order; this is the "detection order"
- one flag per category, the highest severity wins, the earliest wins a tie
- output is severity descending, ties in detection order
"""

import re
from dataclasses import dataclass

from intakeai.db.enums import RedFlagSeverity
from intakeai.schemas.intake import IntakeSubmission
from intakeai.utils.normalization import normalize_clinical_text

NEGATION_WINDOW = 3
NEGATION_TERMS = frozenset({"no", "not", "denies", "deny", "denied", "without", "never", "negative"})
# Negation never crosses sentence or clause punctuation, nor one of these
# words ("no fever but chest pain", "no appetite and chest pain").
CLAUSE_BREAKS = frozenset({"and", "but", "however", "although", "though", "except"})
_CLAUSE_PUNCTUATION_RE = re.compile(r"[.,;:!?]+")

HIGH_RISK_MEDICATIONS = (
    "warfarin",
    "coumadin",
    "insulin",
    "methotrexate",
    "lithium",
    "digoxin",
    "amiodarone",
    "fentanyl",
    "oxycodone",
)
MANY_ALLERGIES_THRESHOLD = 3


@dataclass(frozen=True)
class RedFlagRule:
    category: str
    severity: RedFlagSeverity
    phrases: tuple[str, ...]
    description: str

    def compile(self) -> re.Pattern[str]:
        # Longest phrase first so the reported span is the most specific one.
        ordered = sorted((normalize_clinical_text(p) for p in self.phrases), key=len, reverse=True)
        alternatives = "|".join(re.escape(p) for p in ordered)
        return re.compile(rf"(?<![\w'-])(?:{alternatives})(?![\w'-])")


@dataclass(frozen=True)
class DetectedFlag:
    category: str
    severity: RedFlagSeverity
    description: str
    source_field: str
    matched_text: str | None = None


C, H, M, L = (
    RedFlagSeverity.CRITICAL,
    RedFlagSeverity.HIGH,
    RedFlagSeverity.MEDIUM,
    RedFlagSeverity.LOW,
)

RULES: tuple[RedFlagRule, ...] = (
    # Critical
    RedFlagRule(
        "psychiatric", C,
        ("suicidal", "suicide", "kill myself", "end my life", "want to die", "self-harm", "self harm"),
        "Suicidal ideation or self-harm reported",
    ),
    RedFlagRule(
        "allergy", C,
        ("anaphylaxis", "anaphylactic", "throat closing", "throat swelling", "tongue swelling"),
        "History or report of anaphylactic reaction",
    ),
    RedFlagRule(
        "neurological", C,
        ("worst headache", "face drooping", "facial droop", "slurred speech", "stroke", "paralysis",
         "unconscious", "unresponsive"),
        "Possible stroke or acute neurological emergency",
    ),
    RedFlagRule(
        "cardiac", C,
        ("heart attack", "cardiac arrest", "crushing chest pain", "chest pain radiating"),
        "Possible acute coronary syndrome",
    ),
    RedFlagRule(
        "respiratory", C,
        ("can't breathe", "cannot breathe", "unable to breathe", "choking", "turning blue"),
        "Severe respiratory distress",
    ),
    RedFlagRule(
        "toxicology", C,
        ("overdose", "overdosed", "poisoning", "poisoned"),
        "Possible overdose or poisoning",
    ),
    RedFlagRule(
        "bleeding", C,
        ("vomiting blood", "coughing up blood", "uncontrolled bleeding", "heavy bleeding"),
        "Significant active bleeding",
    ),
    # High
    RedFlagRule(
        "cardiac", H,
        ("chest pain", "chest pressure", "chest tightness", "palpitations", "irregular heartbeat"),
        "Chest pain or cardiac symptoms",
    ),
    RedFlagRule(
        "respiratory", H,
        ("shortness of breath", "short of breath", "difficulty breathing", "trouble breathing"),
        "Shortness of breath or breathing difficulty",
    ),
    RedFlagRule(
        "neurological", H,
        ("seizure", "seizures", "fainting", "fainted", "passed out", "loss of consciousness",
         "sudden numbness", "sudden weakness", "confusion", "severe headache"),
        "Syncope, seizure or focal neurological symptom",
    ),
    RedFlagRule(
        "bleeding", H,
        ("blood in stool", "bloody stool", "black stool", "blood in urine", "coughing blood"),
        "Unexplained bleeding",
    ),
    RedFlagRule(
        "psychiatric", H,
        ("hopeless", "hopelessness", "hearing voices", "no reason to live"),
        "Severe mood or psychotic symptoms",
    ),
    RedFlagRule(
        "allergy", H,
        ("allergic reaction", "lip swelling", "facial swelling"),
        "Allergic reaction reported",
    ),
    RedFlagRule(
        "infection", H,
        ("high fever", "stiff neck", "sepsis"),
        "Signs of serious infection",
    ),
    RedFlagRule(
        "vision", H,
        ("vision loss", "sudden vision loss", "lost vision"),
        "Acute vision loss",
    ),
    RedFlagRule(
        "gastrointestinal", H,
        ("severe abdominal pain", "severe stomach pain"),
        "Severe abdominal pain",
    ),
    # Medium
    RedFlagRule(
        "respiratory", M,
        ("wheezing", "persistent cough"),
        "Ongoing respiratory symptoms",
    ),
    RedFlagRule(
        "constitutional", M,
        ("unexplained weight loss", "unintentional weight loss", "night sweats"),
        "Constitutional symptoms warranting work-up",
    ),
    RedFlagRule(
        "gastrointestinal", M,
        ("persistent vomiting", "dehydration", "dehydrated", "unable to keep food down"),
        "Persistent gastrointestinal symptoms",
    ),
    RedFlagRule(
        "psychiatric", M,
        ("depressed", "depression", "panic attacks", "severe anxiety"),
        "Mood or anxiety symptoms",
    ),
    RedFlagRule(
        "falls", M,
        ("recent fall", "frequent falls", "fell down", "falling"),
        "Fall risk",
    ),
    RedFlagRule(
        "neurological", M,
        ("numbness", "tingling"),
        "Numbness or altered sensation",
    ),
    RedFlagRule(
        "obstetric", M,
        ("pregnant", "pregnancy"),
        "Current or possible pregnancy",
    ),
    RedFlagRule(
        "vision", M,
        ("blurred vision", "blurry vision", "double vision"),
        "Visual disturbance",
    ),
    # Low
    RedFlagRule(
        "dermatological", L,
        ("mild rash", "rash", "itchy skin", "hives"),
        "Skin complaint",
    ),
    RedFlagRule(
        "sleep", L,
        ("insomnia", "trouble sleeping", "difficulty sleeping"),
        "Sleep disturbance",
    ),
    RedFlagRule(
        "musculoskeletal", L,
        ("back pain", "joint pain", "muscle aches"),
        "Musculoskeletal pain",
    ),
)

HIGH_RISK_MEDICATION_RULE = RedFlagRule(
    "medication", M, HIGH_RISK_MEDICATIONS, "High-risk medication requiring monitoring"
)
MANY_ALLERGIES_DESCRIPTION = "Multiple allergies reported"

_COMPILED_RULES: tuple[tuple[RedFlagRule, re.Pattern[str]], ...] = tuple(
    (rule, rule.compile()) for rule in RULES
)
_HIGH_RISK_MEDICATION_PATTERN = HIGH_RISK_MEDICATION_RULE.compile()


def _narrative_fields(content: IntakeSubmission):
    """Yield ``(source_field, text)`` for the free-text sections, in scan order."""
    yield "chief_complaint", content.chief_complaint

    for name, value in content.review_of_systems.model_dump().items():
        if value:
            yield f"review_of_systems.{name}", value

    history = content.medical_history
    for index, condition in enumerate(history.conditions):
        yield f"medical_history.conditions[{index}]", condition
    # family_history describes relatives, not the patient; it is not scanned.
    for name in ("surgical_history", "hospitalizations", "notes"):
        value = getattr(history, name)
        if value:
            yield f"medical_history.{name}", value

    if content.additional_concerns:
        yield "additional_concerns", content.additional_concerns


def _is_negated(text: str, start: int) -> bool:
    preceding = text[:start].split()[-NEGATION_WINDOW:]
    for word in reversed(preceding):
        if word in CLAUSE_BREAKS:
            return False
        if word in NEGATION_TERMS:
            return True
    return False


def _clauses(raw_text: str | None) -> list[str]:
    """Normalized clauses, split on sentence and clause punctuation."""
    if not raw_text:
        return []
    clauses = (normalize_clinical_text(part) for part in _CLAUSE_PUNCTUATION_RE.split(raw_text))
    return [clause for clause in clauses if clause]


def _scan_text(source_field: str, raw_text: str | None) -> list[DetectedFlag]:
    matches: list[tuple[int, int, int, DetectedFlag]] = []
    for clause_index, text in enumerate(_clauses(raw_text)):
        for rule_index, (rule, pattern) in enumerate(_COMPILED_RULES):
            for match in pattern.finditer(text):
                if _is_negated(text, match.start()):
                    continue
                flag = DetectedFlag(
                    category=rule.category,
                    severity=rule.severity,
                    description=rule.description,
                    source_field=source_field,
                    matched_text=match.group(0),
                )
                matches.append((clause_index, match.start(), rule_index, flag))
    matches.sort(key=lambda item: item[:3])
    return [flag for *_, flag in matches]


def _high_risk_medication(index: int, name: str) -> DetectedFlag | None:
    match = _HIGH_RISK_MEDICATION_PATTERN.search(normalize_clinical_text(name))
    if not match:
        return None
    return DetectedFlag(
        category=HIGH_RISK_MEDICATION_RULE.category,
        severity=HIGH_RISK_MEDICATION_RULE.severity,
        description=HIGH_RISK_MEDICATION_RULE.description,
        source_field=f"medications[{index}].name",
        matched_text=match.group(0),
    )


def _candidates(content: IntakeSubmission) -> list[DetectedFlag]:
    """Every match in detection order, before deduplication."""
    found: list[DetectedFlag] = []
    for source_field, text in _narrative_fields(content):
        found.extend(_scan_text(source_field, text))

    for index, medication in enumerate(content.medications):
        flag = _high_risk_medication(index, medication.name)
        if flag:
            found.append(flag)
        found.extend(_scan_text(f"medications[{index}].purpose", medication.purpose))

    for index, allergy in enumerate(content.allergies):
        found.extend(_scan_text(f"allergies[{index}].reaction", allergy.reaction))
    if len(content.allergies) > MANY_ALLERGIES_THRESHOLD:
        found.append(
            DetectedFlag(
                category="allergy",
                severity=RedFlagSeverity.LOW,
                description=MANY_ALLERGIES_DESCRIPTION,
                source_field="allergies",
            )
        )
    return found


def detect(content: IntakeSubmission) -> list[DetectedFlag]:
    """Scan an intake and return deduplicated flags, most severe first."""
    kept: dict[str, tuple[int, DetectedFlag]] = {}
    for order, flag in enumerate(_candidates(content)):
        current = kept.get(flag.category)
        if current is None or flag.severity.rank > current[1].severity.rank:
            kept[flag.category] = (order, flag)

    ranked = sorted(kept.values(), key=lambda item: (-item[1].severity.rank, item[0]))
    return [flag for _, flag in ranked]


def alertable(flags: list[DetectedFlag]) -> list[DetectedFlag]:
    """Flags that must be handed off to the alerting collaborator."""
    return [flag for flag in flags if flag.severity.requires_alert]
