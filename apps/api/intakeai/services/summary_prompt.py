"""Prompt template for clinical intake summaries.

Rendering is deterministic: the same intake and flags always produce the
same messages. Direct identifiers (name, phone, email, address, emergency
contact) are never included.
"""

from dataclasses import dataclass

from intakeai.db.models import RedFlag
from intakeai.schemas.intake import IntakeSubmission
from intakeai.services.ai_provider import ChatMessage


@dataclass(frozen=True)
class PromptTemplate:
    key: str
    version: str
    system: str
    user: str | None = None

    def render_user(self, **kwargs) -> str:
        if not self.user:
            raise ValueError(f"Prompt '{self.key}' has no user template")
        return self.user.format(**kwargs)


SUMMARY_PROMPT = PromptTemplate(
    key="intake_summary",
    version="v1",
    system="""You are a clinical documentation assistant. You write a concise pre-visit summary of a patient's intake form for the treating provider.

## Output
- Sections: Chief Complaint, Red Flags, Relevant History, Medications & Allergies, Social History, Review of Systems, Suggested Focus for Visit
- Plain text with short bullet points
- Under 400 words

## Guidelines
- Use only the information provided; never invent findings
- Every item under "Detected red flags" MUST appear in the Red Flags section, most severe first
- If no red flags were detected, write "None detected"
- Do not make a diagnosis; you assist the provider, who decides
""",
    user="""Summarize this patient intake.

## Detected red flags ({flag_count})
{red_flags}

## Demographics
{demographics}

## Chief complaint
{chief_complaint}

## Medical history
{medical_history}

## Medications
{medications}

## Allergies
{allergies}

## Social history
{social_history}

## Review of systems
{review_of_systems}

## Additional concerns
{additional_concerns}
""",
)

# Demographic fields that may appear in the prompt. Contact details and
# names are left out.
PROMPT_DEMOGRAPHIC_FIELDS = ("sex", "gender_identity", "preferred_language", "occupation")
NONE_REPORTED = "None reported"


def _bullets(lines: list[str]) -> str:
    return "\n".join(f"- {line}" for line in lines) if lines else NONE_REPORTED


def _labelled(values: dict) -> str:
    return _bullets(
        [f"{name.replace('_', ' ').capitalize()}: {value}" for name, value in values.items() if value]
    )


def format_red_flags(flags: list[RedFlag]) -> str:
    ordered = sorted(flags, key=lambda flag: flag.rank)
    return _bullets(
        [f"[{flag.severity.upper()}] {flag.category}: {flag.description}" for flag in ordered]
    )


def build_summary_messages(content: IntakeSubmission, flags: list[RedFlag]) -> list[ChatMessage]:
    """Build the system/user message pair for one summary generation."""
    demographics = content.demographics.model_dump()
    history = content.medical_history

    history_lines = [f"Condition: {condition}" for condition in history.conditions]
    for name in ("surgical_history", "family_history", "hospitalizations", "notes"):
        value = getattr(history, name)
        if value:
            history_lines.append(f"{name.replace('_', ' ').capitalize()}: {value}")

    medications = [
        ", ".join(
            part
            for part in (med.name, med.dosage, med.frequency, f"for {med.purpose}" if med.purpose else None)
            if part
        )
        for med in content.medications
    ]
    allergies = [
        f"{allergy.allergen} ({allergy.reaction})" if allergy.reaction else allergy.allergen
        for allergy in content.allergies
    ]

    user = SUMMARY_PROMPT.render_user(
        flag_count=len(flags),
        red_flags=format_red_flags(flags) if flags else "None detected",
        demographics=_labelled({k: demographics.get(k) for k in PROMPT_DEMOGRAPHIC_FIELDS}),
        chief_complaint=content.chief_complaint,
        medical_history=_bullets(history_lines),
        medications=_bullets(medications),
        allergies=_bullets(allergies),
        social_history=_labelled(content.social_history.model_dump()),
        review_of_systems=_labelled(content.review_of_systems.model_dump()),
        additional_concerns=content.additional_concerns or NONE_REPORTED,
    )
    return [
        ChatMessage(role="system", content=SUMMARY_PROMPT.system),
        ChatMessage(role="user", content=user),
    ]
