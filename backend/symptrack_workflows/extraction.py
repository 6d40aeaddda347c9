from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from symptrack_memory.memory_policy_guard import MAX_SYMPTOM_NAME_LENGTH
from symptrack_memory.models import FREQUENCIES, ConversationContext, SymptomDetails, normalize_symptom_name

from .providers import ProviderError, TextGenerator, extract_json_object

logger = logging.getLogger(__name__)

_SYMPTOM_MAP = [
    (re.compile(r"\bmigraines?\b", re.IGNORECASE), "migraine"),
    (re.compile(r"\bheadaches?\b|\bhead (?:still |really |)(?:hurts|aches|is pounding)\b", re.IGNORECASE), "headache"),
    (re.compile(r"\bfevers?\b|\bfeverish\b|\bhigh temperature\b", re.IGNORECASE), "fever"),
    (re.compile(r"\bcough(?:s|ing)?\b", re.IGNORECASE), "cough"),
    (re.compile(r"\bnause(?:a|ous|ated)\b", re.IGNORECASE), "nausea"),
    (re.compile(r"\bvomit(?:ing|ed)?\b|\bthrowing up\b|\bthrew up\b", re.IGNORECASE), "vomiting"),
    (re.compile(r"\bdiarrh(?:o)?ea\b", re.IGNORECASE), "diarrhea"),
    (re.compile(r"\bdizz(?:y|iness)\b|\blight-?headed(?:ness)?\b", re.IGNORECASE), "dizziness"),
    (re.compile(r"\bfatigue(?:d)?\b|\bexhaust(?:ed|ion)\b", re.IGNORECASE), "fatigue"),
    (re.compile(r"\bsore throat\b|\bthroat (?:hurts|is sore)\b", re.IGNORECASE), "sore throat"),
    (re.compile(r"\brunny nose\b", re.IGNORECASE), "runny nose"),
    (re.compile(r"\b(?:nasal )?congest(?:ion|ed)\b|\bstuffy nose\b", re.IGNORECASE), "congestion"),
    (re.compile(r"\bchills\b", re.IGNORECASE), "chills"),
    (re.compile(r"\bchest (?:pain|hurts|tightness)\b|\bpain in (?:my|the) chest\b", re.IGNORECASE), "chest pain"),
    (
        re.compile(r"\bshort(?:ness)? of breath\b|\b(?:difficulty|trouble) breathing\b|\bbreathless(?:ness)?\b", re.IGNORECASE),
        "shortness of breath",
    ),
    (re.compile(r"\bback (?:pain|hurts|aches)\b|\bbackache\b", re.IGNORECASE), "back pain"),
    (
        re.compile(r"\bstomach ?(?:ache|pain|hurts)\b|\babdominal pain\b|\btummy ache\b", re.IGNORECASE),
        "stomach pain",
    ),
    (re.compile(r"\brash(?:es)?\b|\bhives\b", re.IGNORECASE), "rash"),
    (re.compile(r"\bmuscle (?:aches?|pain)\b|\bbody aches?\b", re.IGNORECASE), "muscle aches"),
    (re.compile(r"\bjoint pain\b|\bjoints (?:hurt|ache)\b", re.IGNORECASE), "joint pain"),
    (re.compile(r"\binsomnia\b|\b(?:can't|cannot) sleep\b|\btrouble sleeping\b", re.IGNORECASE), "insomnia"),
    (re.compile(r"\bsneez(?:e|es|ing)\b", re.IGNORECASE), "sneezing"),
]

_BODY_PARTS = r"knee|ankle|wrist|shoulder|neck|hip|elbow|foot|hand|leg|arm|ear|tooth|eye|jaw"
_BODY_PART_PAIN_RE = re.compile(
    rf"\bmy ({_BODY_PARTS})s? (?:hurts?|aches?|is sore|is painful)\b|\b({_BODY_PARTS}) pain\b",
    re.IGNORECASE,
)

_SENTENCE_SPLIT_RE = re.compile(r"[.!?\n]+")
# Negation does not carry across these boundaries.
_SCOPE_SPLIT_RE = re.compile(r"[,;:]|\bbut\b|\bhowever\b|\balthough\b|\bthough\b|\band\b", re.IGNORECASE)

_NEGATION_RE = re.compile(
    r"\b(?:no|not|without|never|deny|denies|don't have|do not have|haven't had|have not had|didn't have|free of)\b",
    re.IGNORECASE,
)
_RESOLUTION_RE = re.compile(
    r"\b(?:is gone|are gone|went away|has stopped|have stopped|stopped|resolved|cleared up|no longer|disappeared|is over)\b",
    re.IGNORECASE,
)

_NUMERIC_SEVERITY_RE = re.compile(r"\b(10|[1-9])\s*(?:/|out of)\s*10\b", re.IGNORECASE)
_WORD_SEVERITY = [
    (re.compile(r"\b(?:excruciating|unbearable|worst)\b", re.IGNORECASE), 10),
    (re.compile(r"\b(?:severe|intense|terrible)\b", re.IGNORECASE), 8),
    (re.compile(r"\bmoderate\b", re.IGNORECASE), 5),
    (re.compile(r"\b(?:mild|slight)\b", re.IGNORECASE), 3),
]
_FREQUENCY_PATTERNS = [
    (re.compile(r"\b(?:constant(?:ly)?|all the time|non-?stop|all day)\b", re.IGNORECASE), "constant"),
    (re.compile(r"\b(?:comes and goes|on and off|off and on|intermittent(?:ly)?)\b", re.IGNORECASE), "intermittent"),
    (re.compile(r"\b(?:occasional(?:ly)?|sometimes|once in a while|every now and then)\b", re.IGNORECASE), "occasional"),
]
_LOCATION_RE = re.compile(
    r"\b(?:in|on|behind|around|across) (?:my|the) ((?:(?:left|right|upper|lower|front|back)\s+)?"
    r"(?:side|temples?|forehead|head|eyes?|neck|chest|stomach|abdomen|back|throat|ears?|knees?|shoulders?"
    r"|arms?|legs?|feet|foot|hands?|joints?|skin|face|jaw|teeth|tooth))\b",
    re.IGNORECASE,
)
_PATTERN_RE = re.compile(
    r"\b(?:(?:worse|mostly|usually|especially)\s+)?(?:in the (?:morning|evening|afternoon)|at night|on waking)\b",
    re.IGNORECASE,
)
_PHRASE_END = r"(?=$|[,.;!?]|\band\b|\bbut\b)"
_TRIGGER_RE = re.compile(
    rf"\b(?:worse|triggered|brought on|flares? up)\s+(?:when|after|by|with|if)\s+(?:i\s+)?([a-z][a-z' ]{{1,40}}?){_PHRASE_END}",
    re.IGNORECASE,
)
_RELIEVER_RE = re.compile(
    rf"\b(?:better|eases?|improves?|relieved)\s+(?:when|after|by|with|if)\s+(?:i\s+)?([a-z][a-z' ]{{1,40}}?){_PHRASE_END}",
    re.IGNORECASE,
)
_HELPS_RE = re.compile(r"\b(?:taking\s+)?([a-z]+) (?:helps|helped|seems to help)\b", re.IGNORECASE)


@dataclass
class SymptomMention:
    name: str
    details: SymptomDetails = field(default_factory=SymptomDetails)


@dataclass
class MessageFindings:
    mentions: list[SymptomMention] = field(default_factory=list)
    denied: list[str] = field(default_factory=list)
    resolved: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.mentions or self.denied or self.resolved)


def _find_symptoms(text: str) -> list[tuple[int, str]]:
    found: list[tuple[int, str]] = []
    for pattern, label in _SYMPTOM_MAP:
        match = pattern.search(text)
        if match:
            found.append((match.start(), label))
    for match in _BODY_PART_PAIN_RE.finditer(text):
        part = (match.group(1) or match.group(2)).lower()
        found.append((match.start(), f"{part} pain"))
    found.sort()
    return found


def extract_details(text: str) -> SymptomDetails:
    details = SymptomDetails()
    numeric = _NUMERIC_SEVERITY_RE.search(text)
    if numeric:
        details.severity = int(numeric.group(1))
    else:
        for pattern, value in _WORD_SEVERITY:
            if pattern.search(text):
                details.severity = value
                break
    for pattern, value in _FREQUENCY_PATTERNS:
        if pattern.search(text):
            details.frequency = value
            break
    location = _LOCATION_RE.search(text)
    if location:
        details.location = " ".join(location.group(1).lower().split())
    pattern_match = _PATTERN_RE.search(text)
    if pattern_match:
        details.pattern = " ".join(pattern_match.group(0).lower().split())
    details.triggers = [" ".join(item.lower().split()) for item in _TRIGGER_RE.findall(text)]
    relievers = [" ".join(item.lower().split()) for item in _RELIEVER_RE.findall(text)]
    relievers.extend(" ".join(item.lower().split()) for item in _HELPS_RE.findall(text))
    details.relievers = [item for item in dict.fromkeys(relievers) if item not in {"it", "that", "this", "nothing"}]
    return details


def _merge(target: SymptomDetails, extra: SymptomDetails) -> None:
    if extra.severity is not None:
        target.severity = extra.severity
    target.location = extra.location or target.location
    target.frequency = extra.frequency or target.frequency
    target.pattern = extra.pattern or target.pattern
    target.triggers = list(dict.fromkeys([*target.triggers, *extra.triggers]))
    target.relievers = list(dict.fromkeys([*target.relievers, *extra.relievers]))
    if extra.notes:
        target.notes = f"{target.notes} {extra.notes}".strip() if target.notes else extra.notes


class RuleBasedExtractor:
    """Keyword and phrase rules for symptoms, their details, denials and reported cessation."""

    def extract(self, message: str) -> MessageFindings:
        findings = MessageFindings()
        by_name: dict[str, SymptomMention] = {}
        last_mentions: list[SymptomMention] = []

        for sentence in _SENTENCE_SPLIT_RE.split(message or ""):
            sentence = sentence.strip()
            if not sentence:
                continue
            sentence_mentions: list[SymptomMention] = []
            for scope in _SCOPE_SPLIT_RE.split(sentence):
                for position, label in _find_symptoms(scope):
                    key = normalize_symptom_name(label)
                    if _RESOLUTION_RE.search(scope):
                        if key not in findings.resolved:
                            findings.resolved.append(key)
                        continue
                    if _NEGATION_RE.search(scope[:position]):
                        if key not in findings.denied:
                            findings.denied.append(key)
                        continue
                    mention = by_name.get(key)
                    if mention is None:
                        mention = SymptomMention(name=label)
                        by_name[key] = mention
                        findings.mentions.append(mention)
                    if mention not in sentence_mentions:
                        sentence_mentions.append(mention)

            details = extract_details(sentence)
            details.notes = sentence[:200]
            if sentence_mentions:
                # A single symptom owns the whole sentence's details; several share only the notes.
                if len(sentence_mentions) == 1:
                    _merge(sentence_mentions[0].details, details)
                else:
                    for mention in sentence_mentions:
                        _merge(mention.details, SymptomDetails(notes=details.notes))
                last_mentions = sentence_mentions
            elif len(last_mentions) == 1 and not details.is_empty():
                # Follow-up sentence such as "It's about 7/10" refers back to the last symptom.
                details.notes = None
                _merge(last_mentions[0].details, details)

        mentioned = {normalize_symptom_name(item.name) for item in findings.mentions}
        findings.denied = [name for name in findings.denied if name not in mentioned]
        findings.resolved = [name for name in findings.resolved if name not in mentioned]
        return findings


_EXTRACTION_PROMPT = (
    "You extract symptom information from a patient's chat message. "
    "Respond with one JSON object and nothing else, shaped as "
    '{"symptoms":[{"name":str,"severity":int 1-10 or null,"location":str or null,'
    '"frequency":"constant"|"intermittent"|"occasional" or null,"pattern":str or null,'
    '"triggers":[str],"relievers":[str],"notes":str or null}],'
    '"denied":[str],"resolved":[str]}. '
    "Use short lower-case symptom names. 'denied' lists symptoms the patient says they do not have; "
    "'resolved' lists symptoms the patient says have gone away. Do not guess diagnoses."
)


def _coerce_severity(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        numeric = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return min(10, max(1, numeric))


def _coerce_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = " ".join(value.split())
    return cleaned[:200] or None


def _coerce_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in (_coerce_text(entry) for entry in value) if item]


def _coerce_symptom_name(value: Any) -> str | None:
    name = _coerce_text(value)
    # Must stay within what the store guard accepts.
    if name and len(name) > MAX_SYMPTOM_NAME_LENGTH:
        logger.info("dropping generated symptom name of %s characters", len(name))
        return None
    return name


def _coerce_symptom_names(value: Any) -> list[str]:
    names = [_coerce_symptom_name(entry) for entry in (value if isinstance(value, list) else [])]
    return [normalize_symptom_name(name) for name in names if name]


def findings_from_json(payload: dict[str, Any]) -> MessageFindings:
    findings = MessageFindings()
    seen: set[str] = set()
    raw_symptoms = payload.get("symptoms")
    for raw in raw_symptoms if isinstance(raw_symptoms, list) else []:
        if not isinstance(raw, dict):
            continue
        name = _coerce_symptom_name(raw.get("name"))
        if not name or normalize_symptom_name(name) in seen:
            continue
        seen.add(normalize_symptom_name(name))
        frequency = _coerce_text(raw.get("frequency"))
        findings.mentions.append(
            SymptomMention(
                name=name.lower(),
                details=SymptomDetails(
                    severity=_coerce_severity(raw.get("severity")),
                    location=_coerce_text(raw.get("location")),
                    frequency=frequency.lower() if frequency and frequency.lower() in FREQUENCIES else None,
                    pattern=_coerce_text(raw.get("pattern")),
                    triggers=_coerce_list(raw.get("triggers")),
                    relievers=_coerce_list(raw.get("relievers")),
                    notes=_coerce_text(raw.get("notes")),
                ),
            )
        )
    findings.denied = _coerce_symptom_names(payload.get("denied"))
    findings.resolved = _coerce_symptom_names(payload.get("resolved"))
    return findings


class FindingExtractor:
    """Uses the text generator when one is configured and falls back to the rules otherwise."""

    def __init__(self, generator: TextGenerator | None = None, rules: RuleBasedExtractor | None = None) -> None:
        self._generator = generator
        self._rules = rules or RuleBasedExtractor()

    def extract(self, message: str, context: ConversationContext) -> MessageFindings:
        if self._generator is not None:
            try:
                raw = self._generator.generate(
                    _EXTRACTION_PROMPT,
                    message,
                    {"known_symptoms": sorted(context.recent_episode_by_symptom.keys())},
                )
            except ProviderError as exc:
                logger.warning("symptom extraction via text generator failed, using rules: %s", exc)
            else:
                payload = extract_json_object(raw)
                if payload is not None:
                    findings = findings_from_json(payload)
                    if not findings.is_empty():
                        return findings
                logger.info("text generator returned no usable findings, using rules")
        return self._rules.extract(message)
