"""
Factor Analyzers

Deterministic checks behind the five confidence factors. These are NOT
prompt-based: they use pattern matching and structural checks so that every
penalty can be traced back to a concrete piece of evidence.

Analyzers:
1. AccuracyAnalyzer - out-of-range values, source data mismatches, over-claims
2. BiasAnalyzer - demographic, professional and cultural bias indicators
3. ClarityAnalyzer - sentence complexity, jargon density, ambiguous openings, tone
4. ConsistencyAnalyzer - agreement with scoring nodes in the dependency closure
5. ComplianceAnalyzer - required disclosures, ethical guidelines, regulated content
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from dualval.core.enums import ConfidenceFactor, NodeType, Severity
from dualval.core.schemas import Node

logger = logging.getLogger(__name__)

MAX_SCORE = 100.0


@dataclass
class Finding:
    """A single penalised observation."""

    check: str
    matched: str
    penalty: float
    message: str
    severity: Severity = Severity.MEDIUM
    replacement: str | None = None

    def to_evidence(self) -> str:
        if self.replacement:
            return f'{self.message}: "{self.matched}" (suggest "{self.replacement}")'
        if self.matched:
            return f'{self.message}: "{self.matched}"'
        return self.message


@dataclass
class FactorAnalysis:
    """Score and findings for one factor."""

    factor: ConfidenceFactor
    findings: list[Finding] = field(default_factory=list)
    base: float = MAX_SCORE

    @property
    def score(self) -> float:
        penalty = sum(f.penalty for f in self.findings)
        return round(max(0.0, min(MAX_SCORE, self.base - penalty)), 2)

    @property
    def evidence(self) -> list[str]:
        return [f.to_evidence() for f in self.findings]

    def add(self, finding: Finding) -> None:
        self.findings.append(finding)


# =============================================================================
# TEXT HELPERS
# =============================================================================

_TEXT_KEYS = ("title", "text", "description", "interpretation", "rationale", "action")
_SKIP_KEYS = {"id", "label", "group", "references", "based_on", "confidence", "category"}

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_WORD = re.compile(r"[A-Za-z][A-Za-z'-]*")


def readable_text(node: Node) -> str:
    """Human-readable text of a node (structured fields excluded)."""
    content = node.content
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, dict):
        preferred = [content[k] for k in _TEXT_KEYS if isinstance(content.get(k), str)]
        if preferred:
            return " ".join(p.strip() for p in preferred).strip()
        if node.node_type == NodeType.SCORING:
            return ""
        return " ".join(_strings(content)).strip()
    if isinstance(content, (list, tuple)):
        return " ".join(_strings(content)).strip()
    return ""


def _strings(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict):
        out: list[str] = []
        for key in sorted(value):
            if key not in _SKIP_KEYS:
                out.extend(_strings(value[key]))
        return out
    if isinstance(value, (list, tuple)):
        out = []
        for item in value:
            out.extend(_strings(item))
        return out
    return []


def sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text) if s.strip()]


def words(text: str) -> list[str]:
    return _WORD.findall(text)


def _score_range(node: Node, context: dict[str, Any]) -> tuple[float, float]:
    declared = None
    if isinstance(node.content, dict):
        declared = node.content.get("range")
    if declared is None:
        declared = context.get("score_range", (0.0, 100.0))
    low, high = declared
    return float(low), float(high)


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


# =============================================================================
# ACCURACY
# =============================================================================

_OVERCLAIM_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bproven fact\b",
        r"\bscientifically proven\b",
        r"\bguarantee[sd]?\b",
        r"\bmiracle (?:cure|solution)\b",
        r"\bresearch proves\b",
        r"\b100% (?:accurate|certain|effective)\b",
        r"\bwithout (?:any )?doubt\b",
    )
]
_IMPOSSIBLE_SHARE = re.compile(r"\b(\d{3,}(?:\.\d+)?)\s?% of\b")


class AccuracyAnalyzer:
    """Statistical and factual plausibility against declared source data."""

    def __init__(self, tolerance: float = 5.0) -> None:
        self._tolerance = tolerance

    def analyze(self, node: Node, context: dict[str, Any]) -> FactorAnalysis:
        analysis = FactorAnalysis(ConfidenceFactor.ACCURACY)
        if node.node_type == NodeType.SCORING and isinstance(node.content, dict):
            self._check_score(node, context, analysis)

        text = readable_text(node)
        overclaims = 0
        for pattern in _OVERCLAIM_PATTERNS:
            for match in pattern.finditer(text):
                overclaims += 1
                if overclaims <= 3:
                    analysis.add(
                        Finding("overclaim", match.group(0), 10.0, "Unsupported absolute claim")
                    )
        for match in _IMPOSSIBLE_SHARE.finditer(text):
            if float(match.group(1)) > 100:
                analysis.add(
                    Finding(
                        "impossible_share",
                        match.group(0),
                        30.0,
                        "Implausible share greater than 100%",
                        Severity.HIGH,
                    )
                )
        return analysis

    def _check_score(self, node: Node, context: dict[str, Any], analysis: FactorAnalysis) -> None:
        content = node.content
        label = content.get("label", node.node_id)
        score = _number(content.get("score"))
        if score is None:
            analysis.add(
                Finding(
                    "non_numeric",
                    str(content.get("score")),
                    50.0,
                    f"Score for {label} is not numeric",
                    Severity.HIGH,
                )
            )
            return

        low, high = _score_range(node, context)
        if not low <= score <= high:
            analysis.add(
                Finding(
                    "out_of_range",
                    f"{score:g}",
                    60.0,
                    f"Score for {label} outside declared range [{low:g}, {high:g}]",
                    Severity.CRITICAL,
                )
            )

        percentile = content.get("percentile")
        if percentile is not None:
            value = _number(percentile)
            if value is None or not 0 <= value <= 100:
                analysis.add(
                    Finding(
                        "percentile_range",
                        str(percentile),
                        40.0,
                        f"Percentile for {label} outside [0, 100]",
                        Severity.HIGH,
                    )
                )

        source = context.get("source_data") or {}
        expected = source.get(node.node_id, source.get(label))
        expected = _number(expected)
        if expected is not None and abs(expected - score) > self._tolerance:
            analysis.add(
                Finding(
                    "source_mismatch",
                    f"{score:g}",
                    50.0,
                    f"Reported {label} of {score:g} but source data has {expected:g}",
                    Severity.HIGH,
                )
            )


# =============================================================================
# BIAS
# =============================================================================


@dataclass(frozen=True)
class BiasDetector:
    """One family of bias indicators."""

    name: str
    severity: Severity
    weight: float
    patterns: tuple[re.Pattern[str], ...]
    mitigation: str
    replacements: tuple[tuple[str, str], ...] = ()

    def replacement_for(self, matched: str) -> str | None:
        lowered = matched.lower()
        for term, neutral in self.replacements:
            if lowered == term:
                return neutral
        return None


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


BIAS_DETECTORS: tuple[BiasDetector, ...] = (
    BiasDetector(
        name="gendered_language",
        severity=Severity.LOW,
        weight=8.0,
        patterns=_compile(
            r"\b(?:chairman|fireman|policeman|businessman|salesman|spokesman|manpower|mankind)\b"
        ),
        mitigation="Use gender-neutral role names",
        replacements=(
            ("chairman", "chairperson"),
            ("fireman", "firefighter"),
            ("policeman", "police officer"),
            ("businessman", "businessperson"),
            ("salesman", "salesperson"),
            ("spokesman", "spokesperson"),
            ("manpower", "workforce"),
            ("mankind", "humankind"),
        ),
    ),
    BiasDetector(
        name="gender_assumption",
        severity=Severity.HIGH,
        weight=25.0,
        patterns=_compile(
            r"\b(?:women|men|females|males|girls|boys)\s+(?:are|tend to be)\s+(?:naturally\s+)?"
            r"(?:more|less|better|worse|too|not)\b",
            r"\b(?:breadwinner|homemaker)s?\b",
            r"\b(?:bossy|hysterical|shrill)\b",
        ),
        mitigation="Describe behaviours and evidence, not gender",
    ),
    BiasDetector(
        name="racial_generalisation",
        severity=Severity.CRITICAL,
        weight=35.0,
        patterns=_compile(
            r"\b(?:all|most|typical)\s+"
            r"(?:asians?|blacks?|whites?|hispanics?|latinos?|africans?|arabs?)"
            r"\s+(?:are|tend)\b",
            r"\barticulate for an?\b",
        ),
        mitigation="Remove generalisations about racial or ethnic groups",
    ),
    BiasDetector(
        name="age",
        severity=Severity.MEDIUM,
        weight=15.0,
        patterns=_compile(
            r"\btoo old (?:to|for)\b",
            r"\bover the hill\b",
            r"\bdigital natives?\b",
            r"\byoung and energetic\b",
            r"\bset in (?:their|his|her) ways\b",
            r"\b(?:older|younger) (?:workers|employees|people) (?:are|can't|cannot)\b",
        ),
        mitigation="Refer to skills and experience rather than age",
    ),
    BiasDetector(
        name="socioeconomic",
        severity=Severity.MEDIUM,
        weight=15.0,
        patterns=_compile(
            r"\bpoor people are\b",
            r"\bwelfare (?:recipients|queens?)\b",
            r"\bby (?:the|their) bootstraps\b",
            r"\b(?:low-income|working-class) (?:people|families) (?:are|lack)\b",
        ),
        mitigation="Avoid assumptions tied to income or class",
    ),
    BiasDetector(
        name="cultural",
        severity=Severity.HIGH,
        weight=20.0,
        patterns=_compile(
            r"\b(?:foreigners|immigrants) (?:are|tend to|can't|cannot)\b",
            r"\b(?:primitive|backward) (?:culture|cultures|people)\b",
        ),
        mitigation="Avoid generalisations about cultures or nationalities",
    ),
    BiasDetector(
        name="professional",
        severity=Severity.LOW,
        weight=10.0,
        patterns=_compile(
            r"\bjust an? (?:secretary|nurse|receptionist|assistant|intern)\b",
            r"\b(?:only|merely) an? (?:admin|assistant|intern)\b",
        ),
        mitigation="Do not diminish roles or job levels",
    ),
    BiasDetector(
        name="cognitive",
        severity=Severity.LOW,
        weight=8.0,
        patterns=_compile(
            r"\beveryone knows\b",
            r"\bit is common sense that\b",
            r"\bobviously\b",
        ),
        mitigation="Support claims with evidence instead of appeals to consensus",
    ),
)


class BiasAnalyzer:
    """Penalty proportional to match count and detector severity."""

    def __init__(self, detectors: Iterable[BiasDetector] = BIAS_DETECTORS) -> None:
        self._detectors = tuple(detectors)

    def analyze(self, node: Node) -> FactorAnalysis:
        analysis = FactorAnalysis(ConfidenceFactor.BIAS)
        text = readable_text(node)
        if not text:
            return analysis
        for detector in self._detectors:
            matches = [m.group(0) for p in detector.patterns for m in p.finditer(text)]
            # Repeated matches of one family raise its reported severity
            severity = detector.severity.escalate() if len(matches) >= 3 else detector.severity
            for matched in matches:
                analysis.add(
                    Finding(
                        check=detector.name,
                        matched=matched,
                        penalty=detector.weight,
                        message=f"{detector.name.replace('_', ' ').capitalize()} bias indicator",
                        severity=severity,
                        replacement=detector.replacement_for(matched),
                    )
                )
        return analysis

    def mitigation_for(self, check: str) -> str | None:
        for detector in self._detectors:
            if detector.name == check:
                return detector.mitigation
        return None


# =============================================================================
# CLARITY
# =============================================================================

JARGON_TERMS = frozenset(
    {
        "synergy",
        "synergies",
        "leverage",
        "paradigm",
        "holistic",
        "bandwidth",
        "ideate",
        "operationalize",
        "actionable",
        "deliverables",
        "learnings",
        "circle back",
        "move the needle",
        "low-hanging fruit",
        "best-in-class",
        "value-add",
    }
)
_CASUAL = re.compile(r"\b(?:very|really|totally|awesome|super|kinda|gonna|stuff)\b", re.IGNORECASE)
_AMBIGUOUS_OPENING = re.compile(
    r"^(?:this|that|it|these|those|they)\s+"
    r"(?:is|are|was|were|means|shows|suggests|indicates|implies|will)\b",
    re.IGNORECASE,
)
MAX_SENTENCE_WORDS = 25


class ClarityAnalyzer:
    """Readability and tone heuristics."""

    def analyze(self, node: Node) -> FactorAnalysis:
        analysis = FactorAnalysis(ConfidenceFactor.CLARITY)
        text = readable_text(node)
        if not text:
            if node.node_type not in (NodeType.SCORING, NodeType.CONTEXT):
                analysis.add(
                    Finding("empty", "", 80.0, "Node has no readable text", Severity.HIGH)
                )
            return analysis

        parts = sentences(text)
        word_list = words(text)
        lengths = [len(words(s)) for s in parts] or [0]
        average = sum(lengths) / len(lengths)
        if average > MAX_SENTENCE_WORDS:
            longest = parts[lengths.index(max(lengths))]
            analysis.add(
                Finding(
                    "sentence_length",
                    longest[:80],
                    min(30.0, (average - MAX_SENTENCE_WORDS) * 2),
                    f"Average sentence length {average:.1f} words",
                )
            )

        lowered = text.lower()
        jargon = sorted(t for t in JARGON_TERMS if re.search(rf"\b{re.escape(t)}\b", lowered))
        if jargon and word_list and len(jargon) / len(word_list) > 0.03:
            analysis.add(
                Finding(
                    "jargon",
                    ", ".join(jargon),
                    min(30.0, 8.0 * len(jargon)),
                    "Jargon density too high",
                )
            )

        ambiguous = [s for s in parts if _AMBIGUOUS_OPENING.match(s)]
        for sentence in ambiguous[:3]:
            analysis.add(
                Finding(
                    "ambiguous_reference",
                    sentence[:60],
                    6.0,
                    "Sentence opens with a pronoun without a clear referent",
                    Severity.LOW,
                )
            )

        casual = [m.group(0) for m in _CASUAL.finditer(text)]
        if casual:
            analysis.add(
                Finding(
                    "casual_tone",
                    ", ".join(casual[:4]),
                    min(20.0, 5.0 * len(casual)),
                    "Casual tone",
                    Severity.LOW,
                )
            )
        return analysis


# =============================================================================
# CONSISTENCY
# =============================================================================

_HIGH_WORDS = ("high", "strong", "elevated", "above average", "exceptional")
_LOW_WORDS = ("low", "weak", "below average", "limited", "poor")
_BAND_HIGH = 0.7
_BAND_LOW = 0.3


class ConsistencyAnalyzer:
    """Agreement between a node and the scoring nodes it presupposes."""

    def __init__(self, tolerance: float = 5.0) -> None:
        self._tolerance = tolerance

    def analyze(
        self, node: Node, related_nodes: Iterable[Node], context: dict[str, Any]
    ) -> FactorAnalysis:
        analysis = FactorAnalysis(ConfidenceFactor.CONSISTENCY)
        if node.node_type == NodeType.SCORING:
            self._check_percentile(node, context, analysis)
            return analysis

        text = readable_text(node).lower()
        if not text:
            return analysis
        for related in sorted(related_nodes, key=lambda n: n.node_id):
            if related.node_type != NodeType.SCORING or not isinstance(related.content, dict):
                continue
            score = _number(related.content.get("score"))
            label = str(related.content.get("label", "")).lower()
            if score is None or not label or not re.search(rf"\b{re.escape(label)}\b", text):
                continue
            low, high = _score_range(related, context)
            band = self._band(score, low, high)
            claimed = self._claimed_band(text, label)
            if band and claimed and band != claimed:
                analysis.add(
                    Finding(
                        "band_contradiction",
                        label,
                        40.0,
                        f"Describes {label} as {claimed} but {related.node_id} reports {score:g}",
                        Severity.HIGH,
                    )
                )
            mentioned = re.search(rf"\b{re.escape(label)}\b\D{{0,25}}?(\d+(?:\.\d+)?)", text)
            if mentioned and abs(float(mentioned.group(1)) - score) > self._tolerance:
                analysis.add(
                    Finding(
                        "numeric_mismatch",
                        mentioned.group(0),
                        30.0,
                        f"Cites {label} as {mentioned.group(1)} "
                        f"but {related.node_id} reports {score:g}",
                        Severity.HIGH,
                    )
                )
        return analysis

    def _check_percentile(
        self, node: Node, context: dict[str, Any], analysis: FactorAnalysis
    ) -> None:
        content = node.content if isinstance(node.content, dict) else {}
        score = _number(content.get("score"))
        percentile = _number(content.get("percentile"))
        if score is None or percentile is None:
            return
        low, high = _score_range(node, context)
        score_band = self._band(score, low, high)
        percentile_band = self._band(percentile, 0.0, 100.0)
        if score_band and percentile_band and score_band != percentile_band:
            analysis.add(
                Finding(
                    "percentile_contradiction",
                    f"{score:g} / {percentile:g}",
                    30.0,
                    f"Score band ({score_band}) contradicts percentile band ({percentile_band})",
                )
            )

    @staticmethod
    def _band(value: float, low: float, high: float) -> str | None:
        if high <= low:
            return None
        position = (value - low) / (high - low)
        if position >= _BAND_HIGH:
            return "high"
        if position <= _BAND_LOW:
            return "low"
        return None

    @staticmethod
    def _claimed_band(text: str, label: str) -> str | None:
        words_pattern = "|".join(re.escape(w) for w in _HIGH_WORDS + _LOW_WORDS)
        near = re.search(
            rf"\b({words_pattern})\b\W+(?:\w+\W+){{0,3}}?{re.escape(label)}\b"
            rf"|\b{re.escape(label)}\b\W+(?:\w+\W+){{0,4}}?({words_pattern})\b",
            text,
        )
        if not near:
            return None
        word = near.group(1) or near.group(2)
        return "high" if word in _HIGH_WORDS else "low"


# =============================================================================
# COMPLIANCE
# =============================================================================

_ETHICAL_PATTERNS: tuple[tuple[str, re.Pattern[str], float, Severity], ...] = (
    (
        "harm",
        re.compile(r"\b(?:kill yourself|self-harm|hurt (?:others|someone))\b", re.I),
        50.0,
        Severity.CRITICAL,
    ),
    (
        "manipulation",
        re.compile(r"\b(?:you must believe|act now|don't tell anyone|no one will know)\b", re.I),
        25.0,
        Severity.MEDIUM,
    ),
    (
        "transparency",
        re.compile(r"\b(?:secret (?:source|method)|trust me)\b", re.I),
        15.0,
        Severity.LOW,
    ),
)
_PRIVACY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("email address", re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.]+\b")),
    ("social security number", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("phone number", re.compile(r"\b\d{3}[-.\s]\d{3}[-.\s]\d{4}\b")),
)
_REGULATED_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "medical diagnosis",
        re.compile(
            r"\b(?:diagnos(?:e|ed|is)\s+(?:you|them|him|her)\s+with"
            r"|you (?:have|suffer from) (?:a |an )?(?:disorder|depression|adhd|anxiety))\b",
            re.I,
        ),
    ),
    ("legal advice", re.compile(r"\byou should (?:sue|file a lawsuit)\b", re.I)),
    ("financial promise", re.compile(r"\bguaranteed returns?\b", re.I)),
)


class ComplianceAnalyzer:
    """Required disclosures, ethical guideline keywords and regulated content."""

    def __init__(self, required_disclosures: dict[str, list[str]] | None = None) -> None:
        self._required = required_disclosures or {}

    def analyze(self, node: Node, context: dict[str, Any]) -> FactorAnalysis:
        analysis = FactorAnalysis(ConfidenceFactor.COMPLIANCE)
        text = readable_text(node)
        lowered = text.lower()

        required = list(self._required.get(node.node_type.value, []))
        required += list((context.get("required_disclosures") or {}).get(node.node_type.value, []))
        for phrase in required:
            if phrase.lower() not in lowered:
                analysis.add(
                    Finding(
                        "disclosure",
                        phrase,
                        40.0,
                        "Missing required disclosure",
                        Severity.HIGH,
                    )
                )

        for name, pattern, penalty, severity in _ETHICAL_PATTERNS:
            for match in pattern.finditer(text):
                analysis.add(
                    Finding(name, match.group(0), penalty, f"Ethical guideline ({name})", severity)
                )
        for name, pattern in _PRIVACY_PATTERNS:
            for match in pattern.finditer(text):
                analysis.add(
                    Finding(
                        "privacy",
                        match.group(0),
                        40.0,
                        f"Personal data exposed ({name})",
                        Severity.HIGH,
                    )
                )
        for name, pattern in _REGULATED_PATTERNS:
            for match in pattern.finditer(text):
                analysis.add(
                    Finding(
                        "regulated",
                        match.group(0),
                        30.0,
                        f"Regulated content ({name})",
                        Severity.HIGH,
                    )
                )
        return analysis
