"""
Data model for Allianz quote automation

Field descriptors, discovery candidates, fill outcomes, the quote result and
the run report handed to the result sink.
"""
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from config import ACTOR_VERSION


class FieldKind(str, Enum):
    """Control kinds the writer knows how to fill and verify"""
    TEXT = "text"
    DATE = "date"
    RADIO = "radio"
    SELECT = "select"
    CHECKBOX = "checkbox"


class RunStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    ERROR = "ERROR"


class QuoteAutomationError(Exception):
    """Raised when a run ends on an unexpected error"""


# ============ Locate strategies ============

@dataclass(frozen=True)
class SelectorStrategy:
    """Locate a control through a fixed selector"""
    selector: str

    def describe(self) -> str:
        return self.selector


@dataclass(frozen=True)
class DiscoveredStrategy:
    """Locate a control through a handle found by keyword discovery"""
    candidate: "DiscoveredCandidate"

    def describe(self) -> str:
        return f"discovered:{self.candidate.selector}"


LocateStrategy = Union[SelectorStrategy, DiscoveredStrategy]


def selector_strategies(*selectors: str) -> Tuple[SelectorStrategy, ...]:
    return tuple(SelectorStrategy(s) for s in selectors)


# ============ Fields ============

@dataclass(frozen=True)
class FieldDescriptor:
    """One logical field: where it might be, what it is, what goes in"""
    name: str
    strategies: Tuple[LocateStrategy, ...]
    kind: FieldKind
    value: Any


@dataclass
class DiscoveredCandidate:
    """
    A control found by scanning the DOM for keywords.

    The handle belongs to the DOM snapshot it was found in; after any settle
    the candidate list has to be discovered again.
    """
    handle: Any
    selector: str
    kind: FieldKind
    context: str
    label_text: str = ""
    value: str = ""
    matched: Tuple[str, ...] = ()

    def mentions(self, *words: str) -> bool:
        return any(word in self.context for word in words)

    def mentions_word(self, *words: str) -> bool:
        """Whole-word match, so 'ja' does not hit 'jahre'"""
        tokens = set(re.findall(r"\w+", self.context))
        return any(word in tokens for word in words)


@dataclass(frozen=True)
class FillOutcome:
    name: str
    succeeded: bool
    observed_value: Any = None

    def describe(self) -> str:
        return f"{self.name}: {self.observed_value}"


# ============ Insurance reason (the run's single control-flow fork) ============

NEW_OR_REPLACEMENT = "Neu-/Ersatz-Versicherung"
INSURER_SWITCH = "Versicherer-Wechsel"


@dataclass(frozen=True)
class NewOrReplacement:
    """New vehicle or replacement vehicle; no previous-insurer data"""
    label: str = NEW_OR_REPLACEMENT
    radio_value: str = "NEUES_FAHRZEUG"
    selectors: Tuple[str, ...] = (
        '#situation-NEUES_FAHRZEUG-id-input',
        'input[value*="NEUES_FAHRZEUG"]',
        'input[value*="NEU"]',
    )
    sub_steps: Tuple[str, ...] = ()


@dataclass(frozen=True)
class InsurerSwitch:
    """Vehicle moves from another insurer; previous-insurer data required"""
    label: str = INSURER_SWITCH
    radio_value: str = "WECHSEL"
    selectors: Tuple[str, ...] = (
        '#situation-WECHSEL-id-input',
        'input[value*="WECHSEL"]',
        'input[value*="VERSICHERER_WECHSEL"]',
    )
    sub_steps: Tuple[str, ...] = ("fill_previous_insurance_data",)


InsuranceReason = Union[NewOrReplacement, InsurerSwitch]

INSURANCE_REASONS = {
    NEW_OR_REPLACEMENT: NewOrReplacement(),
    INSURER_SWITCH: InsurerSwitch(),
}


def insurance_reason_for(value: str) -> Optional[InsuranceReason]:
    return INSURANCE_REASONS.get(value)


# ============ Run state ============

@dataclass
class RunContext:
    """Mutable state threaded through every orchestrator step"""
    record: Dict[str, Any]
    filled_fields: List[FillOutcome] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    screenshots: List[str] = field(default_factory=list)
    reason: Optional[InsuranceReason] = None
    steps_run: List[str] = field(default_factory=list)

    def record_outcome(self, outcome: FillOutcome, error: Optional[str] = None) -> bool:
        if outcome.succeeded:
            self.filled_fields.append(outcome)
        else:
            self.errors.append(error or f"Could not fill {outcome.name}")
        return outcome.succeeded

    def filled(self, name: str) -> Optional[FillOutcome]:
        for outcome in self.filled_fields:
            if outcome.name == name:
                return outcome
        return None


@dataclass(frozen=True)
class QuoteResult:
    captured: bool
    tariffs: List[Dict[str, Any]] = field(default_factory=list)
    pricing: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    coverage: Dict[str, str] = field(default_factory=dict)
    euro_snippets: List[str] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    debug: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.error is None:
            data.pop("error")
        return data


@dataclass
class SubmitResult:
    submitted: bool = False
    has_results: bool = False
    has_errors: bool = False
    quote: Optional[QuoteResult] = None


@dataclass
class RunReport:
    """Complete output record of one run; finalized exactly once"""
    url: str
    run_id: str
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    status: Optional[RunStatus] = None
    error: Optional[str] = None
    input_data: Dict[str, Any] = field(default_factory=dict)
    form_structure: Dict[str, Any] = field(default_factory=dict)
    filled_fields: List[FillOutcome] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    screenshots: List[str] = field(default_factory=list)
    submitted: bool = False
    has_results: bool = False
    quote: Optional[QuoteResult] = None

    @property
    def finalized(self) -> bool:
        return self.end_time is not None

    def finalize(self, status: RunStatus, ctx: Optional[RunContext] = None,
                 submit: Optional[SubmitResult] = None, error: Optional[str] = None) -> "RunReport":
        if self.finalized:
            raise RuntimeError(f"Run report {self.run_id} already finalized")

        self.end_time = datetime.now()
        self.status = status
        self.error = error
        if ctx is not None:
            self.input_data = dict(ctx.record)
            self.filled_fields = list(ctx.filled_fields)
            self.errors = list(ctx.errors)
            self.screenshots = list(ctx.screenshots)
        if submit is not None:
            self.submitted = submit.submitted
            self.has_results = submit.has_results
            self.quote = submit.quote
        return self

    def to_dict(self) -> Dict[str, Any]:
        metadata = {
            "url": self.url,
            "runId": self.run_id,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "actorVersion": ACTOR_VERSION,
            "status": self.status.value if self.status else None,
        }
        if self.end_time:
            metadata["duration"] = int((self.end_time - self.start_time).total_seconds() * 1000)

        if self.status == RunStatus.ERROR:
            metadata["error"] = self.error
            return {
                "metadata": metadata,
                "inputData": self.input_data,
                "formProcessing": {
                    "fieldsFilled": len(self.filled_fields),
                    "errors": self.errors,
                },
                "quote": {"captured": False, "error": self.error},
                "technical": {
                    "processedFields": [o.describe() for o in self.filled_fields],
                    "screenshots": self.screenshots,
                },
            }

        return {
            "metadata": metadata,
            "inputData": self.input_data,
            "formProcessing": {
                "fieldsAnalyzed": len(self.form_structure.get("inputs", [])),
                "fieldsFilled": len(self.filled_fields),
                "submitted": self.submitted,
                "hasResults": self.has_results,
                "errors": self.errors,
            },
            "quote": self.quote.to_dict() if self.quote else {"captured": False},
            "technical": {
                "formStructure": self.form_structure,
                "processedFields": [o.describe() for o in self.filled_fields],
                "screenshots": self.screenshots,
            },
        }
