############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# evaluator.py: Binary quality checks on rendered images
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Binary pass/fail checks run by a vision model against a rendered image."""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from tandem.app.core.audit import AuditSink, get_audit_sink
from tandem.app.core.telemetry import metrics
from tandem.app.core.telemetry.adapters.ollama import OllamaAdapter
from tandem.app.core.vision.spec import GenerationSpec
from tandem.app.logging_config import get_logger

logger = get_logger(__name__)

AUDIT_COMPONENT = "vision"
_ANSWER_SUFFIX = 'Answer ONLY "PASS" or "FAIL" followed by one sentence reason.'


class CheckStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


@dataclass(frozen=True)
class CheckResult:
    status: CheckStatus
    reason: str
    required: bool

    def to_dict(self) -> Dict:
        return {"status": self.status.value, "reason": self.reason, "required": self.required}


@dataclass(frozen=True)
class Check:
    name: str
    required: bool
    question: Callable[[GenerationSpec], Optional[str]]  # None means not applicable


def _subject_question(spec: GenerationSpec) -> Optional[str]:
    return f"Does this image contain: {spec.subjects()}? {_ANSWER_SUFFIX}"


def _text_question(spec: GenerationSpec) -> Optional[str]:
    if not spec.text_boxes:
        return None
    texts = ", ".join(f'"{tb.text}"' for tb in spec.text_boxes)
    return (
        f"Can you read these texts clearly in the image: {texts}? "
        'Answer ONLY "PASS" (all readable) or "FAIL" (any illegible/missing) '
        "followed by one sentence reason."
    )


def _lighting_question(spec: GenerationSpec) -> Optional[str]:
    if spec.lighting is None or not spec.lighting.direction:
        return None
    return f"Is the main light source coming from the {spec.lighting.direction}? {_ANSWER_SUFFIX}"


def _style_question(spec: GenerationSpec) -> Optional[str]:
    if not spec.style:
        return None
    return f'Does this image match the style "{spec.style}"? {_ANSWER_SUFFIX}'


def _artifact_question(spec: GenerationSpec) -> Optional[str]:
    return (
        "Are there obvious visual artifacts, distortions, or mangled body parts? "
        'Answer ONLY "PASS" (clean image) or "FAIL" (has artifacts) '
        "followed by one sentence reason."
    )


CHECKS: List[Check] = [
    Check("has_required_subject", True, _subject_question),
    Check("text_legible", True, _text_question),
    Check("lighting_direction_match", False, _lighting_question),
    Check("style_match", False, _style_question),
    Check("no_artifacts", True, _artifact_question),
]


@dataclass
class EvaluationReport:
    checks: Dict[str, CheckResult] = field(default_factory=dict)
    skipped: bool = False

    @property
    def fail_reasons(self) -> List[str]:
        return [
            f"{name}: {result.reason}"
            for name, result in self.checks.items()
            if result.required and result.status is CheckStatus.FAIL
        ]

    @property
    def required_failures(self) -> int:
        return len(self.fail_reasons)

    @property
    def should_rerender(self) -> bool:
        return self.required_failures > 0

    @property
    def passed(self) -> bool:
        return not self.should_rerender

    @property
    def refinement_hints(self) -> Optional[str]:
        reasons = self.fail_reasons
        if not reasons:
            return None
        return f"Fix these issues: {'; '.join(reasons)}"

    def to_dict(self) -> Dict:
        return {
            "passed": self.passed,
            "skipped": self.skipped,
            "checks": {name: result.to_dict() for name, result in self.checks.items()},
            "fail_reasons": self.fail_reasons,
        }


def parse_answer(raw: str) -> CheckResult:
    """Interpret a PASS/FAIL reply; ``required`` is filled in by the caller."""
    text = (raw or "").strip()
    passed = text.upper().startswith("PASS")
    reason = text
    for prefix in ("PASS", "FAIL"):
        if text.upper().startswith(prefix):
            reason = text[len(prefix):].lstrip(" :.-\t")
            break
    return CheckResult(
        status=CheckStatus.PASS if passed else CheckStatus.FAIL,
        reason=reason or ("OK" if passed else "Failed"),
        required=False,
    )


def build_refinement_prompt(prompt: str, report: EvaluationReport) -> str:
    hints = report.refinement_hints
    if not hints:
        return prompt
    return f"{prompt}\n\nIMPORTANT CORRECTIONS: {hints}"


class ImageEvaluator:
    """Runs each applicable check as one vision-model call."""

    def __init__(
        self,
        adapter: OllamaAdapter,
        model: str,
        timeout: float = 25.0,
        audit: Optional[AuditSink] = None,
    ):
        self.adapter = adapter
        self.model = model
        self.timeout = timeout
        self._audit = audit

    @property
    def audit(self) -> AuditSink:
        return self._audit if self._audit is not None else get_audit_sink()

    async def _ask(self, question: str, image_b64: str) -> str:
        return await self.adapter.complete(
            self.model,
            [{"role": "user", "content": question, "images": [image_b64]}],
            temperature=0.1,
            max_tokens=80,
            timeout=self.timeout,
        )

    async def evaluate(
        self,
        image_bytes: bytes,
        spec: GenerationSpec,
        request_id: Optional[str] = None,
        on_check: Optional[Callable[[str, CheckResult], None]] = None,
    ) -> EvaluationReport:
        """
        Run every check against the image.

        A check whose question does not apply is SKIPPED. A check whose
        model call fails is ERROR and never blocks shipping.
        """
        image_b64 = base64.b64encode(image_bytes).decode("ascii")
        report = EvaluationReport()

        for check in CHECKS:
            question = check.question(spec)
            if question is None:
                result = CheckResult(CheckStatus.SKIPPED, "Not applicable", check.required)
            else:
                try:
                    answer = parse_answer(await self._ask(question, image_b64))
                    result = CheckResult(answer.status, answer.reason, check.required)
                except Exception as e:
                    logger.warning("evaluation_check_error", check=check.name, error=str(e))
                    result = CheckResult(CheckStatus.ERROR, str(e), check.required)

            report.checks[check.name] = result
            metrics.EVALUATION_OUTCOMES.labels(check=check.name, status=result.status.value).inc()
            if on_check is not None:
                on_check(check.name, result)

        self.audit.record(
            AUDIT_COMPONENT,
            "evaluate",
            {
                "request_id": request_id,
                "passed": report.passed,
                "checks": {name: r.status.value for name, r in report.checks.items()},
            },
        )
        return report
