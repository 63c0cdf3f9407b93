"""
AutoCrisp Design Service - Agents

Implements the four pipeline agents:
1. PlannerAgent (LLM prompt parsing with keyword fallback)
2. GuideDesigner (mock guide library over the static reference table)
3. RiskAnalyst (threshold-based off-target classification)
4. SummarizerAgent (recommendation tiers + protocol template)

Every agent reports a `thinking` notification before its work and a
`complete` notification after it through the run's emitter.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from completion_client import CompletionClient, CompletionError
from models import (
    FinalSummary,
    Guide,
    OfftargetRisk,
    PlanObject,
    ProgressStatus,
    validate_structured_output,
)
from tools import (
    ParseError,
    canonical_gene_symbol,
    get_guide_templates,
    get_reference_gene,
    list_reference_genes,
    parse_json_payload,
    resolve_target_exon,
)

logger = logging.getLogger(__name__)

Emitter = Callable[[str, ProgressStatus, str], None]

PLAN_REQUIRED_FIELDS = ("gene", "region", "edit_type", "cell_line", "nuclease")
_CAMEL_TO_SNAKE = {
    "editType": "edit_type",
    "cellLine": "cell_line",
    "scientificRationale": "rationale",
    "scientific_rationale": "rationale",
}

PLANNER_SYSTEM_PROMPT = (
    "You are a PhD-level molecular biologist specializing in CRISPR genome editing. "
    "Parse natural language requests for CRISPR experiments with scientific rigor: "
    "validate gene symbols against HGNC nomenclature (p53 -> TP53), consider functional "
    "domains and splice sites for the region, match the cell line to the experimental goal, "
    "and choose a nuclease by PAM availability and specificity. "
    "Defaults when unspecified: gene TP53, region Exon 4, edit_type Knockout, "
    "cell_line HEK293, nuclease SpCas9. "
    "Return strict JSON only with keys: gene, region, edit_type, cell_line, nuclease, "
    "confidence (0-1), rationale. Do not add markdown or extra keys."
)


class MissingDataError(RuntimeError):
    """
    An agent was invoked without the upstream artifact it needs.
    """


class UnknownAgentError(KeyError):
    """
    A task was assigned to an agent name that is not registered.
    """


def _noop_emit(_agent: str, _status: ProgressStatus, _message: str) -> None:
    return None


class BaseAgent:
    name = "BaseAgent"
    role = ""

    def __init__(
        self,
        emit: Optional[Emitter] = None,
        completion_client: Optional[CompletionClient] = None,
        step_delay_seconds: float = 0.0,
    ) -> None:
        self._emit = emit or _noop_emit
        self.completion_client = completion_client
        self.step_delay_seconds = max(0.0, step_delay_seconds)

    def notify(self, status: ProgressStatus, message: str) -> None:
        self._emit(self.name, status, message)

    async def _simulate_work(self) -> None:
        if self.step_delay_seconds > 0:
            await asyncio.sleep(self.step_delay_seconds)

    async def _complete_json(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> Any:
        if self.completion_client is None:
            raise CompletionError(f"{self.name} has no completion client configured.")
        request = self.completion_client.build_request(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
        )
        raw_text = await asyncio.to_thread(self.completion_client.complete, request)
        return parse_json_payload(raw_text)


# =============================================================================
# PLANNER
# =============================================================================


def _first_match(text: str, rules: List[Tuple[Tuple[str, ...], str]], default: str) -> str:
    for needles, value in rules:
        if any(needle in text for needle in needles):
            return value
    return default


def extract_plan_from_keywords(prompt: str) -> PlanObject:
    """
    Deterministic plan extraction used when the LLM parse is unavailable.
    """
    lowered = (prompt or "").lower()

    gene = _first_match(
        lowered,
        [(("tp53", "p53"), "TP53"), (("brca1",), "BRCA1"), (("cftr",), "CFTR"), (("hexa",), "HEXA")],
        "TP53",
    )

    exon = re.search(r"exon\s*(\d+)", lowered)
    if exon:
        region = f"Exon {int(exon.group(1))}"
    else:
        region = _first_match(lowered, [(("promoter",), "Promoter"), (("f508del",), "F508del")], "Exon 4")

    edit_type = _first_match(
        lowered,
        [
            (("knock out", "knockout", "knock-out"), "Knockout"),
            (("crispri",), "CRISPRi"),
            (("base edit",), "Base Editing"),
            (("prime edit",), "Prime Editing"),
        ],
        "Knockout",
    )
    cell_line = _first_match(
        lowered,
        [(("hek293",), "HEK293"), (("hela",), "HeLa"), (("k562",), "K562")],
        "HEK293",
    )
    nuclease = _first_match(
        lowered,
        [
            (("base editor", "be4max"), "BE4max"),
            (("cas12",), "Cas12a"),
            (("spcas9", "cas9"), "SpCas9"),
        ],
        "SpCas9",
    )
    return PlanObject(
        gene=gene,
        region=region,
        edit_type=edit_type,
        cell_line=cell_line,
        nuclease=nuclease,
        confidence=0.85,
    )


def normalize_plan_payload(parsed: Any) -> Dict[str, Any]:
    if not isinstance(parsed, dict):
        raise ValueError("Plan payload must be a JSON object.")
    normalized: Dict[str, Any] = {}
    for key, value in parsed.items():
        normalized[_CAMEL_TO_SNAKE.get(key, key)] = value
    missing = [k for k in PLAN_REQUIRED_FIELDS if not str(normalized.get(k) or "").strip()]
    if missing:
        raise ValueError(f"Plan payload missing required fields: {', '.join(missing)}")
    raw_gene = str(normalized["gene"]).strip()
    normalized["gene"] = canonical_gene_symbol(raw_gene) or raw_gene.upper()
    if normalized.get("confidence") is None:
        normalized["confidence"] = 0.85
    return normalized


class PlannerAgent(BaseAgent):
    name = "PlannerAgent"
    role = "Natural Language Understanding and Experiment Planning"

    async def parse_prompt(self, prompt: str) -> PlanObject:
        self.notify(ProgressStatus.THINKING, "Parsing experiment request into a structured plan...")
        try:
            plan = await self._parse_with_llm(prompt)
            source = "LLM parse"
        except (CompletionError, ParseError, ValueError, ValidationError) as exc:
            logger.warning("Planner LLM parse failed; using keyword extraction: %s", exc)
            self.notify(
                ProgressStatus.THINKING,
                "Language model parse unavailable, falling back to keyword extraction.",
            )
            plan = extract_plan_from_keywords(prompt)
            source = "keyword extraction"

        rationale = f" {plan.rationale}" if plan.rationale else ""
        self.notify(
            ProgressStatus.COMPLETE,
            f"Parsed intent: {plan.edit_type} of {plan.gene} {plan.region} in {plan.cell_line} "
            f"with {plan.nuclease}.{rationale} Confidence: {plan.confidence * 100:.0f}% ({source}).",
        )
        return plan

    async def _parse_with_llm(self, prompt: str) -> PlanObject:
        parsed = await self._complete_json(
            system_prompt=PLANNER_SYSTEM_PROMPT,
            user_prompt=prompt,
            temperature=0.1,
            max_tokens=300,
        )
        return validate_structured_output(PlanObject, normalize_plan_payload(parsed))


# =============================================================================
# GUIDE DESIGNER
# =============================================================================


class GuideDesigner(BaseAgent):
    name = "GuideDesigner"
    role = "CRISPR Guide RNA Design"

    async def design_guides(self, plan: Optional[PlanObject]) -> List[Guide]:
        if plan is None:
            raise MissingDataError("No plan available for guide design.")
        self.notify(
            ProgressStatus.THINKING,
            f"Loading {plan.gene} reference sequence and scanning for {plan.nuclease} PAM sites...",
        )
        await self._simulate_work()

        guides = self._mock_design_guides(plan)

        efficiencies = [g.efficiency for g in guides]
        self.notify(
            ProgressStatus.COMPLETE,
            f"Designed {len(guides)} guide RNAs targeting {plan.gene} {plan.region}. "
            f"Efficiency scores range from {min(efficiencies):.2f}-{max(efficiencies):.2f}. "
            f"Sequences optimized for {plan.nuclease}. Passing to risk analysis.",
        )
        return guides

    def _mock_design_guides(self, plan: PlanObject) -> List[Guide]:
        # TODO: replace the fixed library with PAM scanning over the exon sequence (NGG for SpCas9, TTTV for Cas12a).
        gene_entry = get_reference_gene(plan.gene)
        if gene_entry is None:
            raise ValueError(
                f"Gene {plan.gene} not found in reference. Known genes: {', '.join(list_reference_genes())}."
            )
        exon_name, exon = resolve_target_exon(gene_entry, plan.region)
        logger.debug("Designing guides for %s %s (start=%d).", plan.gene, exon_name, exon["start"])

        guides: List[Guide] = []
        for template in get_guide_templates(plan.gene):
            offset_start = int(template.pop("offset_start"))
            offset_end = int(template.pop("offset_end"))
            guides.append(
                Guide(
                    start=exon["start"] + offset_start,
                    end=exon["start"] + offset_end,
                    **template,
                )
            )
        return guides


# =============================================================================
# RISK ANALYST
# =============================================================================


def classify_risk(gc_content: float, efficiency: float) -> Tuple[OfftargetRisk, float, int]:
    """
    Returns (risk level, risk score, predicted off-target count).
    """
    if gc_content > 60:
        return OfftargetRisk.HIGH, 0.85, 3
    if gc_content > 55 or efficiency > 0.85:
        return OfftargetRisk.MEDIUM, 0.45, 1
    return OfftargetRisk.LOW, 0.15, 0


def risk_factors_for(guide: Guide, risk: OfftargetRisk) -> List[str]:
    factors: List[str] = []
    if guide.gc_content > 60:
        factors.append("High GC content")
    if guide.efficiency > 0.85:
        factors.append("High cutting efficiency")
    if risk == OfftargetRisk.HIGH:
        factors.append("Multiple predicted off-targets")
    if "GGGG" in guide.sequence.upper():
        factors.append("Poly-G tract")
    return factors


class RiskAnalyst(BaseAgent):
    name = "RiskAnalyst"
    role = "Off-target Prediction and Safety Assessment"

    async def analyze_risk(self, guides: Optional[List[Guide]]) -> List[Guide]:
        if not guides:
            raise MissingDataError("No guides available for risk analysis.")
        self.notify(
            ProgressStatus.THINKING,
            "Scanning genome for potential off-target sites using mismatch tolerance rules...",
        )
        await self._simulate_work()

        analyzed = [self._assess(guide) for guide in guides]

        flagged = [g.id for g in analyzed if g.offtarget_risk != OfftargetRisk.LOW]
        high_risk_count = sum(1 for g in analyzed if g.offtarget_risk == OfftargetRisk.HIGH)
        if high_risk_count:
            verdict = (
                f"Guides {', '.join(flagged)} flagged for elevated off-target risk. "
                "Recommend using guides with low risk scores."
            )
        else:
            verdict = "All guides show acceptable off-target profiles."
        self.notify(
            ProgressStatus.COMPLETE,
            f"Risk analysis complete. {verdict} Passing results to final review.",
        )
        return analyzed

    @staticmethod
    def _assess(guide: Guide) -> Guide:
        risk, score, offtargets = classify_risk(guide.gc_content, guide.efficiency)
        return guide.model_copy(
            update={
                "offtarget_risk": risk,
                "risk_score": score,
                "predicted_offtargets": offtargets,
                "risk_factors": risk_factors_for(guide, risk),
            }
        )


# =============================================================================
# SUMMARIZER
# =============================================================================


PLACEHOLDER_GUIDE = Guide(
    id="none",
    sequence="No guides generated",
    start=0,
    end=0,
    efficiency=0.0,
    offtarget_risk=OfftargetRisk.HIGH,
    gc_content=0,
)


def select_recommended_guides(guides: List[Guide]) -> List[Guide]:
    for tier in (OfftargetRisk.LOW, OfftargetRisk.MEDIUM, OfftargetRisk.HIGH):
        members = [g for g in guides if g.offtarget_risk == tier]
        if members:
            return members
    return []


def pick_best_guide(candidates: List[Guide]) -> Guide:
    if not candidates:
        return PLACEHOLDER_GUIDE.model_copy()
    return max(candidates, key=lambda g: g.efficiency)


class SummarizerAgent(BaseAgent):
    name = "SummarizerAgent"
    role = "Protocol Generation and Experimental Guidance"

    async def finalize_summary(
        self, plan: Optional[PlanObject], guides: Optional[List[Guide]]
    ) -> FinalSummary:
        if plan is None:
            raise MissingDataError("No plan available for protocol generation.")
        self.notify(ProgressStatus.THINKING, "Compiling final report and generating experimental protocol...")
        await self._simulate_work()

        summary = self.build_summary(plan, list(guides or []))

        self.notify(
            ProgressStatus.COMPLETE,
            f"Final report compiled. {len(summary.recommended_guides)} guides recommended for "
            "experimental validation. Protocol includes cloning, transfection conditions and "
            "analysis methods. Ready for download.",
        )
        return summary

    def build_summary(self, plan: PlanObject, guides: List[Guide]) -> FinalSummary:
        recommended = select_recommended_guides(guides)
        return FinalSummary(
            plan=plan,
            total_guides=len(guides),
            recommended_guides=recommended,
            medium_risk_guides=[g for g in guides if g.offtarget_risk == OfftargetRisk.MEDIUM],
            high_risk_guides=[g for g in guides if g.offtarget_risk == OfftargetRisk.HIGH],
            best_guide=pick_best_guide(recommended),
            protocol=self._protocol_text(plan, recommended),
            risk_summary=self._risk_summary(guides),
            next_steps=self._next_steps(plan),
        )

    @staticmethod
    def _protocol_text(plan: PlanObject, recommended: List[Guide]) -> str:
        return "\n".join(
            [
                f"CRISPR {plan.edit_type} Protocol for {plan.gene} in {plan.cell_line}",
                "",
                "1. Guide RNA Preparation:",
                f"   - Synthesize top {min(3, len(recommended))} recommended guides",
                f"   - Clone into px458 vector with {plan.nuclease}",
                "   - Sequence verify all constructs",
                "",
                "2. Cell Culture & Transfection:",
                f"   - Culture {plan.cell_line} cells to 70% confluence",
                "   - Transfect using Lipofectamine 3000",
                "   - Select GFP+ cells by FACS after 48h",
                "",
                "3. Analysis:",
                "   - Extract genomic DNA after 72h",
                "   - PCR amplify target region",
                "   - Analyze by Sanger sequencing or NGS",
                "   - Quantify editing efficiency using TIDE/ICE",
                "",
                "4. Validation:",
                "   - Confirm on-target editing by sequencing",
                "   - Screen for off-target effects at predicted sites",
                "   - Validate phenotype if applicable",
            ]
        )

    @staticmethod
    def _risk_summary(guides: List[Guide]) -> str:
        low = sum(1 for g in guides if g.offtarget_risk == OfftargetRisk.LOW)
        medium = sum(1 for g in guides if g.offtarget_risk == OfftargetRisk.MEDIUM)
        high = sum(1 for g in guides if g.offtarget_risk == OfftargetRisk.HIGH)
        tail = (
            "Recommend experimental validation of off-target predictions."
            if high
            else "All guides show acceptable safety profiles."
        )
        return (
            f"Risk Assessment: {low} low-risk, {medium} medium-risk, {high} high-risk guides identified. {tail}"
        )

    @staticmethod
    def _next_steps(plan: PlanObject) -> List[str]:
        return [
            "Order synthetic guide RNAs or cloning primers",
            f"Prepare {plan.cell_line} cell culture",
            "Set up transfection optimization experiments",
            "Design PCR primers for target amplification",
            "Plan off-target validation experiments",
        ]
