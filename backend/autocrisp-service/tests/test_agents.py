import asyncio

import pytest

from agents import (
    GuideDesigner,
    MissingDataError,
    PlannerAgent,
    RiskAnalyst,
    SummarizerAgent,
    classify_risk,
    extract_plan_from_keywords,
    normalize_plan_payload,
    risk_factors_for,
    select_recommended_guides,
)
from completion_client import CompletionError
from models import Guide, OfftargetRisk, PlanObject, ProgressStatus


class _Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, agent, status, message):
        self.events.append((agent, status, message))


def _plan(**overrides):
    values = {
        "gene": "TP53",
        "region": "Exon 4",
        "edit_type": "Knockout",
        "cell_line": "HEK293",
        "nuclease": "SpCas9",
    }
    values.update(overrides)
    return PlanObject(**values)


def _guide(guide_id, risk, efficiency, gc=50.0, sequence="ACGTACGTACGTACGTACGT"):
    return Guide(
        id=guide_id,
        sequence=sequence,
        start=0,
        end=20,
        efficiency=efficiency,
        offtarget_risk=risk,
        gc_content=gc,
    )


# =============================================================================
# PLANNER
# =============================================================================


def test_keyword_extraction_reads_reference_prompt():
    plan = extract_plan_from_keywords("Knock out TP53 exon 4 in HEK293 cells using SpCas9")
    assert plan.gene == "TP53"
    assert plan.region == "Exon 4"
    assert plan.edit_type == "Knockout"
    assert plan.cell_line == "HEK293"
    assert plan.nuclease == "SpCas9"
    assert plan.confidence == pytest.approx(0.85)


def test_keyword_extraction_defaults_and_alternatives():
    default = extract_plan_from_keywords("")
    assert (default.gene, default.region, default.cell_line, default.nuclease) == (
        "TP53",
        "Exon 4",
        "HEK293",
        "SpCas9",
    )

    cftr = extract_plan_from_keywords("Correct CFTR F508del with a base editor in K562")
    assert cftr.gene == "CFTR"
    assert cftr.region == "F508del"
    assert cftr.edit_type == "Base Editing"
    assert cftr.nuclease == "BE4max"
    assert cftr.cell_line == "K562"

    brca = extract_plan_from_keywords("CRISPRi of the BRCA1 promoter in HeLa using Cas12a")
    assert brca.gene == "BRCA1"
    assert brca.region == "Promoter"
    assert brca.edit_type == "CRISPRi"
    assert brca.nuclease == "Cas12a"
    assert brca.cell_line == "HeLa"


def test_normalize_plan_payload_maps_camel_case_and_requires_fields():
    normalized = normalize_plan_payload(
        {
            "gene": "brca1",
            "region": "Exon 11",
            "editType": "Knockout",
            "cellLine": "HeLa",
            "nuclease": "SpCas9",
            "scientificRationale": "Exon 11 carries most truncating variants.",
        }
    )
    assert normalized["gene"] == "BRCA1"
    assert normalized["edit_type"] == "Knockout"
    assert normalized["cell_line"] == "HeLa"
    assert normalized["rationale"].startswith("Exon 11")
    assert normalized["confidence"] == 0.85

    with pytest.raises(ValueError):
        normalize_plan_payload({"gene": "TP53", "region": "Exon 4"})
    with pytest.raises(ValueError):
        normalize_plan_payload(["not", "a", "dict"])


def test_planner_uses_completion_when_available(scripted_client):
    client = scripted_client(
        [
            '```json\n{"gene": "brca1", "region": "Exon 11", "editType": "Knockout", '
            '"cellLine": "HeLa", "nuclease": "SpCas9", "confidence": 1.4}\n```'
        ]
    )
    recorder = _Recorder()
    plan = asyncio.run(PlannerAgent(recorder, client).parse_prompt("Knock out BRCA1 in HeLa"))

    assert plan.gene == "BRCA1"
    assert plan.region == "Exon 11"
    assert plan.confidence == 1.0
    request = client.requests[0]
    assert request.temperature == pytest.approx(0.1)
    assert request.max_tokens == 300
    assert request.messages[1].content == "Knock out BRCA1 in HeLa"
    assert [e[1] for e in recorder.events] == [ProgressStatus.THINKING, ProgressStatus.COMPLETE]
    assert all(e[0] == "PlannerAgent" for e in recorder.events)


@pytest.mark.parametrize(
    "response",
    [
        "I think you want TP53.",
        '{"gene": "TP53"}',
        CompletionError("service down"),
    ],
)
def test_planner_falls_back_to_keywords(scripted_client, response):
    recorder = _Recorder()
    agent = PlannerAgent(recorder, scripted_client([response]))
    plan = asyncio.run(agent.parse_prompt("Knock out TP53 exon 4 in HEK293 cells using SpCas9"))

    assert plan == extract_plan_from_keywords("Knock out TP53 exon 4 in HEK293 cells using SpCas9")
    assert recorder.events[-1][1] == ProgressStatus.COMPLETE
    assert "keyword extraction" in recorder.events[-1][2]


def test_planner_without_client_uses_keywords():
    plan = asyncio.run(PlannerAgent().parse_prompt("Target HEXA exon 11"))
    assert plan.gene == "HEXA"
    assert plan.region == "Exon 11"


# =============================================================================
# GUIDE DESIGNER
# =============================================================================


def test_designer_positions_tp53_guides_on_exon():
    recorder = _Recorder()
    guides = asyncio.run(GuideDesigner(recorder).design_guides(_plan()))

    assert len(guides) == 5
    assert guides[0].id == "tp53_g1"
    assert guides[0].start == 7675994 + 13
    assert guides[0].end == 7675994 + 35
    assert recorder.events[0][1] == ProgressStatus.THINKING
    assert "SpCas9 PAM sites" in recorder.events[0][2]
    assert recorder.events[-1][1] == ProgressStatus.COMPLETE
    assert "Designed 5 guide RNAs" in recorder.events[-1][2]


def test_designer_uses_generic_library_for_other_genes():
    guides = asyncio.run(GuideDesigner().design_guides(_plan(gene="HEXA", region="Exon 7")))
    assert [g.id for g in guides] == ["g1", "g2", "g3", "g4", "g5"]
    assert guides[0].start == 72350461 + 20


def test_designer_rejects_unknown_gene():
    with pytest.raises(ValueError, match="not found in reference"):
        asyncio.run(GuideDesigner().design_guides(_plan(gene="ZZZ9")))


def test_designer_requires_plan():
    with pytest.raises(MissingDataError):
        asyncio.run(GuideDesigner().design_guides(None))


# =============================================================================
# RISK ANALYST
# =============================================================================


@pytest.mark.parametrize(
    "gc, efficiency, expected",
    [
        (55, 0.50, OfftargetRisk.LOW),
        (56, 0.50, OfftargetRisk.MEDIUM),
        (60, 0.50, OfftargetRisk.MEDIUM),
        (61, 0.50, OfftargetRisk.HIGH),
        (50, 0.85, OfftargetRisk.LOW),
        (50, 0.86, OfftargetRisk.MEDIUM),
        (61, 0.95, OfftargetRisk.HIGH),
    ],
)
def test_classify_risk_boundaries(gc, efficiency, expected):
    risk, _, _ = classify_risk(gc, efficiency)
    assert risk == expected


def test_classify_risk_scores():
    assert classify_risk(70, 0.5) == (OfftargetRisk.HIGH, 0.85, 3)
    assert classify_risk(58, 0.5) == (OfftargetRisk.MEDIUM, 0.45, 1)
    assert classify_risk(40, 0.5) == (OfftargetRisk.LOW, 0.15, 0)


def test_risk_factors_cover_each_rule():
    guide = _guide("x", OfftargetRisk.LOW, 0.9, gc=65, sequence="ACGGGGTACG")
    assert risk_factors_for(guide, OfftargetRisk.HIGH) == [
        "High GC content",
        "High cutting efficiency",
        "Multiple predicted off-targets",
        "Poly-G tract",
    ]
    assert risk_factors_for(_guide("y", OfftargetRisk.LOW, 0.5), OfftargetRisk.LOW) == []


def test_risk_analyst_classifies_tp53_library():
    guides = asyncio.run(GuideDesigner().design_guides(_plan()))
    recorder = _Recorder()
    analyzed = asyncio.run(RiskAnalyst(recorder).analyze_risk(guides))

    risks = {g.id: g.offtarget_risk for g in analyzed}
    assert risks == {
        "tp53_g1": OfftargetRisk.LOW,
        "tp53_g2": OfftargetRisk.LOW,
        "tp53_g3": OfftargetRisk.LOW,
        "tp53_g4": OfftargetRisk.HIGH,
        "tp53_g5": OfftargetRisk.MEDIUM,
    }
    g4 = next(g for g in analyzed if g.id == "tp53_g4")
    assert g4.risk_score == 0.85
    assert g4.predicted_offtargets == 3
    assert "High GC content" in g4.risk_factors
    # inputs are not mutated
    assert guides[1].offtarget_risk == OfftargetRisk.MEDIUM
    assert guides[1].risk_score is None
    assert "flagged for elevated off-target risk" in recorder.events[-1][2]


def test_risk_analyst_requires_guides():
    with pytest.raises(MissingDataError):
        asyncio.run(RiskAnalyst().analyze_risk([]))


# =============================================================================
# SUMMARIZER
# =============================================================================


def test_recommended_tier_falls_back_low_medium_high():
    low = _guide("low", OfftargetRisk.LOW, 0.6)
    medium = _guide("medium", OfftargetRisk.MEDIUM, 0.7)
    high = _guide("high", OfftargetRisk.HIGH, 0.9)

    assert select_recommended_guides([high, medium, low]) == [low]
    assert select_recommended_guides([high, medium]) == [medium]
    assert select_recommended_guides([high]) == [high]
    assert select_recommended_guides([]) == []


def test_best_guide_is_max_efficiency_of_selected_tier():
    guides = [
        _guide("a", OfftargetRisk.LOW, 0.61),
        _guide("b", OfftargetRisk.LOW, 0.79),
        _guide("c", OfftargetRisk.HIGH, 0.99),
    ]
    summary = asyncio.run(SummarizerAgent().finalize_summary(_plan(), guides))

    assert summary.best_guide.id == "b"
    assert [g.id for g in summary.recommended_guides] == ["a", "b"]
    assert [g.id for g in summary.high_risk_guides] == ["c"]
    assert summary.total_guides == 3


def test_summary_without_guides_uses_placeholder_best_guide():
    summary = asyncio.run(SummarizerAgent().finalize_summary(_plan(), []))
    assert summary.best_guide.id == "none"
    assert summary.recommended_guides == []
    assert summary.total_guides == 0


def test_summary_text_and_next_steps():
    recorder = _Recorder()
    guides = [_guide("a", OfftargetRisk.LOW, 0.8), _guide("b", OfftargetRisk.HIGH, 0.9)]
    summary = asyncio.run(SummarizerAgent(recorder).finalize_summary(_plan(cell_line="HeLa"), guides))

    assert summary.protocol.startswith("CRISPR Knockout Protocol for TP53 in HeLa")
    assert "Culture HeLa cells to 70% confluence" in summary.protocol
    assert summary.risk_summary.startswith("Risk Assessment: 1 low-risk, 0 medium-risk, 1 high-risk")
    assert len(summary.next_steps) == 5
    assert "Prepare HeLa cell culture" in summary.next_steps
    assert [e[1] for e in recorder.events] == [ProgressStatus.THINKING, ProgressStatus.COMPLETE]


def test_summarizer_requires_plan():
    with pytest.raises(MissingDataError):
        asyncio.run(SummarizerAgent().finalize_summary(None, []))


def test_planner_resolves_gene_alias_from_completion(scripted_client):
    client = scripted_client(
        [
            '{"gene": "p53", "region": "Exon 4", "edit_type": "Knockout", '
            '"cell_line": "HEK293", "nuclease": "SpCas9"}'
        ]
    )
    plan = asyncio.run(PlannerAgent(completion_client=client).parse_prompt("Knock out p53"))
    assert plan.gene == "TP53"


def test_normalize_plan_payload_keeps_unknown_gene_upper_cased():
    normalized = normalize_plan_payload(
        {"gene": "myc", "region": "Exon 2", "edit_type": "Knockout", "cell_line": "HeLa", "nuclease": "SpCas9"}
    )
    assert normalized["gene"] == "MYC"


def test_designer_serves_gene_library_for_alias():
    guides = asyncio.run(GuideDesigner().design_guides(_plan(gene="P53")))
    assert [g.id for g in guides] == ["tp53_g1", "tp53_g2", "tp53_g3", "tp53_g4", "tp53_g5"]
    assert guides[0].start == 7675994 + 13
