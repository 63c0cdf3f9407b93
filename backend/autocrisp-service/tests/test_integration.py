import asyncio

from fastapi.testclient import TestClient

import main
from main import app
from tools import GUIDE_CSV_HEADER


client = TestClient(app)

PROMPT = "Knock out TP53 exon 4 in HEK293 cells using SpCas9"


def test_design_end_to_end_flow():
    design_resp = client.post("/design", json={"prompt": PROMPT})
    assert design_resp.status_code == 200
    body = design_resp.json()
    assert body["success"] is True
    assert body["outcome"] == "essentials_complete"
    assert body["plan"]["gene"] == "TP53"
    assert body["plan"]["nuclease"] == "SpCas9"
    assert len(body["guides"]) == 5
    assert body["summary"]["best_guide"]["id"] == "tp53_g1"
    assert {g["offtarget_risk"] for g in body["summary"]["recommended_guides"]} == {"low"}
    assert body["messages"][0]["agent"] == "Orchestrator"
    assert {t["task_id"] for t in body["traces"]} == {
        "parse_prompt",
        "design_guides",
        "analyze_risk",
        "generate_summary",
    }

    run_id = body["run_id"]
    stored_resp = client.get(f"/design/{run_id}")
    assert stored_resp.status_code == 200
    assert stored_resp.json()["summary"] == body["summary"]

    csv_resp = client.get(f"/design/{run_id}/guides.csv")
    assert csv_resp.status_code == 200
    assert csv_resp.headers["content-type"].startswith("text/csv")
    assert 'filename="autocrisp_guides_TP53.csv"' in csv_resp.headers["content-disposition"]
    lines = csv_resp.text.strip().split("\n")
    assert lines[0] == ",".join(GUIDE_CSV_HEADER)
    assert len(lines) == 6
    assert lines[1].startswith("tp53_g1,")

    protocol_resp = client.get(f"/design/{run_id}/protocol.txt")
    assert protocol_resp.status_code == 200
    assert 'filename="autocrisp_protocol_TP53.txt"' in protocol_resp.headers["content-disposition"]
    assert protocol_resp.text.startswith("AutoCrisp Protocol Report")
    assert "CRISPR Knockout Protocol for TP53 in HEK293" in protocol_resp.text
    assert "- tp53_g1: CCGTCCCAAGCAATGGATGATT (Efficiency: 82.0%)" in protocol_resp.text


def test_health_reports_runtime_configuration():
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["service"] == "autocrisp-service"
    assert body["completion_mode"] == "off"
    assert body["max_iterations"] == 20
    assert body["max_concurrent_tasks"] == 3


def test_root_lists_service_links():
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json()["health"] == "/health"


def test_example_prompts_endpoint():
    resp = client.get("/design/examples")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert PROMPT in body["prompts"]


def test_unknown_run_returns_404():
    for path in ("/design/missing-run", "/design/missing-run/guides.csv", "/design/missing-run/protocol.txt"):
        resp = client.get(path)
        assert resp.status_code == 404
        assert "missing-run" in resp.json()["detail"]


def test_blank_prompt_is_rejected():
    assert client.post("/design", json={"prompt": "   "}).status_code == 400
    assert client.post("/design", json={"prompt": ""}).status_code == 422
    assert client.post("/design", json={}).status_code == 422


def test_pipeline_failure_maps_to_500(monkeypatch):
    async def _fail(_prompt):
        raise RuntimeError("task planner exploded")

    monkeypatch.setattr(main.orchestrator_agent, "process_prompt", _fail)

    resp = client.post("/design", json={"prompt": PROMPT})
    assert resp.status_code == 500
    assert resp.json()["detail"] == "Failed to design guides. task planner exploded"

    monkeypatch.setenv("AUTOCRISP_EXPOSE_ERRORS", "false")
    resp = client.post("/design", json={"prompt": PROMPT})
    assert resp.status_code == 500
    assert resp.json()["detail"] == "Failed to design guides."


def test_pipeline_timeout_maps_to_504(monkeypatch):
    async def _slow(_prompt):
        await asyncio.sleep(5)

    monkeypatch.setattr(main.orchestrator_agent, "process_prompt", _slow)
    monkeypatch.setattr(main, "DESIGN_TIMEOUT_SECONDS", 0.05)

    resp = client.post("/design", json={"prompt": PROMPT})
    assert resp.status_code == 504
    assert "Timed out" in resp.json()["detail"]


def test_list_designs_includes_finished_runs():
    run_id = client.post("/design", json={"prompt": PROMPT}).json()["run_id"]
    resp = client.get("/design")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert run_id in body["run_ids"]
