from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from kestrel.cli.app import app
from kestrel.config import get_settings
from kestrel.core.orchestrator import RunOrchestrator

runner = CliRunner()

AZURE_TEXT = "C# .NET developer. Azure Functions, Service Bus and Key Vault. Kubernetes a plus."


@pytest.fixture()
def feeds(tmp_path: Path, monkeypatch) -> dict[str, Path]:
    job_feed = tmp_path / "jobs.json"
    job_feed.write_text(
        json.dumps(
            {
                "pages": [
                    [
                        {
                            "title": "Senior .NET Engineer",
                            "company": "Contoso",
                            "url": "https://jobs.example.com/view/100",
                            "quickApply": True,
                            "description": AZURE_TEXT,
                        },
                        {
                            "title": "Pastry Chef",
                            "company": "Bakery",
                            "url": "https://jobs.example.com/view/101",
                            "description": "Bake bread and pastries every morning.",
                        },
                    ],
                    [
                        {
                            "title": "Azure Backend Developer",
                            "company": "Fabrikam",
                            "url": "https://jobs.example.com/view/102",
                        },
                        {"title": "", "company": "Broken", "url": "https://jobs.example.com/view/103"},
                    ],
                ]
            }
        ),
        encoding="utf-8",
    )
    lead_feed = tmp_path / "leads.json"
    lead_feed.write_text(
        json.dumps(
            [
                {"name": "Dana", "title": "Technical Recruiter", "company": "Contoso", "profileUrl": "https://www.linkedin.com/in/dana/"},
                {"name": "Lee", "title": "Staff Engineer", "company": "Contoso", "profileUrl": "https://www.linkedin.com/in/lee/"},
                {"name": "Sam", "title": "Recruiter", "company": "Fabrikam", "profileUrl": "https://www.linkedin.com/in/sam/"},
            ]
        ),
        encoding="utf-8",
    )

    settings = get_settings()
    monkeypatch.setattr(settings, "job_feed_path", job_feed)
    monkeypatch.setattr(settings, "lead_feed_path", lead_feed)
    monkeypatch.setattr(settings, "fetch_missing_descriptions", True)
    monkeypatch.setattr("kestrel.core.feeds.fetch_job_text", lambda url, timeout_sec=30: AZURE_TEXT)
    monkeypatch.setattr(RunOrchestrator, "install_signal_handlers", lambda self: None)
    return {"jobs": job_feed, "leads": lead_feed}


def _invoke(*args: str) -> dict | list:
    result = runner.invoke(app, list(args))
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def test_search_then_dry_run_apply_then_reject(feeds) -> None:
    status = _invoke("search", "--profile", "core", "--max-pages", "2", "--min-score", "1")

    assert status["status"] == "idle"
    result = status["last_result"]
    assert result["status"] == "completed"
    assert result["pages"] == 2
    assert result["queued"] == 2
    assert result["errors"] == 1

    jobs = _invoke("jobs", "list")
    assert sorted(job["company"] for job in jobs) == ["Contoso", "Fabrikam"]
    assert all(job["status"] == "queued" for job in jobs)

    runs = _invoke("runs", "list")
    assert [(run["operation"], run["status"], run["last_cursor"]) for run in runs] == [("search", "completed", "2")]

    applied = _invoke("apply", "--easy", "--external")
    assert applied["last_result"]["skipped"] == 2
    assert _invoke("jobs", "stats")["statuses"]["queued"] == 2

    submit = runner.invoke(app, ["apply", "--easy", "--submit"])
    assert submit.exit_code == 1

    contoso = next(job for job in jobs if job["company"] == "Contoso")
    rejected = _invoke("jobs", "status", contoso["id"], "rejected", "--reason", "requires 5+ years AWS")
    assert rejected["status"] == "rejected"
    assert rejected["learning"]["processed"] == 1

    learning = _invoke("learning", "show")
    assert ("technology", "AWS", 1) in {
        (pattern["pattern_type"], pattern["pattern_value"], pattern["count"]) for pattern in learning["patterns"]
    }


def test_second_search_does_not_requeue_known_jobs(feeds) -> None:
    _invoke("search", "--profile", "core", "--max-pages", "2", "--min-score", "1")

    status = _invoke("search", "--profile", "core", "--max-pages", "2", "--min-score", "1")

    assert status["last_result"]["queued"] == 0
    assert len(_invoke("jobs", "list")) == 2


def test_lead_scrape_from_feed(feeds) -> None:
    status = _invoke("leads", "scrape", "--title", "recruiter", "--profile", "recruiters")

    assert status["last_result"]["profiles_scraped"] == 3
    assert status["last_result"]["profiles_added"] == 2
    leads = _invoke("leads", "list")
    assert sorted(lead["name"] for lead in leads) == ["Dana", "Sam"]
    assert {lead["profile"] for lead in leads} == {"recruiters"}

    again = _invoke("leads", "scrape", "--title", "recruiter")
    assert again["last_result"]["profiles_added"] == 0


def test_resume_without_incomplete_run_fails(feeds) -> None:
    result = runner.invoke(app, ["search", "--resume"])

    assert result.exit_code == 1


def test_preferences_drive_min_score(feeds) -> None:
    _invoke("prefs", "set", "min_fit_score", "100")

    status = _invoke("search", "--profile", "core", "--max-pages", "2")

    assert status["last_result"]["queued"] == 0
    assert _invoke("prefs", "get") == {"min_fit_score": "100"}


def test_failed_lead_scrape_exits_nonzero_and_leaves_orchestrator_idle(feeds) -> None:
    feeds["leads"].unlink()

    result = runner.invoke(app, ["leads", "scrape"])

    assert result.exit_code == 1
    status = json.loads(result.stdout)
    assert status["status"] == "idle"
    assert "does not exist" in status["error"]
    runs = _invoke("runs", "list")
    assert [(run["operation"], run["status"]) for run in runs] == [("lead_scrape", "stopped")]
