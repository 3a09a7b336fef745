"""
Tests for the SQLite run journal.
"""
from m365_admin_toolkit.journal.store import RunJournal


def test_run_lifecycle(tmp_path):
    journal = RunJournal(tmp_path / ".journal" / "runs.db")
    journal.start_run("run1", "convert-shared", "DRY-RUN", metadata={"domain": ["contoso.com"]})
    journal.record_outcomes("run1", [
        ("ann@contoso.com", "Planned", ""),
        ("ghost@contoso.com", "Error", "Mailbox not found"),
    ])
    journal.record_outcome("run1", "bob@contoso.com", "Skipped", "Already shared")
    journal.complete_run("run1", "completed")

    history = journal.get_run_history()
    assert history[0]["run_id"] == "run1"
    assert history[0]["status"] == "completed"
    assert history[0]["metadata"] == {"domain": ["contoso.com"]}
    outcomes = journal.get_outcomes("run1")
    assert [(o["target"], o["status"]) for o in outcomes] == [
        ("ann@contoso.com", "Planned"),
        ("ghost@contoso.com", "Error"),
        ("bob@contoso.com", "Skipped"),
    ]


def test_history_newest_first_and_limited(tmp_path):
    journal = RunJournal(tmp_path / "runs.db")
    for i in range(3):
        journal.start_run(f"run{i}", "ad-users", "REPORT")
    history = journal.get_run_history(limit=2)
    assert len(history) == 2
    assert history[0]["run_id"] == "run2"
    assert journal.get_outcomes("missing") == []
