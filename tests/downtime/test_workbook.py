from modules.downtime import workbook
from shared.sheets.scheduled import SCHEDULED_HEADERS
from shared.testing.fakes import FakeWorksheet


def test_only_missing_tabs_are_created(monkeypatch):
    present = {"Config": FakeWorksheet([["Key", "Value"]], title="Config")}
    created = {}

    def fake_find(sheet_id, name, **_kwargs):
        return present.get(name)

    def fake_ensure(sheet_id, name, headers, **_kwargs):
        created[name] = tuple(headers)
        return FakeWorksheet([list(headers)], title=name)

    monkeypatch.setattr(workbook.core, "find_worksheet", fake_find)
    monkeypatch.setattr(workbook.core, "ensure_worksheet", fake_ensure)

    result = workbook.initialise_workbook("March 2025", sheet_id="sheet")

    assert result.existing == ["Config"]
    assert result.created == ["Log", "Scheduled Messages", "March 2025"]
    assert created["Scheduled Messages"] == SCHEDULED_HEADERS
    assert created["March 2025"] == ("Timestamp", "Status", "Send Discord", "Send Email", "Character Name")
    assert result.summary() == "Created 3 tabs: Log, Scheduled Messages, March 2025. 1 tabs already existed."


def test_summary_when_everything_exists():
    assert workbook.WorkbookSetup(existing=["Log"]).summary() == "1 tabs already existed."
    assert workbook.WorkbookSetup().summary() == "Nothing to do."
