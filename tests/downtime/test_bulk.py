import asyncio

from modules.downtime import bulk
from modules.downtime.outcomes import Failed, Sent, Skipped
from shared.cache.progress import ProgressCache
from shared.sheets.downtime import DowntimeTab
from shared.testing.fakes import FakeWorksheet


class FakeDispatcher:
    def __init__(self, outcomes=None, on_call=None):
        self.outcomes = list(outcomes or [])
        self.on_call = on_call
        self.calls = []

    async def send_discord(self, tab, row, *, bulk=False, actor="bot", **_kwargs):
        self.calls.append((row, bulk, actor))
        if self.on_call is not None:
            self.on_call(row)
        item = self.outcomes.pop(0) if self.outcomes else Sent("x")
        if isinstance(item, BaseException):
            raise item
        return item


def _add_pair(rows, name, sent=False):
    rows.append([45702.0, "input", "", "", name, "Patrol again", "", "", "", ""])
    rows.append(["", "sent" if sent else "processed/pending", sent, False, name, "Quiet night.", "", "", "", ""])


def test_list_downtimes_summarises_pairs(period_rows):
    rows = bulk.list_downtimes(period_rows)

    assert [(r.row, r.character, r.is_sent, r.status) for r in rows] == [
        (3, "Alice", False, "pending"),
        (5, "Bob", True, "sent"),
    ]
    assert (rows[0].response_count, rows[0].st_word_count, rows[0].player_word_count) == (2, 6, 7)
    assert (rows[1].response_count, rows[1].st_word_count, rows[1].player_word_count) == (2, 7, 3)


def test_list_downtimes_skips_broken_pairs(period_rows):
    period_rows[2][1] = "input"
    assert [r.character for r in bulk.list_downtimes(period_rows)] == ["Bob"]


def test_bulk_send_only_sends_unsent_rows(worksheet):
    cache = ProgressCache()
    dispatcher = FakeDispatcher([Sent("Alice")])

    summary = asyncio.run(
        bulk.run_bulk_send(DowntimeTab(worksheet), dispatcher, bulk.JobControl(), cache, actor="st")
    )

    assert summary == bulk.BulkSummary(success_count=1, failure_count=0, stopped=False)
    assert dispatcher.calls == [(3, True, "st")]
    rows, stored = bulk.read_progress(cache)
    assert [r["status"] for r in rows] == ["sent", "sent"]
    assert stored == {"success_count": 1, "failure_count": 0, "stopped": False}


def test_skipped_failed_and_raising_rows_count_as_failures(period_rows):
    _add_pair(period_rows, "Carol")
    _add_pair(period_rows, "Dana")

    cache = ProgressCache()
    dispatcher = FakeDispatcher([Skipped("nothing to send"), Failed("no webhook"), RuntimeError("boom")])

    summary = asyncio.run(
        bulk.run_bulk_send(DowntimeTab(FakeWorksheet(period_rows)), dispatcher, bulk.JobControl(), cache)
    )

    assert summary.success_count == 0
    assert summary.failure_count == 3
    rows, _ = bulk.read_progress(cache)
    by_name = {r["character"]: (r["status"], r["note"]) for r in rows}
    assert by_name["Alice"] == ("skipped", "nothing to send")
    assert by_name["Carol"] == ("error", "no webhook")
    assert by_name["Dana"] == ("error", "boom")
    assert by_name["Bob"] == ("sent", "")


def test_stop_ends_job_after_current_row(period_rows):
    _add_pair(period_rows, "Carol")

    control = bulk.JobControl()
    dispatcher = FakeDispatcher(on_call=lambda _row: control.stop())

    summary = asyncio.run(
        bulk.run_bulk_send(DowntimeTab(FakeWorksheet(period_rows)), dispatcher, control, ProgressCache())
    )

    assert [call[0] for call in dispatcher.calls] == [3]
    assert summary == bulk.BulkSummary(success_count=1, failure_count=0, stopped=True)


def test_pause_holds_job_until_resumed(worksheet):
    async def runner():
        control = bulk.JobControl()
        control.pause()
        dispatcher = FakeDispatcher()
        task = asyncio.create_task(
            bulk.run_bulk_send(DowntimeTab(worksheet), dispatcher, control, ProgressCache())
        )
        for _ in range(20):
            await asyncio.sleep(0.01)
        assert control.paused
        assert dispatcher.calls == []
        control.resume()
        summary = await asyncio.wait_for(task, timeout=5)
        return dispatcher, summary

    dispatcher, summary = asyncio.run(runner())

    assert [call[0] for call in dispatcher.calls] == [3]
    assert summary.success_count == 1


def test_stop_wakes_a_paused_job(worksheet):
    async def runner():
        control = bulk.JobControl()
        control.pause()
        dispatcher = FakeDispatcher()
        task = asyncio.create_task(
            bulk.run_bulk_send(DowntimeTab(worksheet), dispatcher, control, ProgressCache())
        )
        await asyncio.sleep(0.05)
        control.stop()
        return dispatcher, await asyncio.wait_for(task, timeout=5)

    dispatcher, summary = asyncio.run(runner())

    assert dispatcher.calls == []
    assert summary.stopped is True
