import logging
from unittest.mock import MagicMock

from audit import AuditLog, NullSink, SheetSink
from backend import APIWrapper, GooglePermissionError
from conftest import ListSink


class BrokenSink:
    def __init__(self):
        self.calls = 0

    def append(self, rows):
        self.calls += 1
        raise GooglePermissionError("sheet is read-only")


def test_rows_are_timestamped_and_stringified():
    sink = ListSink()
    audit = AuditLog(sink, mirror=False)
    audit.log("FILE", "migrated", None, 3)
    audit.flush()
    assert len(sink.rows) == 1
    timestamp, *values = sink.rows[0]
    assert len(timestamp) == len("2026-01-01 00:00:00")
    assert values == ["FILE", "migrated", "", "3"]
    assert audit.rows_written == 1


def test_rows_are_batched():
    sink = ListSink()
    audit = AuditLog(sink, mirror=False, batch_size=3)
    audit.log("a")
    audit.log("b")
    assert sink.rows == []
    audit.log("c")
    assert [r[1] for r in sink.rows] == ["a", "b", "c"]
    assert audit.pending == []


def test_detail_rows_need_verbose():
    sink = ListSink()
    quiet = AuditLog(sink, mirror=False)
    quiet.detail("DISCOVER", "x")
    quiet.flush()
    assert sink.rows == []
    loud = AuditLog(sink, mirror=False, verbose=True)
    loud.detail("DISCOVER", "x")
    loud.flush()
    assert sink.rows[0][1:] == ["DISCOVER", "x"]


def test_sink_failure_is_swallowed():
    sink = BrokenSink()
    audit = AuditLog(sink, mirror=False, batch_size=2)
    audit.log("a")
    audit.log("b")
    audit.log("c")
    audit.flush()
    assert sink.calls == 2
    assert audit.rows_dropped == 3
    assert audit.rows_written == 0


def test_transport_failure_is_swallowed():
    sink = MagicMock()
    sink.append.side_effect = TimeoutError("timed out")
    audit = AuditLog(sink, mirror=False, batch_size=1)
    audit.log("a")
    audit.log("b")
    audit.flush()
    assert sink.append.call_count == 2
    assert audit.rows_dropped == 2
    assert audit.pending == []


def test_mirror_goes_to_diagnostic_stream(caplog):
    audit = AuditLog(NullSink(), mirror=True)
    with caplog.at_level(logging.INFO, logger="ownership_migrator.audit"):
        audit.log("FOLDER", "migrated", "Team")
    assert "FOLDER\tmigrated\tTeam" in caplog.text


def test_sheet_sink_appends_raw_rows():
    service = MagicMock()
    sink = SheetSink(service, "sheet123", "Run Log", APIWrapper())
    sink.append([["ts", "a"]])
    append = service.spreadsheets.return_value.values.return_value.append
    kwargs = append.call_args.kwargs
    assert kwargs["spreadsheetId"] == "sheet123"
    assert kwargs["range"] == "'Run Log'!A:A"
    assert kwargs["valueInputOption"] == "RAW"
    assert kwargs["insertDataOption"] == "INSERT_ROWS"
    assert kwargs["body"] == {"values": [["ts", "a"]]}
