import logging
from datetime import datetime

from backend import APIWrapper, MigratorError

logger = logging.getLogger(__name__)
mirror_logger = logging.getLogger("ownership_migrator.audit")


class NullSink:
    def append(self, rows: list[list]):
        pass


class SheetSink:
    """Appends rows to one tab of a Google Sheet."""

    def __init__(self, sheets_service, spreadsheet_id: str, tab: str, wrapper: APIWrapper):
        self.sheets_service = sheets_service
        self.spreadsheet_id = spreadsheet_id
        self.tab = tab
        self.wrapper = wrapper

    def append(self, rows: list[list]):
        self.wrapper(
            self.sheets_service.spreadsheets().values().append,
            spreadsheetId=self.spreadsheet_id,
            range=f"'{self.tab}'!A:A",
            valueInputOption="RAW",
            insertDataOption="INSERT_ROWS",
            body={"values": rows},
        )


class AuditLog:
    """
    Append-only, timestamped record of every discovery, decision and mutation.

    Rows are buffered and written to the sink in batches. A sink failure is
    reported on the diagnostic stream and the batch is dropped; it never
    propagates into the migration.
    """

    def __init__(self, sink=None, mirror: bool = True, verbose: bool = False, batch_size: int = 25):
        self.sink = sink if sink is not None else NullSink()
        self.mirror = mirror
        self.verbose = verbose
        self.batch_size = batch_size
        self.pending: list[list] = []
        self.rows_written = 0
        self.rows_dropped = 0

    def log(self, *values):
        row = [datetime.now().isoformat(sep=" ", timespec="seconds")]
        row.extend("" if v is None else str(v) for v in values)
        if self.mirror:
            mirror_logger.info("\t".join(row[1:]))
        self.pending.append(row)
        if len(self.pending) >= self.batch_size:
            self.flush()

    def detail(self, *values):
        if self.verbose:
            self.log(*values)

    def flush(self):
        if not self.pending:
            return
        rows, self.pending = self.pending, []
        try:
            self.sink.append(rows)
            self.rows_written += len(rows)
        except MigratorError as e:
            self.rows_dropped += len(rows)
            logger.warning(f"Audit sink unavailable, dropped {len(rows)} rows: {e}")
        except Exception as e:
            # transport failures that never reached the API layer
            self.rows_dropped += len(rows)
            logger.warning(f"Audit sink failed with {type(e).__name__}, dropped {len(rows)} rows: {e}")
