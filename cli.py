import logging
import sys

from audit import AuditLog, SheetSink
from backend import Account, APIWrapper, DriveStore, MigratorError, OwnerFilter
from custom_logging import get_log_path, setup_logging
from migrator import Deadline, RunContext, perform_migration
from settings import Settings

logger = logging.getLogger(__name__)


def build_context(settings: Settings, account: Account, wrapper: APIWrapper) -> RunContext:
    # the budget starts ticking here, before any API work
    deadline = Deadline(settings.max_runtime_seconds)
    me = account.whoami(wrapper)
    sink = None
    if settings.log_sheet_id:
        sink = SheetSink(account.sheets_service, settings.log_sheet_id, settings.log_sheet_tab, wrapper)
    else:
        logger.warning("No log sheet configured, audit log goes to the diagnostic stream only.")
    audit = AuditLog(sink, mirror=settings.mirror_log or sink is None, verbose=settings.verbose)
    return RunContext(
        DriveStore(account.drive_service, me, wrapper),
        audit,
        deadline,
        settings.archive_folder_id,
        owner_filter=OwnerFilter(settings.target_owner),
        retain_access=settings.retain_access,
        deprecation_marker=settings.deprecation_marker,
    )


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if argv:
        print("Usage: python cli.py  (configure with .env, see settings.py)")
        return 1
    try:
        settings = Settings.load()
    except ValueError as e:
        setup_logging(False)
        logger.error(f"Cannot load settings: {e}")
        return 1
    setup_logging(settings.verbose)
    logger.info(f"Diagnostic log at {get_log_path()}")
    wrapper = APIWrapper()
    try:
        settings.validate()
        account = Account(settings.credentials_file, settings.run_as)
        ctx = build_context(settings, account, wrapper)
    except (ValueError, FileNotFoundError, MigratorError) as e:
        logger.error(f"Cannot start migration: {e}")
        return 1
    report = perform_migration(ctx, settings.root_folder_id)
    ctx.audit.log("STATS", str(wrapper))
    ctx.audit.flush()
    logger.info(str(report))
    return 0


if __name__ == "__main__":
    sys.exit(main())
