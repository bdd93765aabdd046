import logging
import time
from enum import Enum

from audit import AuditLog
from backend import DriveStore, File, OwnerFilter, Principal

logger = logging.getLogger(__name__)


class Deadline:
    """Cooperative wall-clock budget. Once exceeded it stays exceeded."""

    def __init__(self, budget_seconds: float, clock=time.monotonic):
        self.clock = clock
        self.budget = budget_seconds
        self.start = clock()
        self.cut_short = False

    def elapsed(self) -> float:
        return self.clock() - self.start

    def remaining(self) -> float:
        return max(0.0, self.budget - self.elapsed())

    def exceeded(self) -> bool:
        if not self.cut_short and self.elapsed() > self.budget:
            self.cut_short = True
        return self.cut_short


class WorkList:
    """
    Pre-order snapshot of the folders under the root.

    Slots are addressed by the id of the folder discovered there. When a
    folder is recreated under new ownership its slot is pointed at the
    replacement, and iteration always yields whatever the slot holds when
    it is reached.
    """

    def __init__(self, folders=()):
        self.slots: list[File] = []
        self.positions: dict[str, int] = {}
        for f in folders:
            self.append(f)

    def append(self, folder: File):
        self.positions[folder.id] = len(self.slots)
        self.slots.append(folder)

    def replace(self, original_id: str, folder: File) -> bool:
        pos = self.positions.get(original_id)
        if pos is None:
            return False
        self.slots[pos] = folder
        self.positions[folder.id] = pos
        return True

    def __contains__(self, folder_id: str):
        return folder_id in self.positions

    def __len__(self):
        return len(self.slots)

    def __getitem__(self, index: int) -> File:
        return self.slots[index]

    def __iter__(self):
        for i in range(len(self.slots)):
            yield self.slots[i]


class Outcome(Enum):
    MIGRATED = "migrated"
    SKIPPED = "skipped"
    FAILED = "failed"


class Result:
    def __init__(self, outcome: Outcome, source: File, replacement: File | None = None, detail: str = ""):
        self.outcome = outcome
        self.source = source
        self.replacement = replacement
        self.detail = detail

    @property
    def kind(self) -> str:
        return "FOLDER" if self.source.is_folder else "FILE"

    def as_row(self) -> list:
        return [
            self.kind,
            self.outcome.value,
            self.source.name,
            self.source.id,
            self.replacement.id if self.replacement else "",
            self.replacement.url if self.replacement else "",
            self.detail,
        ]

    def __repr__(self):
        return f"<Result {self.kind} {self.outcome.value}: {self.source.name}>"


class RunReport:
    def __init__(self):
        self.results: list[Result] = []
        self.folders_discovered = 0
        self.cut_short = False
        self.error: str | None = None

    def add(self, result: Result):
        self.results.append(result)

    def count(self, outcome: Outcome, kind: str | None = None) -> int:
        return sum(1 for r in self.results if r.outcome == outcome and (kind is None or r.kind == kind))

    def gen_status_dict(self) -> dict:
        return {
            "folders_discovered": self.folders_discovered,
            "files_migrated": self.count(Outcome.MIGRATED, "FILE"),
            "folders_migrated": self.count(Outcome.MIGRATED, "FOLDER"),
            "skipped": self.count(Outcome.SKIPPED),
            "failed": [r.source.name for r in self.results if r.outcome == Outcome.FAILED],
            "cut_short": self.cut_short,
            "error": self.error,
        }

    def __str__(self):
        status = "Cut short" if self.cut_short else ("Aborted" if self.error else "Completed")
        return (
            f"{status}: {self.count(Outcome.MIGRATED, 'FILE')} files and "
            f"{self.count(Outcome.MIGRATED, 'FOLDER')} folders migrated, "
            f"{self.count(Outcome.SKIPPED)} skipped, {self.count(Outcome.FAILED)} failed "
            f"across {self.folders_discovered} folders"
        )


class RunContext:
    """Everything one run shares: the store, the audit log, the deadline and the options."""

    def __init__(
        self,
        store: DriveStore,
        audit: AuditLog,
        deadline: Deadline,
        archive_id: str,
        owner_filter: OwnerFilter | None = None,
        retain_access: bool = True,
        deprecation_marker: str = "[DEPRECATED]",
    ):
        self.store = store
        self.audit = audit
        self.deadline = deadline
        self.archive_id = archive_id
        self.owner_filter = owner_filter if owner_filter is not None else OwnerFilter()
        self.retain_access = retain_access
        self.deprecation_marker = deprecation_marker
        self.report = RunReport()

    def should_stop(self) -> bool:
        if not self.deadline.exceeded():
            return False
        if not self.report.cut_short:
            self.report.cut_short = True
            logger.warning(f"Run time budget of {self.deadline.budget}s exceeded, stopping.")
            self.audit.log(
                "DEADLINE",
                "Run time budget exceeded, stopping",
                f"{self.deadline.elapsed():.1f}s elapsed",
                f"{self.deadline.remaining():.1f}s remaining",
            )
        return True

    def record(self, result: Result):
        self.report.add(result)
        self.audit.log(*result.as_row())


def discover(ctx: RunContext, root: File) -> WorkList:
    """Depth-first, pre-order listing of every folder under root (root included)."""
    worklist = WorkList()

    def visit(folder: File):
        worklist.append(folder)
        ctx.audit.detail("DISCOVER", folder.name, folder.id, folder.owner)
        for sub in ctx.store.list_folders(folder.id):
            if sub.id == ctx.archive_id:
                ctx.audit.log("DISCOVER", "Not descending into archive folder", sub.name, sub.id)
                continue
            if sub.id in worklist:
                logger.debug(f"Folder {sub.name} ({sub.id}) already listed, skipping")
                continue
            visit(sub)

    visit(root)
    ctx.report.folders_discovered = len(worklist)
    ctx.audit.log("DISCOVER", f"Found {len(worklist)} folders under {root.name}", root.id)
    return worklist


def replicate_access(store: DriveStore, target_id: str, viewers, editors) -> int:
    """Re-grant viewers as readers and editors as writers, without notification email."""
    granted = 0
    for role, principals in (("reader", viewers), ("writer", editors)):
        for principal in sorted(principals):
            if principal.email.casefold() == store.me:
                continue
            store.grant(target_id, principal, role)
            granted += 1
    return granted


def _owner_of(access, obj: File) -> Principal | None:
    if access.owner is not None:
        return access.owner
    return Principal(obj.owner.casefold()) if obj.owner else None


def deprecated_name(marker: str, name: str, url: str) -> str:
    return f"{marker} {name} - moved to {url}"


def migrate_file(ctx: RunContext, folder: File, file: File) -> Result:
    if file.is_invalid:
        return Result(Outcome.SKIPPED, file, detail=f"cannot copy {file.mime_type}")
    copy = ctx.store.copy_file(file, file.name, folder.id)
    access = ctx.store.read_access(file.id)
    editors = set(access.editors)
    owner = _owner_of(access, file)
    if ctx.retain_access and owner is not None:
        editors.add(owner)
    granted = replicate_access(ctx.store, copy.id, access.viewers, editors)
    # the copy must carry full access before the original is archived
    ctx.store.move(file.id, folder.id, ctx.archive_id)
    ctx.store.rename(file.id, deprecated_name(ctx.deprecation_marker, file.name, copy.url))
    return Result(Outcome.MIGRATED, file, copy, detail=f"{granted} grants copied")


def migrate_files(ctx: RunContext, worklist: WorkList):
    for folder in worklist:
        if ctx.should_stop():
            return
        try:
            files = ctx.store.list_files(folder.id, ctx.owner_filter)
        except Exception as e:
            logger.error(f"Failed to list files in {folder.name}: {e}")
            ctx.audit.log("FOLDER", "list failed", folder.name, folder.id, "", "", str(e))
            continue
        ctx.audit.detail("SCAN", f"{len(files)} files {ctx.owner_filter}", folder.name, folder.id)
        for file in files:
            if ctx.should_stop():
                return
            try:
                result = migrate_file(ctx, folder, file)
            except Exception as e:
                logger.error(f"Failed to migrate file {file.name} in {folder.name}: {e}")
                result = Result(Outcome.FAILED, file, detail=str(e))
            ctx.record(result)


def migrate_subfolder(ctx: RunContext, worklist: WorkList, parent: File, subfolder: File) -> Result:
    target = ctx.store.find_owned_folder(parent.id, subfolder.name)
    if target is None:
        target = ctx.store.create_folder(subfolder.name, parent.id)
        if not worklist.replace(subfolder.id, target):
            ctx.audit.detail("FOLDER", "Replacement not in work-list", subfolder.name, subfolder.id)
    else:
        ctx.audit.log("FOLDER", "Reusing existing replacement", subfolder.name, subfolder.id, target.id)
    access = ctx.store.read_access(subfolder.id)
    editors = set(access.editors)
    # folder owners always keep edit access, retain_access only governs files
    owner = _owner_of(access, subfolder)
    if owner is not None:
        editors.add(owner)
    granted = replicate_access(ctx.store, target.id, access.viewers, editors)
    moved = 0
    for child in ctx.store.list_files(subfolder.id):
        ctx.store.move(child.id, subfolder.id, target.id)
        moved += 1
    for child in ctx.store.list_folders(subfolder.id):
        ctx.store.move(child.id, subfolder.id, target.id)
        moved += 1
    ctx.store.move(subfolder.id, parent.id, ctx.archive_id)
    return Result(Outcome.MIGRATED, subfolder, target, detail=f"{granted} grants copied, {moved} children moved")


def migrate_folders(ctx: RunContext, worklist: WorkList):
    for parent in worklist:
        if ctx.should_stop():
            return
        try:
            subfolders = ctx.store.list_folders(parent.id, ctx.owner_filter)
        except Exception as e:
            logger.error(f"Failed to list subfolders of {parent.name}: {e}")
            ctx.audit.log("FOLDER", "list failed", parent.name, parent.id, "", "", str(e))
            continue
        ctx.audit.detail("SCAN", f"{len(subfolders)} subfolders {ctx.owner_filter}", parent.name, parent.id)
        for subfolder in subfolders:
            if ctx.should_stop():
                return
            if subfolder.id == ctx.archive_id:
                continue
            try:
                result = migrate_subfolder(ctx, worklist, parent, subfolder)
            except Exception as e:
                logger.error(f"Failed to migrate folder {subfolder.name} in {parent.name}: {e}")
                result = Result(Outcome.FAILED, subfolder, detail=str(e))
            ctx.record(result)


def perform_migration(ctx: RunContext, root_id: str) -> RunReport:
    """Discover the tree, run the file pass, then the folder pass."""
    ctx.audit.log("START", f"Migrating {root_id} ({ctx.owner_filter}) as {ctx.store.me}", f"budget {ctx.deadline.budget}s")
    try:
        root = ctx.store.get_folder(root_id)
        archive = ctx.store.get_folder(ctx.archive_id)
        ctx.audit.detail("START", f"Archive folder is {archive.name}", archive.id)
        worklist = discover(ctx, root)
        migrate_files(ctx, worklist)
        migrate_folders(ctx, worklist)
    except Exception as e:
        logger.error(f"Migration failed with exception: {e}")
        ctx.report.error = str(e)
        ctx.audit.log("ERROR", "Migration aborted", str(e))
    ctx.audit.log(
        "SUMMARY",
        str(ctx.report),
        f"{ctx.deadline.elapsed():.1f}s elapsed",
        f"{ctx.deadline.remaining():.1f}s remaining",
    )
    ctx.audit.log("STATUS", *(f"{k}={v}" for k, v in ctx.report.gen_status_dict().items()))
    ctx.audit.flush()
    return ctx.report
