import re

import pytest

from audit import AuditLog
from backend import FOLDER_MIME, Access, File, ObjectNotFoundError, OwnerFilter, Principal
from migrator import Deadline, RunContext

ME = "me@x.com"


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ListSink:
    def __init__(self):
        self.rows = []

    def append(self, rows):
        self.rows.extend(rows)


class FakeStore:
    """In-memory stand-in for DriveStore, keyed by object id in creation order."""

    def __init__(self, me: str = ME):
        self.me = me
        self.objects: dict[str, dict] = {}
        self.grants: list[tuple[str, Principal, str]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.hooks = {}
        self._counter = 0

    # -- building trees
    def _new_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter}"

    def _add(self, name, parent, owner, mime, viewers=(), editors=()) -> str:
        oid = self._new_id("d" if mime == FOLDER_MIME else "f")
        grants = [(Principal(v), "reader") for v in viewers] + [(Principal(e), "writer") for e in editors]
        self.objects[oid] = {
            "name": name,
            "mimeType": mime,
            "owner": owner or self.me,
            "parents": [parent] if parent else [],
            "grants": grants,
        }
        return oid

    def add_folder(self, name, parent=None, owner=None, viewers=(), editors=()) -> str:
        return self._add(name, parent, owner, FOLDER_MIME, viewers, editors)

    def add_file(self, name, parent, owner=None, viewers=(), editors=(), mime="application/pdf") -> str:
        return self._add(name, parent, owner, mime, viewers, editors)

    # -- inspection helpers
    def file(self, oid: str) -> File:
        o = self.objects[oid]
        return File({
            "id": oid,
            "name": o["name"],
            "mimeType": o["mimeType"],
            "owners": [{"emailAddress": o["owner"]}],
            "parents": list(o["parents"]),
            "webViewLink": f"https://drive.example/{oid}",
        })

    def children(self, parent_id: str, folders: bool | None = None) -> list[str]:
        out = []
        for oid, o in self.objects.items():
            if parent_id not in o["parents"]:
                continue
            if folders is None or (o["mimeType"] == FOLDER_MIME) == folders:
                out.append(oid)
        return out

    def grants_on(self, oid: str) -> set[tuple[str, str]]:
        return {(p.email, role) for target, p, role in self.grants if target == oid}

    def _check(self, op: str, oid: str):
        if (op, oid) in self.failures:
            raise self.failures[(op, oid)]
        if op in self.hooks:
            self.hooks[op](oid)

    # -- store interface
    def get_folder(self, folder_id):
        if folder_id not in self.objects:
            raise ObjectNotFoundError(folder_id)
        return self.file(folder_id)

    def _selected(self, owner: str, owner_filter: OwnerFilter | None) -> bool:
        # evaluates the same ownership clause Drive would from owner_filter.as_query()
        if owner_filter is None:
            return True
        if owner_filter.target:
            return owner.casefold() == owner_filter.target
        return owner.casefold() != self.me

    def _list(self, parent_id, folders, owner_filter: OwnerFilter | None):
        self._check("list", parent_id)
        out = []
        for oid in self.children(parent_id, folders):
            if self._selected(self.objects[oid]["owner"], owner_filter):
                out.append(self.file(oid))
        return out

    def list_folders(self, parent_id, owner_filter=None):
        return self._list(parent_id, True, owner_filter)

    def list_files(self, parent_id, owner_filter=None):
        return self._list(parent_id, False, owner_filter)

    def find_owned_folder(self, parent_id, name):
        for oid in self.children(parent_id, True):
            o = self.objects[oid]
            if o["name"] == name and o["owner"] == self.me:
                return self.file(oid)
        return None

    def create_folder(self, name, parent_id):
        self._check("create_folder", parent_id)
        return self.file(self.add_folder(name, parent_id))

    def copy_file(self, file, name, parent_id):
        self._check("copy", file.id)
        src = self.objects[file.id]
        return self.file(self.add_file(name, parent_id, mime=src["mimeType"]))

    def rename(self, object_id, name):
        self._check("rename", object_id)
        self.objects[object_id]["name"] = name

    def move(self, object_id, from_id, to_id):
        self._check("move", object_id)
        parents = self.objects[object_id]["parents"]
        if from_id not in parents:
            raise ObjectNotFoundError(f"{object_id} is not in {from_id}")
        parents.remove(from_id)
        parents.append(to_id)

    def read_access(self, object_id):
        self._check("read_access", object_id)
        o = self.objects[object_id]
        access = Access(owner=Principal(o["owner"]))
        for principal, role in o["grants"]:
            (access.editors if role == "writer" else access.viewers).add(principal)
        return access

    def grant(self, object_id, principal, role):
        self._check("grant", object_id)
        # Drive folds a repeated grant into the existing permission
        if (principal, role) not in self.objects[object_id]["grants"]:
            self.objects[object_id]["grants"].append((principal, role))
        self.grants.append((object_id, principal, role))
        return f"perm{len(self.grants)}"


def tree_shape(store: FakeStore, folder_id: str):
    """Id-free description of a subtree: names, owners and grants, children sorted."""
    shape = []
    for oid in store.children(folder_id):
        o = store.objects[oid]
        name = re.sub(r"https://drive\.example/\S+", "<url>", o["name"])
        grants = tuple(sorted((p.email, role) for p, role in o["grants"]))
        sub = tree_shape(store, oid) if o["mimeType"] == FOLDER_MIME else None
        shape.append((name, o["owner"], grants, sub))
    return sorted(shape, key=repr)


def make_context(store, archive_id, clock=None, budget=1e9, sink=None, **kwargs) -> RunContext:
    deadline = Deadline(budget, clock=clock or FakeClock())
    audit = AuditLog(sink if sink is not None else ListSink(), mirror=False, verbose=True)
    return RunContext(store, audit, deadline, archive_id, **kwargs)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def clock():
    return FakeClock()
