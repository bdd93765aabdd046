from __future__ import annotations

import logging
import time
from collections import deque
from ssl import SSLError
from typing import NamedTuple

import google_auth_httplib2
import googleapiclient.discovery as g_discover
import googleapiclient.errors as g_api_errors
import httplib2
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2 import service_account

# Constants
MAX_BACKOFF = 30 # seconds
MAX_RECURSION_DEPTH = 100
SCOPE_LIST = [
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/spreadsheets",
]
FOLDER_MIME = "application/vnd.google-apps.folder"
FILE_FIELDS = "id, name, mimeType, owners(emailAddress), webViewLink"

logger = logging.getLogger(__name__)
# mute google api stuff
for logger_name in [
    "googleapiclient.discovery_cache",
    "googleapiclient.discovery",
    "googleapiclient.http",
    "google_auth_httplib2",
    "google.auth.transport.requests",
    "urllib3.connectionpool",
]:
    logging.getLogger(logger_name).setLevel(logging.WARNING)


class MigratorError(Exception):
    pass


class RateLimitError(MigratorError):
    pass


class UnknownAPIError(MigratorError):
    def __init__(self, deets):
        super().__init__(f"Unknown API Error: {deets}")
        self.deets = deets


class GoogleIncompetenceError(MigratorError):
    pass


class ProgrammerIncompetenceError(MigratorError):
    def __init__(self, deets):
        super().__init__(f"Programmer Incompetence Error: {deets}")
        self.deets = deets
        logger.error(f"BUG: Programmer Incompetence Error - {deets}")


class GooglePermissionError(MigratorError):
    pass


class ObjectNotFoundError(MigratorError):
    pass


def _error_reason(e: g_api_errors.HttpError) -> str | None:
    details = e.error_details
    if isinstance(details, list) and details and isinstance(details[0], dict):
        return details[0].get("reason")
    return None


class APIWrapper:
    """
    Executes Drive/Sheets requests and turns HTTP failures into MigratorErrors.
    Retries are off unless max_retries is raised; a re-run is the recovery path.
    """

    def __init__(self, max_retries: int = 0):
        self.max_retries = max_retries
        self.total_requests = 0
        self.requests_since_error = 0
        self.total_errors = 0
        self.cur_backoff = 0.01
        self.time_buffer = deque(maxlen=5)
        self.time_buffer.append(0)

    def __str__(self):
        t_avg = 0
        for t in self.time_buffer:
            t_avg += t
        t_avg /= len(self.time_buffer)
        return f"Requests: {self.total_requests} ({self.requests_since_error} since last error), Errors: {self.total_errors}, Backoff: {self.cur_backoff:.2f}s, Average API Response Time: {t_avg:.2f}s"

    def __call__(
        self,
        method,
        retries=0,
        retryable_errors=(RateLimitError, GoogleIncompetenceError),
        **kwargs,
    ):
        try:
            return self.run(method, **kwargs)
        except retryable_errors as e:
            logger.debug(f"Caught retryable error: {e}. Attempt {retries}/{self.max_retries}.")
            if retries < self.max_retries:
                backoff_time = self.calc_backoff()
                logger.info(
                    f"Backing off for {backoff_time:.2f} seconds before retrying..."
                )
                time.sleep(backoff_time)
                return self.__call__(
                    method, retries + 1, retryable_errors=retryable_errors, **kwargs
                )
            raise e

    def run(self, method, **kwargs):
        self.total_requests += 1
        self.requests_since_error += 1
        start_time = time.time()
        try:
            ret = method(**kwargs).execute()
        except g_api_errors.HttpError as e:
            self.total_errors += 1
            self.requests_since_error = 0
            status = e.resp.status
            error_reason = _error_reason(e)
            if status in [403, 429]:
                logger.debug(f"API Error {status} - {error_reason}")
                if error_reason in [
                    "rateLimitExceeded",
                    "userRateLimitExceeded",
                    "quotaExceeded",
                ] or status == 429:
                    logger.info("Rate limit exceeded!")
                    raise RateLimitError() from e
                logger.error(f"Permission error: {status} - {e.error_details}")
                raise GooglePermissionError(str(e.error_details)) from e
            elif status in [500, 502, 503, 504]:
                logger.error(
                    f"google messed up: {status} error - {e.error_details}"
                )
                raise GoogleIncompetenceError() from e
            elif status in [400, 401]:
                if error_reason in ["invalid", "invalidParameter", "badRequest"]:
                    logger.error(f"Invalid parameter error: {e.error_details}")
                    raise ProgrammerIncompetenceError(
                        f"Invalid parameter error: {e.error_details}"
                    ) from e
                logger.error(f"Permission error: {status} - {e.error_details}")
                raise GooglePermissionError(str(e.error_details)) from e
            elif status == 404:
                logger.warning(f"Object not found: {e.error_details}")
                raise ObjectNotFoundError(str(e.error_details)) from e
            logger.error(f"Unknown API Error {status} - {e.error_details}")
            raise UnknownAPIError(e) from e
        except SSLError as e:
            logger.error(f"SSL Error: {e}")
            self.total_errors += 1
            self.requests_since_error = 0
            raise GoogleIncompetenceError() from e
        except (httplib2.HttpLib2Error, OSError) as e:
            logger.error(f"Transport Error: {e}")
            self.total_errors += 1
            self.requests_since_error = 0
            raise GoogleIncompetenceError(str(e)) from e

        self.time_buffer.append(time.time() - start_time)
        return ret

    def calc_backoff(self) -> float:
        if self.requests_since_error > 10:
            self.cur_backoff /= 2
        elif self.requests_since_error == 0:
            self.cur_backoff *= 2
        if self.cur_backoff > MAX_BACKOFF:
            self.cur_backoff = MAX_BACKOFF
        return self.cur_backoff


uncopyable_mime_types = [
    "application/vnd.google-apps.shortcut",
    "application/vnd.google-apps.script",
    "application/vnd.google-apps.form",
    "application/vnd.google-apps.map",
    "application/vnd.google-apps.site",
]


class Principal(NamedTuple):
    email: str
    kind: str = "user"


class File:
    """A Drive object (item or folder) as returned by files().list/get."""

    def __init__(self, infodict: dict):
        self.id: str = infodict["id"]
        self.name: str = infodict["name"]
        self.mime_type: str = infodict.get("mimeType", "")
        self.is_folder = self.mime_type == FOLDER_MIME
        self.is_invalid = self.mime_type in uncopyable_mime_types
        owners = infodict.get("owners", [])
        self.owner: str | None = owners[0].get("emailAddress") if owners else None
        self.url: str = infodict.get("webViewLink", "")

    def __repr__(self):
        return f"<{'Folder' if self.is_folder else 'File'}: {self.name} ({self.id})>"


class Access:
    """Direct sharing state of one object."""

    def __init__(self, owner: Principal | None = None, viewers=None, editors=None):
        self.owner = owner
        self.viewers: set[Principal] = set(viewers or ())
        self.editors: set[Principal] = set(editors or ())

    def __repr__(self):
        return f"Access(owner={self.owner}, viewers={sorted(self.viewers)}, editors={sorted(self.editors)})"


EDITOR_ROLES = ["writer", "fileOrganizer", "organizer"]


def _is_inherited(perm: dict) -> bool:
    details = perm.get("permissionDetails", [])
    return bool(details) and all(d.get("inherited", False) for d in details)


def access_from_permissions(permissions: list[dict]) -> Access:
    access = Access()
    for perm in permissions:
        email = perm.get("emailAddress")
        if not email or perm.get("type") not in ["user", "group"]:
            # domain/anyone links have no principal to re-grant
            continue
        if _is_inherited(perm):
            continue
        principal = Principal(email.casefold(), perm["type"])
        role = perm.get("role")
        if role == "owner":
            access.owner = principal
        elif role in EDITOR_ROLES:
            access.editors.add(principal)
        elif role == "reader":
            access.viewers.add(principal)
        # commenters are not replicated
    return access


def escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class OwnerFilter:
    """Selects objects owned by target, or by anyone but the runner when target is None."""

    def __init__(self, target: str | None = None):
        self.target = target.casefold() if target else None

    def as_query(self) -> str:
        if self.target:
            return f"'{escape_query_value(self.target)}' in owners"
        return "not 'me' in owners"

    def __str__(self):
        return f"owned by {self.target}" if self.target else "not owned by me"


class DriveStore:
    """
    Storage operations needed by the migrator, backed by Drive API v3.
    `me` is the email of the impersonated principal all new objects belong to.
    """

    def __init__(self, drive_service, me: str, wrapper: APIWrapper):
        self.drive_service = drive_service
        self.me = me.casefold()
        self.wrapper = wrapper

    def _fetch_files(self, **kwargs) -> list[dict]:
        next_token = None
        files = []
        depth = 0
        while True:
            query_ret: dict = self.wrapper(
                self.drive_service.files().list,
                pageToken=next_token,
                fields=f"nextPageToken, files({FILE_FIELDS})",
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
                pageSize=1000,
                **kwargs,
            )
            if query_ret is None:
                logger.warning(
                    f"Received empty response when fetching files with kwargs {kwargs}"
                )
                break
            next_token = query_ret.get("nextPageToken")
            files.extend(query_ret.get("files", []))
            if not next_token:
                break
            if depth > MAX_RECURSION_DEPTH:
                logger.warning("Bailing out of _fetch_files due to hitting max. page count! File list may be incomplete.")
                break
            depth += 1
        return files

    def _children_query(self, parent_id: str, folders: bool, owner_filter: OwnerFilter | None) -> str:
        q = f"'{escape_query_value(parent_id)}' in parents and trashed = false and mimeType {'=' if folders else '!='} '{FOLDER_MIME}'"
        if owner_filter is not None:
            q += f" and {owner_filter.as_query()}"
        return q

    def get_folder(self, folder_id: str) -> File:
        resp = self.wrapper(
            self.drive_service.files().get,
            fileId=folder_id,
            fields=FILE_FIELDS,
            supportsAllDrives=True,
        )
        folder = File(resp)
        if not folder.is_folder:
            raise ValueError(f"{folder.name} ({folder_id}) is not a folder!")
        return folder

    def list_folders(self, parent_id: str, owner_filter: OwnerFilter | None = None) -> list[File]:
        return [File(f) for f in self._fetch_files(q=self._children_query(parent_id, True, owner_filter))]

    def list_files(self, parent_id: str, owner_filter: OwnerFilter | None = None) -> list[File]:
        return [File(f) for f in self._fetch_files(q=self._children_query(parent_id, False, owner_filter))]

    def find_owned_folder(self, parent_id: str, name: str) -> File | None:
        q = self._children_query(parent_id, True, None)
        q += f" and name = '{escape_query_value(name)}' and 'me' in owners"
        matches = self._fetch_files(q=q)
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(f"Multiple owned folders named {name} in {parent_id}, using first result")
        return File(matches[0])

    def create_folder(self, name: str, parent_id: str) -> File:
        resp = self.wrapper(
            self.drive_service.files().create,
            body={"name": name, "mimeType": FOLDER_MIME, "parents": [parent_id]},
            fields=FILE_FIELDS,
            supportsAllDrives=True,
        )
        if not resp or not resp.get("id"):
            raise UnknownAPIError(f"Failed to create folder {name}. Got response: {resp}")
        return File(resp)

    def copy_file(self, file: File, name: str, parent_id: str) -> File:
        # name is always sent: a bare copy renames Google-native types to "Copy of ..."
        resp = self.wrapper(
            self.drive_service.files().copy,
            fileId=file.id,
            body={"name": name, "parents": [parent_id]},
            fields=FILE_FIELDS,
            supportsAllDrives=True,
        )
        if not resp or not resp.get("id"):
            raise UnknownAPIError(f"Failed to copy file {file.name}. Got response: {resp}")
        return File(resp)

    def rename(self, object_id: str, name: str):
        self.wrapper(
            self.drive_service.files().update,
            fileId=object_id,
            body={"name": name},
            fields="id, name",
            supportsAllDrives=True,
        )

    def move(self, object_id: str, from_id: str, to_id: str):
        self.wrapper(
            self.drive_service.files().update,
            fileId=object_id,
            addParents=to_id,
            removeParents=from_id,
            fields="id, parents",
            supportsAllDrives=True,
        )

    def read_access(self, object_id: str) -> Access:
        page_token = None
        permissions = []
        while True:
            resp = self.wrapper(
                self.drive_service.permissions().list,
                supportsAllDrives=True,
                fileId=object_id,
                pageToken=page_token,
                fields="nextPageToken, permissions(id, type, role, emailAddress, permissionDetails)",
            )
            page_token = resp.get("nextPageToken", None)
            permissions.extend(resp.get("permissions", []))
            if not page_token:
                break
        return access_from_permissions(permissions)

    def grant(self, object_id: str, principal: Principal, role: str) -> str:
        new_perm = {"type": principal.kind, "role": role, "emailAddress": principal.email}
        logger.debug(f"Sharing object {object_id} with {principal.email} as {role}...")
        resp = self.wrapper(
            self.drive_service.permissions().create,
            supportsAllDrives=True,
            fileId=object_id,
            sendNotificationEmail=False,
            body=new_perm,
            fields="id",
        )
        perm_id = resp.get("id", None) if resp else None
        if not perm_id:
            logger.error(f"Failed to share object {object_id} with {principal.email}")
            raise UnknownAPIError(
                f"Failed to share object {object_id} with {principal.email}. Got response: {resp}"
            )
        return perm_id


def check_email_validity(email: str) -> bool:
    parts = email.split("@")
    if len(parts) != 2 or not parts[0] or "." not in parts[1]:
        return False
    return True


class Account:
    """Delegated Google services for the principal the migration runs as."""

    def __init__(self, keyfile_path: str, address: str):
        if not check_email_validity(address):
            logger.error(f"Invalid run-as email address: {address}")
            raise ValueError("Invalid email address!")
        creds = service_account.Credentials.from_service_account_file(
            keyfile_path, scopes=SCOPE_LIST
        ).with_subject(address)
        try:
            creds.refresh(Request())
            logger.debug(f"Successfully refreshed credentials for {address}")
        except RefreshError as e:
            logger.error(f"Failed to refresh credentials for {address}: {e}")
            raise ValueError(
                "Invalid credentials! Check that the email is correct and that the service account has domain-wide delegation enabled."
            ) from e
        self.address = address
        self.drive_service = g_discover.build(
            "drive", "v3", http=google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http()), cache_discovery=False
        )
        self.sheets_service = g_discover.build(
            "sheets", "v4", http=google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http()), cache_discovery=False
        )

    def __str__(self):
        return f"Account(address={self.address})"

    def whoami(self, wrapper: APIWrapper) -> str:
        resp = wrapper(self.drive_service.about().get, fields="user(emailAddress)")
        return resp["user"]["emailAddress"]
