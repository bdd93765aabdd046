import os

from dotenv import load_dotenv

from backend import check_email_validity

# Deployment defaults. Any of these can be overridden from a .env file.
CREDENTIALS_FILE = "service_account.json"
RUN_AS = ""
ROOT_FOLDER_ID = ""
ARCHIVE_FOLDER_ID = ""
TARGET_OWNER = ""  # empty: migrate everything not owned by RUN_AS
RETAIN_ACCESS = True
LOG_SHEET_ID = ""
LOG_SHEET_TAB = "Log"
VERBOSE = False
MIRROR_LOG = True
MAX_RUNTIME_SECONDS = 25 * 60
DEPRECATION_MARKER = "[DEPRECATED]"


def _as_bool(value, default: bool) -> bool:
    if value is None or value == "":
        return default
    return str(value).strip().casefold() in ["1", "true", "yes", "on"]


def _as_seconds(value, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"MAX_RUNTIME_SECONDS must be a number of seconds, got {value!r}") from None


class Settings:
    def __init__(self, **overrides):
        self.credentials_file: str = CREDENTIALS_FILE
        self.run_as: str = RUN_AS
        self.root_folder_id: str = ROOT_FOLDER_ID
        self.archive_folder_id: str = ARCHIVE_FOLDER_ID
        self.target_owner: str | None = TARGET_OWNER or None
        self.retain_access: bool = RETAIN_ACCESS
        self.log_sheet_id: str = LOG_SHEET_ID
        self.log_sheet_tab: str = LOG_SHEET_TAB
        self.verbose: bool = VERBOSE
        self.mirror_log: bool = MIRROR_LOG
        self.max_runtime_seconds: float = MAX_RUNTIME_SECONDS
        self.deprecation_marker: str = DEPRECATION_MARKER
        for key, value in overrides.items():
            if not hasattr(self, key):
                raise TypeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    @classmethod
    def load(cls, dotenv_path: str | None = None) -> "Settings":
        load_dotenv(dotenv_path)
        return cls(
            credentials_file=os.getenv("CREDENTIALS_FILE", CREDENTIALS_FILE),
            run_as=os.getenv("RUN_AS", RUN_AS),
            root_folder_id=os.getenv("ROOT_FOLDER_ID", ROOT_FOLDER_ID),
            archive_folder_id=os.getenv("ARCHIVE_FOLDER_ID", ARCHIVE_FOLDER_ID),
            target_owner=os.getenv("TARGET_OWNER", TARGET_OWNER) or None,
            retain_access=_as_bool(os.getenv("RETAIN_ACCESS"), RETAIN_ACCESS),
            log_sheet_id=os.getenv("LOG_SHEET_ID", LOG_SHEET_ID),
            log_sheet_tab=os.getenv("LOG_SHEET_TAB", LOG_SHEET_TAB),
            verbose=_as_bool(os.getenv("VERBOSE"), VERBOSE),
            mirror_log=_as_bool(os.getenv("MIRROR_LOG"), MIRROR_LOG),
            max_runtime_seconds=_as_seconds(os.getenv("MAX_RUNTIME_SECONDS"), MAX_RUNTIME_SECONDS),
            deprecation_marker=os.getenv("DEPRECATION_MARKER", DEPRECATION_MARKER),
        )

    def validate(self):
        if not self.root_folder_id:
            raise ValueError("ROOT_FOLDER_ID is not configured!")
        if not self.archive_folder_id:
            raise ValueError("ARCHIVE_FOLDER_ID is not configured!")
        if self.root_folder_id == self.archive_folder_id:
            raise ValueError("The archive folder cannot be the root folder!")
        if not check_email_validity(self.run_as):
            raise ValueError(f"RUN_AS is not a valid email address: {self.run_as!r}")
        if self.target_owner and not check_email_validity(self.target_owner):
            raise ValueError(f"TARGET_OWNER is not a valid email address: {self.target_owner!r}")
        if self.max_runtime_seconds <= 0:
            raise ValueError("MAX_RUNTIME_SECONDS must be positive!")
