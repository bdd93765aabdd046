import logging
import tempfile
import sys

log_path = ""


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Send the diagnostic stream to a temp log file and stdout."""
    global log_path
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Avoid duplicate handlers if this is called more than once
    if any(getattr(h, "_ownership_migrator", False) for h in logger.handlers):
        return logger

    log_file = tempfile.NamedTemporaryFile(delete=False, suffix=".log")
    log_path = log_file.name
    log_file.close()  # Close so logger can write to it

    file_handler = logging.FileHandler(log_path)
    formatter = logging.Formatter('[%(asctime)s]\t %(levelname)s - %(message)s')
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)
    console_handler = logging.StreamHandler(sys.stdout)
    console_formatter = logging.Formatter('%(levelname)s : %(message)s')
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in (file_handler, console_handler):
        handler._ownership_migrator = True
        logger.addHandler(handler)
    return logger


def get_log_path():
    return log_path
