import logging
from pathlib import Path

def setup_logging(log_file: Path, debug: bool = False) -> logging.Logger:
    """
    Setup logging configuration for VTC.

    Creates the log file's parent directory and routes all module loggers
    to it. Returns configured logger instance.

    Args:
        log_file: Path to the log file
        debug: If True, enable DEBUG level logging (engine command lines, no-op cancels)
    """
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(threadName)s - %(message)s',
        handlers=[logging.FileHandler(log_file)],
        force=True  # Override any existing configuration
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger
