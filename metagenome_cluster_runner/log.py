import logging
import sys

FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_logger(name: str, verbose: bool = True) -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(FORMAT))
    logger.addHandler(handler)
    return logger


def coordinator_logger(cfg, verbose: bool = False) -> logging.Logger:
    """
    Logger for rank 0: console plus the run log file under install_dir/logs.

    Only the coordinator owns the log file; participants never append to it.
    """
    logger = get_logger("coordinator", verbose)
    logger.setLevel(logging.DEBUG if verbose else cfg.log_level)
    log_path = cfg.log_path
    if any(isinstance(h, logging.FileHandler) and h.baseFilename == str(log_path.absolute())
           for h in logger.handlers):
        return logger
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, mode="a")
    except OSError as exc:
        logger.warning("Could not open log file %s: %s", log_path, exc)
        return logger
    handler.setFormatter(logging.Formatter(FORMAT))
    logger.addHandler(handler)
    return logger


def participant_logger(rank: int, hostname: str, verbose: bool = False,
                       level: str = "INFO") -> logging.Logger:
    # console only; the record name carries rank and host
    logger = get_logger(f"participant.{rank}@{hostname}", verbose)
    logger.setLevel(logging.DEBUG if verbose else level)
    return logger
