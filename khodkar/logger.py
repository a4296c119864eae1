"""Logging configuration for Khodkar."""

import logging
from pathlib import Path


def setup_logging(log_file: str, verbose: bool = False, level: int = logging.DEBUG) -> None:
    """Setup logging to file and, when verbose, to stderr."""

    log_path = Path(log_file).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        logging.FileHandler(log_path, mode="a", encoding="utf-8"),
    ]

    # Console stays clean for the progress spinner unless asked for.
    if verbose:
        stream = logging.StreamHandler()
        stream.setLevel(logging.INFO)
        handlers.append(stream)

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )

    # Suppress noisy third-party logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("mcp").setLevel(logging.WARNING)

    logging.getLogger("khodkar").setLevel(logging.DEBUG)

    logging.info("=" * 60)
    logging.info(f"Khodkar Logging Started. Writing to {log_path.absolute()}")
    logging.info("=" * 60)
