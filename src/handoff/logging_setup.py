"""Logging configuration for the handoff CLI and embedding processes."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

SENSITIVE_MARKERS = ("TOKEN", "KEY", "PASSWORD", "SECRET")
MASK = "***"


class SecretMaskingFilter(logging.Filter):
    """Replace known secret values in log records with a mask.

    Secrets are the values of environment variables whose names contain one of
    ``SENSITIVE_MARKERS``. Values shorter than four characters are ignored so
    that short flags do not blank out unrelated text.
    """

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        super().__init__()
        source = os.environ if environ is None else environ
        self.secrets = sorted(
            {
                value
                for key, value in source.items()
                if value
                and len(value) >= 4
                and any(marker in key.upper() for marker in SENSITIVE_MARKERS)
            },
            key=len,
            reverse=True,
        )

    def mask(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        record.msg = self.mask(record.getMessage())
        record.args = ()
        return True


def setup_logging(
    verbose: bool = False,
    log_file: str | Path | None = None,
    logger_name: str = "handoff",
) -> logging.Logger:
    """
    Configure console (and optionally file) logging for the ``handoff`` tree.

    Args:
        verbose: Enable DEBUG level on the console (default INFO)
        log_file: Path to an append-mode log file, or None
        logger_name: Root of the logger tree to configure

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        if getattr(handler, "_handoff_managed", False):
            logger.removeHandler(handler)
            handler.close()

    masking = SecretMaskingFilter()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(logging.Formatter("%(levelname)-8s | %(name)s | %(message)s"))
    console_handler.addFilter(masking)
    console_handler._handoff_managed = True  # type: ignore[attr-defined]
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        file_handler.addFilter(masking)
        file_handler._handoff_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    return logger
