"""Finite element core of femgax.

Holds the package logger shared by the assembly and solver modules.
"""
import logging

logger = logging.getLogger("femgax")
logger.setLevel(logging.INFO)

if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("[%(asctime)s][%(levelname)s] %(message)s")
    )
    logger.addHandler(handler)


def set_log_level(level):
    """Set the verbosity of the femgax logger.

    Args:
        level (int or str): Standard logging level, e.g. ``logging.DEBUG`` or ``"DEBUG"``.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    logger.setLevel(level)
