import logging
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

from .config import Settings

NOISY_LOGGERS = ("asyncio", "httpx", "httpcore", "openai", "anthropic", "google_genai")


def init_logging(
    level: Union[str, int, None] = None,
    console: Optional[Console] = None,
    settings: Optional[Settings] = None,
) -> logging.Logger:
    """
    Route the ``streamux`` logger hierarchy through a rich console handler.

    Safe to call more than once; previously installed handlers are replaced.

    Args:
        level: Log level name or number for ``streamux.*`` loggers. Defaults
            to ``settings.log_level`` (``STREAMUX_LOG_LEVEL``).
        console (Console, optional): Target console (stderr by default).
        settings (Settings, optional): Loaded from the environment when
            neither ``level`` nor ``settings`` is given.

    Returns:
        logging.Logger: The package root logger.
    """
    if level is None:
        level = (settings or Settings.from_env()).log_level
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger("streamux")
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=True,
        show_path=False,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    root.debug("Logging initialized at %s", logging.getLevelName(level))
    return root
