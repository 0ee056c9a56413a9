import logging
from typing import Optional, Union


def resolve_level(level: Union[int, str, None], default: int = logging.INFO) -> int:
    if isinstance(level, int):
        return level
    if not level:
        return default
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else default


def setup_logging(level: Union[int, str, None] = logging.INFO, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    ``level`` accepts a logging constant or a name such as ``"DEBUG"`` taken
    from the ``monitoring.log_level`` setting. Subsequent calls are ignored
    once the root logger has handlers. Access logs from aiohttp are kept at
    WARNING so ticker polling does not flood the output.
    """
    if logging.getLogger().handlers:
        return

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=resolve_level(level), format=fmt)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
