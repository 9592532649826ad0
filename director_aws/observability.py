"""Logging setup.

Modules log through loguru with a bound component::

    from loguru import logger

    log = logger.bind(component="asg")
    log.info("Allocated {n} instances", n=3)

``setup_logging`` routes those records to a rich console handler or to a
rotating file, which the package leaves disabled until called.
"""

from __future__ import annotations

from typing import TextIO

from loguru import logger
from rich.logging import RichHandler

_handler_ids: list[int] = []


def _make_console_handler() -> RichHandler:
    return RichHandler(
        console=None,
        show_time=True,
        show_level=True,
        show_path=True,
        markup=False,
        rich_tracebacks=True,
    )


def setup_logging(
    level: str = "INFO",
    sink: str | TextIO | None = None,
    *,
    rotation: str = "50 MB",
    retention: int = 10,
) -> None:
    """Enable director-aws logging.

    Args:
        level: Minimum level name.
        sink: A file path, a text stream, or None for the rich console.
        rotation: Rotation size for file sinks.
        retention: Number of rotated files kept for file sinks.
    """
    teardown_logging()
    match sink:
        case str() as path:
            handler_id = logger.add(
                path,
                level=level,
                rotation=rotation,
                retention=retention,
                compression="gz",
                filter="director_aws",
                format=(
                    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
                    "{extra[component]} | {name}:{function}:{line} - {message}"
                ),
            )
        case None:
            handler_id = logger.add(
                _make_console_handler(),
                level=level,
                filter="director_aws",
                format="[{extra[component]}] {message}",
            )
        case _:
            handler_id = logger.add(
                sink,
                level=level,
                filter="director_aws",
                format="{time:HH:mm:ss} | {level: <8} | {extra[component]} | {message}",
            )
    _handler_ids.append(handler_id)
    logger.configure(extra={"component": "director-aws"})
    logger.enable("director_aws")


def teardown_logging() -> None:
    while _handler_ids:
        logger.remove(_handler_ids.pop())
    logger.disable("director_aws")
