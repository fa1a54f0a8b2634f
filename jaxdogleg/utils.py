import contextlib
import time
from typing import Generator

import termcolor
from loguru import logger


@contextlib.contextmanager
def stopwatch(label: str = "unlabeled block") -> Generator[None, None, None]:
    """Context manager for measuring runtime."""
    start_time = time.time()
    print("\n========")
    print(f"Running ({label})")
    yield
    print(f"{termcolor.colored(str(time.time() - start_time), attrs=['bold'])} seconds")
    print("========")


def log(fmt: str, *args, **kwargs) -> None:
    """Emit a loguru info message for solver progress."""
    logger.bind(function="log").info(fmt, *args, **kwargs)


def warn(fmt: str, *args, **kwargs) -> None:
    """Emit a loguru warning, bound the same way as `log()`."""
    logger.bind(function="log").warning(fmt, *args, **kwargs)
