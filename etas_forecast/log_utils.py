"""Structured Logging Utilities for `logging`.

This module supports two structured-logging formats (JSON and
tab-separated text) for the forecasting engine. Ensemble progress,
ranging decisions and simulation failures are all reported through
`log`, so that a long-running forecast can be followed (or parsed)
from its log stream alone.

Examples
--------

>>> @log_call()
>>> def foo(a, b):
>>>     return a + b
>>> foo(1, 2)
2024-09-18 22:00:51.498268+00:00	INFO	called	function='foo'	id='...'	args={'a': 1, 'b': 2}
2024-09-18 22:00:51.498311+00:00	INFO	completed	function='foo'	id='...'	result=3
3
>>> log('ranging', LoggingFormat.TEXT, attempt=1)
2024-09-18 22:00:51.498268+00:00	INFO	ranging	attempt=1

"""

import contextlib
import enum
import functools
import inspect
import json
import logging
import os
import threading
import time
import traceback
import uuid
from collections.abc import Generator, Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

import numpy as np


class LoggingFormat(Enum):
    """Enumeration of possible logging format outputs."""

    JSON = enum.auto()
    """Output log in JSON structured-logging format."""
    TEXT = enum.auto()
    """Output log in tab-separated key=value structured-logging format."""


logging.basicConfig(level=logging.INFO, format="%(message)s")


class LogEncoder(json.JSONEncoder):
    """Custom JSON encoder for logging arbitrary values.

    Numpy scalars and arrays are converted to their Python
    equivalents, everything else falls back to `repr`.
    """

    def default(self, obj: Any) -> Any:
        """Encode the JSON representation of obj.

        Parameters
        ----------
        obj : Any
            Object to encode.

        Returns
        -------
        Any
            The encoded JSON object.
        """
        if isinstance(obj, np.generic):
            return obj.item()
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        try:
            return super().default(obj)
        except TypeError:
            return repr(obj)


def log(
    message: str,
    format: Optional[LoggingFormat] = None,
    level: int = logging.INFO,
    /,
    **kwargs: Any,
) -> None:
    """Log a message in a structured logging format.

    Parameters
    ----------
    message : str
        The message to log.
    format : Optional[LoggingFormat]
        The logging format to use, defaulting to the value of the
        environment variable LOG_FORMAT or `LoggingFormat.TEXT` if the
        environment variable is not present.
    level : int
        The level of the log. For example, the default is `logging.INFO`.
    kwargs : Any
        Keyword arguments to log in a structured logging format.
    """
    now = str(datetime.now(timezone.utc))
    level_name = logging.getLevelName(level)
    format = format or LoggingFormat[os.environ.get("LOG_FORMAT", "TEXT").upper()]

    match format:
        case LoggingFormat.JSON:
            logging.log(
                level,
                json.dumps(
                    kwargs
                    | {
                        "message": message,
                        "level": level_name,
                        "time": now,
                        "thread": threading.current_thread().name,
                    },
                    cls=LogEncoder,
                ),
            )
        case LoggingFormat.TEXT:
            structured_log_data = "\t".join(
                f"{key}={value!r}" for key, value in kwargs.items()
            )
            logging.log(
                level, f"{now}\t{level_name}\t{message}\t{structured_log_data}"
            )


def log_failure(message: str, /, **kwargs: Any) -> None:
    """Log the exception currently being handled, with its full traceback.

    Must be called from within an ``except`` block.

    Parameters
    ----------
    message : str
        The message to log.
    kwargs : Any
        Context (parameter values, attempt counters, ...) to log
        alongside the traceback.
    """
    log(message, None, logging.ERROR, **kwargs, error=traceback.format_exc())


@contextlib.contextmanager
def log_elapsed(action_name: str, /, **kwargs: Any) -> Generator[None, None, None]:
    """Log the start and the wall-clock duration of a block of code.

    Parameters
    ----------
    action_name : str
        The identifier for the block in the log output.
    kwargs : Any
        Additional context to log with the start message.

    Examples
    --------
    >>> with log_elapsed("ranging", attempt=1):
    ...     run_ensemble()
    """
    start = time.monotonic()
    log("started", action=action_name, **kwargs)
    yield
    log("finished", action=action_name, elapsed=round(time.monotonic() - start, 3))


def log_call(
    action_name: Optional[str] = None,
    exclude_args: Optional[Iterable[str]] = None,
    include_result: bool = True,
) -> Callable:
    """Wrap a function with logging calls of the arguments and success status.

    Parameters
    ----------
    action_name : Optional[str]
        An alternative identifier for the function in the log output.
        If None, will use `f.__name__` as the identifier.
    exclude_args : Optional[Iterable[str]]
        Arguments to exclude from log reports.
    include_result : bool
        If True, log the result of function call.

    Returns
    -------
    Callable
        A decorator that logs it's wrapped function's arguments every
        time the function is called, and logs once it has completed
        (with it's return value if `include_result` is True).
    """

    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def wrapper(*args, **kwargs):
            signature = inspect.signature(f)
            function_id = str(uuid.uuid4())
            excluded = set(exclude_args or ())
            unified_arguments = {
                parameter: arg
                for parameter, arg in zip(signature.parameters, args)
                if parameter not in excluded
            } | {key: value for key, value in kwargs.items() if key not in excluded}
            name = action_name or f.__name__
            log("called", function=name, id=function_id, args=unified_arguments)
            try:
                result = f(*args, **kwargs)
            except BaseException:
                log_failure("failed", function=name, id=function_id)
                raise
            if result is not None and include_result:
                log("completed", function=name, id=function_id, result=result)
            else:
                log("completed", function=name, id=function_id)
            return result

        return wrapper

    return decorator
