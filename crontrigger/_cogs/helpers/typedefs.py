"""
Rudimentary type [re-]definitions for cross-versioned Python & mypy.

Some stdlib classes are generics only in the type-sheds, but not at runtime
(e.g. :class:`logging.LoggerAdapter`). This module defines them in a way
usable both at runtime and in type-checking. Plus a few common plain types.
"""
import logging
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    LoggerAdapter = logging.LoggerAdapter[Any]
else:
    LoggerAdapter = logging.LoggerAdapter

# As publicly exposed: we only promise that it is based on one of the built-in loggable classes.
Logger = Union[logging.Logger, LoggerAdapter]
