# pyright: reportUnusedImport=false
# flake8: noqa

from .logging import (
    LoggerBase,
    ConsoleLogger,
    LoglistLogger,
    get_logger,
    set_log_level,
)
from .lazy_dict import LazyLoadingDict
