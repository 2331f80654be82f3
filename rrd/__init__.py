"""
RRD Python Bindings - round robin database access through librrd

This package provides Python bindings for RRDtool using ctypes to interface
with the C API of librrd.
"""
import logging

from .exceptions import (
    ArrayIndexError,
    LibraryNotFound,
    NativeOperationFailed,
    RRDError,
    ValuesReleased,
)
from .rrd_python import (
    Creator,
    Exporter,
    FetchResult,
    GraphInfo,
    Grapher,
    Updater,
    XportResult,
    fetch,
    info,
    join,
)
from .rrdfunc import RRDFunc, array_get, get_engine, set_engine

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    'Creator',
    'Updater',
    'Grapher',
    'GraphInfo',
    'Exporter',
    'FetchResult',
    'XportResult',
    'fetch',
    'info',
    'join',
    'RRDFunc',
    'array_get',
    'get_engine',
    'set_engine',
    'RRDError',
    'NativeOperationFailed',
    'ArrayIndexError',
    'LibraryNotFound',
    'ValuesReleased',
]
