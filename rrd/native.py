"""
ctypes declarations for librrd

Locates the shared library, mirrors the rrd_info_t structures and declares
the argument and return types of every function the bindings call.
"""
import ctypes
import ctypes.util
import logging
import os
from typing import Iterable, Optional

from .exceptions import LibraryNotFound

logger = logging.getLogger(__name__)

# ctypes only ships c_time_t from Python 3.12 on
c_time_t = getattr(ctypes, "c_time_t", ctypes.c_long)

c_char_p_p = ctypes.POINTER(ctypes.c_char_p)
c_double_p = ctypes.POINTER(ctypes.c_double)


class InfoTypes:
    """rrd_info_type_t constants matching rrd.h"""
    VAL = 0  # RD_I_VAL, double
    CNT = 1  # RD_I_CNT, unsigned long
    STR = 2  # RD_I_STR, char *
    INT = 3  # RD_I_INT, int
    BLO = 4  # RD_I_BLO, rrd_blob_t


class RRDBlob(ctypes.Structure):
    """C-compatible rrd_blob_t"""
    _fields_ = [
        ("size", ctypes.c_ulong),
        ("ptr", ctypes.POINTER(ctypes.c_ubyte)),
    ]


class RRDInfoValue(ctypes.Union):
    """C-compatible rrd_infoval_t"""
    _fields_ = [
        ("u_cnt", ctypes.c_ulong),
        ("u_val", ctypes.c_double),
        ("u_str", ctypes.c_char_p),
        ("u_int", ctypes.c_int),
        ("u_blo", RRDBlob),
    ]


class RRDInfo(ctypes.Structure):
    """C-compatible rrd_info_t, a singly linked list of key/value records"""


RRDInfo._fields_ = [
    ("key", ctypes.c_char_p),
    ("type", ctypes.c_int),
    ("value", RRDInfoValue),
    ("next", ctypes.POINTER(RRDInfo)),
]

RRDInfoPtr = ctypes.POINTER(RRDInfo)


def find_library() -> Optional[str]:
    """Find the librrd shared library"""
    possible_paths = [
        './librrd.so',
        './librrd.dylib',
        '/usr/lib/x86_64-linux-gnu/librrd.so.8',
        '/usr/lib/aarch64-linux-gnu/librrd.so.8',
        '/usr/lib64/librrd.so.8',
        '/usr/lib/librrd.so.8',
        '/usr/local/lib/librrd.so',
        '/usr/local/lib/librrd.dylib',
        '/opt/homebrew/lib/librrd.dylib',
    ]

    env_path = os.environ.get('RRD_LIB_PATH')
    if env_path:
        possible_paths.insert(0, env_path)

    for path in possible_paths:
        if os.path.exists(path):
            return os.path.abspath(path)

    # Fallback to system search
    return ctypes.util.find_library('rrd')


def define_function_signatures(lib: ctypes.CDLL) -> ctypes.CDLL:
    """Define argument and return types for the librrd functions we call"""
    lib.rrd_clear_error.argtypes = []
    lib.rrd_clear_error.restype = None

    lib.rrd_test_error.argtypes = []
    lib.rrd_test_error.restype = ctypes.c_int

    lib.rrd_get_error.argtypes = []
    lib.rrd_get_error.restype = ctypes.c_char_p

    lib.rrd_create_r2.argtypes = [
        ctypes.c_char_p,          # filename
        ctypes.c_ulong,           # pdp_step
        c_time_t,                 # last_up
        ctypes.c_int,             # no_overwrite
        c_char_p_p,               # sources (NULL terminated)
        ctypes.c_char_p,          # template
        ctypes.c_int,             # argc
        c_char_p_p,               # argv
    ]
    lib.rrd_create_r2.restype = ctypes.c_int

    lib.rrd_update_r.argtypes = [
        ctypes.c_char_p,          # filename
        ctypes.c_char_p,          # template
        ctypes.c_int,             # argc
        c_char_p_p,               # argv
    ]
    lib.rrd_update_r.restype = ctypes.c_int

    lib.rrd_graph_v.argtypes = [ctypes.c_int, c_char_p_p]
    lib.rrd_graph_v.restype = RRDInfoPtr

    lib.rrd_info_r.argtypes = [ctypes.c_char_p]
    lib.rrd_info_r.restype = RRDInfoPtr

    lib.rrd_fetch_r.argtypes = [
        ctypes.c_char_p,                    # filename
        ctypes.c_char_p,                    # cf
        ctypes.POINTER(c_time_t),           # start
        ctypes.POINTER(c_time_t),           # end
        ctypes.POINTER(ctypes.c_ulong),     # step
        ctypes.POINTER(ctypes.c_ulong),     # ds_cnt
        ctypes.POINTER(c_char_p_p),         # ds_namv
        ctypes.POINTER(c_double_p),         # data
    ]
    lib.rrd_fetch_r.restype = ctypes.c_int

    lib.rrd_xport.argtypes = [
        ctypes.c_int,                       # argc
        c_char_p_p,                         # argv
        ctypes.POINTER(ctypes.c_int),       # xsize
        ctypes.POINTER(c_time_t),           # start
        ctypes.POINTER(c_time_t),           # end
        ctypes.POINTER(ctypes.c_ulong),     # step
        ctypes.POINTER(ctypes.c_ulong),     # col_cnt
        ctypes.POINTER(c_char_p_p),         # legend_v
        ctypes.POINTER(c_double_p),         # data
    ]
    lib.rrd_xport.restype = ctypes.c_int

    lib.rrd_info_free.argtypes = [RRDInfoPtr]
    lib.rrd_info_free.restype = None

    lib.rrd_freemem.argtypes = [ctypes.c_void_p]
    lib.rrd_freemem.restype = None

    return lib


def load_library(path: Optional[str] = None) -> ctypes.CDLL:
    """
    Load librrd and declare its function signatures.

    Args:
        path: Explicit library path; discovered with find_library() when omitted

    Returns:
        The configured CDLL
    """
    lib_path = path or find_library()
    if not lib_path:
        raise LibraryNotFound(
            "librrd not found. Install rrdtool or set RRD_LIB_PATH")

    logger.debug("loading librrd from %s", lib_path)
    try:
        lib = ctypes.CDLL(lib_path)
    except OSError as e:
        raise LibraryNotFound(f"Failed to load librrd from {lib_path}: {e}") from e
    return define_function_signatures(lib)


def string_array(items: Iterable[str], null_terminated: bool = True):
    """
    Build a C char * vector from Python strings.

    The returned array owns the encoded bytes and must stay referenced for as
    long as the engine may read it.
    """
    encoded = [item.encode('utf-8') for item in items]
    if null_terminated:
        encoded.append(None)
    return (ctypes.c_char_p * len(encoded))(*encoded)


def encode_optional(value: Optional[str]) -> Optional[bytes]:
    """Encode a string argument, mapping '' and None to NULL"""
    if not value:
        return None
    return value.encode('utf-8')
