"""
Call forwarders for librrd.

librrd keeps its error state in a per-thread buffer that the next call on
the same thread overwrites. Every forwarder here therefore follows the same
sequence on the calling thread: clear the error flag, make the native call,
collect the out parameters, and copy the error text (if any) into a Python
string before returning. Forwarders never raise for engine failures; they
return the captured text and leave raising to the high-level API.

Arrays and matrices produced by fetch/xport and the info trees produced by
graph/info stay in engine-owned memory. They are handed out as borrowed
pointers and must be given back with the matching release method.
"""
import ctypes
import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Sequence, Tuple

from .exceptions import ArrayIndexError
from .native import (
    InfoTypes,
    RRDInfoPtr,
    c_char_p_p,
    c_double_p,
    c_time_t,
    encode_optional,
    load_library,
    string_array,
)

logger = logging.getLogger(__name__)

UNKNOWN_ERROR = "unknown librrd error"


@dataclass
class FetchOutput:
    """Out parameters of rrd_fetch_r; ds_namv and data are engine-owned"""
    ret: int
    start: int
    end: int
    step: int
    ds_cnt: int
    ds_namv: Any
    data: Any


@dataclass
class XportOutput:
    """Out parameters of rrd_xport; legend_v and data are engine-owned"""
    ret: int
    xsize: int
    start: int
    end: int
    step: int
    col_cnt: int
    legend_v: Any
    data: Any


class RRDFunc:
    """Forwarders over a loaded librrd"""

    def __init__(self, lib: Any = None):
        """
        Args:
            lib: A librrd handle with signatures declared (see
                 native.load_library). Loaded from the default location when
                 omitted.
        """
        self.lib = lib if lib is not None else load_library()

    def capture_error(self) -> Optional[str]:
        """
        Copy the engine's error text for the current thread.

        Must run right after the native call, before anything else calls into
        librrd on this thread. The engine flag is left as is.

        Returns:
            The error text, or None when the last call succeeded
        """
        if not self.lib.rrd_test_error():
            return None
        raw = self.lib.rrd_get_error()
        if not raw:
            return UNKNOWN_ERROR
        return raw.decode('utf-8', 'replace')

    def _finish(self, operation: str, target: str) -> Optional[str]:
        err = self.capture_error()
        if err is not None:
            logger.debug("rrd %s %s failed: %s", operation, target, err)
        else:
            logger.debug("rrd %s %s ok", operation, target)
        return err

    def create(self, filename: str, step: int, start: int, no_overwrite: bool,
               sources: Sequence[str], template: Optional[str],
               args: Sequence[str]) -> Optional[str]:
        """
        Create a database file with rrd_create_r2.

        Args:
            filename: Database file to create
            step: Base interval in seconds
            start: Timestamp of the last accepted update
            no_overwrite: Refuse to replace an existing file
            sources: Existing database files to prefill data from
            template: Source data-source mapping, or None
            args: DS and RRA definitions

        Returns:
            The captured error text, or None on success
        """
        c_sources = string_array(sources) if sources else None
        c_args = string_array(args)

        self.lib.rrd_clear_error()
        self.lib.rrd_create_r2(
            filename.encode('utf-8'),
            step,
            start,
            1 if no_overwrite else 0,
            c_sources,
            encode_optional(template),
            len(args),
            c_args,
        )
        return self._finish('create', filename)

    def update(self, filename: str, template: Optional[str],
               args: Sequence[str]) -> Optional[str]:
        """Feed update strings to rrd_update_r. Returns the captured error text."""
        c_args = string_array(args)

        self.lib.rrd_clear_error()
        self.lib.rrd_update_r(
            filename.encode('utf-8'),
            encode_optional(template),
            len(args),
            c_args,
        )
        return self._finish('update', filename)

    def graph(self, args: Sequence[str]) -> Tuple[Any, Optional[str]]:
        """
        Render a graph with rrd_graph_v.

        args is the complete argument vector, program name first. The returned
        info tree is NULL when the engine fails.
        """
        c_args = string_array(args)

        self.lib.rrd_clear_error()
        handle = self.lib.rrd_graph_v(len(args), c_args)
        return handle, self._finish('graph', args[1] if len(args) > 1 else '')

    def info(self, filename: str) -> Tuple[Any, Optional[str]]:
        """Read the header of a database with rrd_info_r"""
        self.lib.rrd_clear_error()
        handle = self.lib.rrd_info_r(filename.encode('utf-8'))
        return handle, self._finish('info', filename)

    def fetch(self, filename: str, cf: str, start: int, end: int,
              step: int) -> Tuple[FetchOutput, Optional[str]]:
        """
        Read consolidated data with rrd_fetch_r.

        start, end and step are in-out: the engine aligns them to what it
        actually has stored and the adjusted values are returned unchanged.
        """
        c_start = c_time_t(start)
        c_end = c_time_t(end)
        c_step = ctypes.c_ulong(step)
        ds_cnt = ctypes.c_ulong(0)
        ds_namv = c_char_p_p()
        data = c_double_p()

        self.lib.rrd_clear_error()
        ret = self.lib.rrd_fetch_r(
            filename.encode('utf-8'),
            cf.encode('utf-8'),
            ctypes.pointer(c_start),
            ctypes.pointer(c_end),
            ctypes.pointer(c_step),
            ctypes.pointer(ds_cnt),
            ctypes.pointer(ds_namv),
            ctypes.pointer(data),
        )
        err = self._finish('fetch', filename)

        output = FetchOutput(
            ret=ret,
            start=c_start.value,
            end=c_end.value,
            step=c_step.value,
            ds_cnt=ds_cnt.value,
            ds_namv=ds_namv,
            data=data,
        )
        return output, err

    def xport(self, args: Sequence[str], xsize: int, start: int, end: int,
              step: int) -> Tuple[XportOutput, Optional[str]]:
        """
        Export data with rrd_xport.

        args is the complete argument vector, program name first. start, end
        and step are in-out like in fetch().
        """
        c_args = string_array(args)
        c_xsize = ctypes.c_int(xsize)
        c_start = c_time_t(start)
        c_end = c_time_t(end)
        c_step = ctypes.c_ulong(step)
        col_cnt = ctypes.c_ulong(0)
        legend_v = c_char_p_p()
        data = c_double_p()

        self.lib.rrd_clear_error()
        ret = self.lib.rrd_xport(
            len(args),
            c_args,
            ctypes.pointer(c_xsize),
            ctypes.pointer(c_start),
            ctypes.pointer(c_end),
            ctypes.pointer(c_step),
            ctypes.pointer(col_cnt),
            ctypes.pointer(legend_v),
            ctypes.pointer(data),
        )
        err = self._finish('xport', ' '.join(args[1:]))

        output = XportOutput(
            ret=ret,
            xsize=c_xsize.value,
            start=c_start.value,
            end=c_end.value,
            step=c_step.value,
            col_cnt=col_cnt.value,
            legend_v=legend_v,
            data=data,
        )
        return output, err

    def free_string_array(self, values: Any, size: int) -> None:
        """Give a char ** array and its strings back to the engine"""
        if not values:
            return
        raw = ctypes.cast(values, ctypes.POINTER(ctypes.c_void_p))
        for i in range(size):
            self.lib.rrd_freemem(raw[i])
        self.lib.rrd_freemem(values)

    def free_values(self, data: Any) -> None:
        """Give a value matrix back to the engine"""
        if data:
            self.lib.rrd_freemem(data)

    def release_fetch(self, output: FetchOutput) -> None:
        self.free_string_array(output.ds_namv, output.ds_cnt)
        self.free_values(output.data)
        output.ds_namv = c_char_p_p()
        output.data = c_double_p()

    def release_xport(self, output: XportOutput) -> None:
        self.free_string_array(output.legend_v, output.col_cnt)
        self.free_values(output.data)
        output.legend_v = c_char_p_p()
        output.data = c_double_p()

    def release_info(self, handle: Any) -> None:
        if handle:
            self.lib.rrd_info_free(handle)


def array_get(values: Any, index: int, size: int) -> str:
    """
    Return element index of a native string array.

    Args:
        values: char ** produced by fetch or xport
        index: Zero-based element index
        size: Element count reported alongside the array

    Raises:
        ArrayIndexError: values is NULL or index is outside [0, size)
    """
    if not values or not 0 <= index < size:
        raise ArrayIndexError(
            f"index {index} out of range for native array of {size} elements")
    return values[index].decode('utf-8', 'replace')


def string_list(values: Any, size: int) -> List[str]:
    """Copy a native string array into a list"""
    return [array_get(values, i, size) for i in range(size)]


def iter_info(handle: Any) -> Iterator[Tuple[str, Any]]:
    """
    Walk an rrd_info_t list and yield (key, value) pairs.

    Values are copied out of engine memory: numbers as int/float, strings as
    str and blobs as bytes.
    """
    node = ctypes.cast(handle, RRDInfoPtr) if handle else None
    while node:
        item = node.contents
        key = item.key.decode('utf-8')
        if item.type == InfoTypes.VAL:
            yield key, item.value.u_val
        elif item.type == InfoTypes.CNT:
            yield key, item.value.u_cnt
        elif item.type == InfoTypes.STR:
            raw = item.value.u_str
            yield key, raw.decode('utf-8', 'replace') if raw is not None else None
        elif item.type == InfoTypes.INT:
            yield key, item.value.u_int
        elif item.type == InfoTypes.BLO:
            blob = item.value.u_blo
            yield key, ctypes.string_at(blob.ptr, blob.size) if blob.ptr else b''
        else:
            logger.debug("skipping info key %s of unknown type %d", key, item.type)
        node = item.next


_engine = None
_engine_lock = threading.Lock()


def get_engine() -> RRDFunc:
    """Process-wide forwarders over the default librrd, loaded on first use"""
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = RRDFunc()
        return _engine


def set_engine(engine: Optional[RRDFunc]) -> None:
    """Replace the process-wide engine; None drops it so the next use reloads"""
    global _engine
    with _engine_lock:
        _engine = engine
