"""
Python API for RRDtool databases on top of the librrd forwarders
"""
import logging
import math
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .exceptions import ArrayIndexError, NativeOperationFailed, ValuesReleased
from .rrdfunc import RRDFunc, get_engine, iter_info, string_list

logger = logging.getLogger(__name__)

TimeLike = Union[datetime, int, float]
StepLike = Union[timedelta, int]

DEFAULT_BORDER = 2
_MIN_INT = -sys.maxsize - 1


def _unix(t: TimeLike) -> int:
    if isinstance(t, datetime):
        return int(t.timestamp())
    return int(t)


def _seconds(step: StepLike) -> int:
    if isinstance(step, timedelta):
        return int(step.total_seconds())
    return int(step)


def _from_unix(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _resolve(engine: Optional[RRDFunc]) -> RRDFunc:
    return engine if engine is not None else get_engine()


def join(args: Iterable[Any]) -> str:
    """Format arguments as a colon separated rrdtool field; datetimes become unix seconds"""
    parts = []
    for a in args:
        if isinstance(a, datetime):
            parts.append(str(_unix(a)))
        else:
            parts.append(str(a))
    return ':'.join(parts)


def _raise_on_error(err: Optional[str]) -> None:
    if err is not None:
        raise NativeOperationFailed(err)


class Creator:
    """Collects DS and RRA definitions for a new database file"""

    def __init__(self, filename: str, start: TimeLike, step: StepLike,
                 engine: Optional[RRDFunc] = None):
        """
        Args:
            filename: Name of the database file
            start: Don't accept any data timed before or at this time
            step: Base interval in seconds with which data will be fed in
            engine: Forwarders to use; the process-wide engine when omitted
        """
        self.filename = filename
        self.start = start
        self.step = step
        self.no_overwrite = False
        self.sources: List[str] = []
        self.template = ''
        self.args: List[str] = []
        self._engine = engine

    def ds(self, name: str, compute: str, *args) -> None:
        """Append a DS definition, e.g. ds("temp", "GAUGE", 600, 0, 100)"""
        self.args.append(f"DS:{name}:{compute}:{join(args)}")

    def rra(self, cf: str, *args) -> None:
        """Append an RRA definition, e.g. rra("AVERAGE", 0.5, 1, 100)"""
        self.args.append(f"RRA:{cf}:{join(args)}")

    def set_source(self, *sources: str) -> None:
        """Prefill the new file from existing database files"""
        self.sources = list(sources)

    def set_template(self, *names: str) -> None:
        self.template = ':'.join(names)

    def set_no_overwrite(self) -> None:
        """Let the engine refuse to replace an existing file"""
        self.no_overwrite = True

    def create(self, overwrite: bool = True) -> None:
        """
        Create the database file.

        Args:
            overwrite: When False the file is created exclusively first and
                       FileExistsError is raised if it already exists. That
                       check replaces the engine one requested by
                       set_no_overwrite(), which would otherwise find the new
                       empty file. Prefer set_no_overwrite() alone.
        """
        if not overwrite:
            with open(self.filename, 'x'):
                pass

        err = _resolve(self._engine).create(
            self.filename,
            _seconds(self.step),
            _unix(self.start),
            self.no_overwrite and overwrite,
            self.sources,
            self.template,
            self.args,
        )
        _raise_on_error(err)


class Updater:
    """Feeds values into an existing database file"""

    def __init__(self, filename: str, engine: Optional[RRDFunc] = None):
        self.filename = filename
        self.template = ''
        self.args: List[str] = []
        self._engine = engine

    def set_template(self, *names: str) -> None:
        self.template = ':'.join(names)

    def cache(self, *args) -> None:
        """Buffer an update for a later update() call"""
        self.args.append(join(args))

    def update(self, *args) -> None:
        """
        Save data in the database.

        With arguments the update is written immediately. Without arguments
        every update buffered by cache() is written in one call; the buffer is
        emptied even if the engine rejects it.
        """
        if args:
            self._update([join(args)])
        elif self.args:
            pending, self.args = self.args, []
            self._update(pending)

    def _update(self, args: Sequence[str]) -> None:
        err = _resolve(self._engine).update(self.filename, self.template, args)
        _raise_on_error(err)


def _parse_info_key(key: str) -> Tuple[str, str, int]:
    """
    Split 'ds[temp].type' into ('ds.type', 'temp', -1) and 'rra[0].cf' into
    ('rra.cf', '0', 0). Only the first bracket is considered.
    """
    o = key.find('[')
    if o == -1:
        return key, '', -1
    c = key.find(']', o + 1)
    if c == -1:
        return key, '', -1
    name = key[:o] + key[c + 1:]
    sub = key[o + 1:c]
    if name.startswith('ds.'):
        return name, sub, -1
    if sub.isdigit():
        return name, sub, int(sub)
    return name, sub, -1


def parse_info(items: Iterable[Tuple[str, Any]]) -> Dict[str, Any]:
    """
    Fold (key, value) pairs from an info tree into a dict.

    Indexed keys become lists ('rra[1].cf' -> info['rra.cf'][1]), keys with a
    name in brackets become dicts ('ds[temp].type' -> info['ds.type']['temp']).
    """
    result: Dict[str, Any] = {}
    for key, value in items:
        name, sub, index = _parse_info_key(key)
        if index != -1:
            values = result.get(name)
            if not isinstance(values, list):
                values = []
            if len(values) < index + 1:
                values.extend([None] * (index + 1 - len(values)))
            values[index] = value
            result[name] = values
        elif sub:
            mapping = result.get(name)
            if not isinstance(mapping, dict):
                mapping = {}
            mapping[sub] = value
            result[name] = mapping
        else:
            result[name] = value
    return result


def info(filename: str, engine: Optional[RRDFunc] = None) -> Dict[str, Any]:
    """
    Read the header of a database file.

    Returns:
        Dictionary built by parse_info()
    """
    engine = _resolve(engine)
    handle, err = engine.info(filename)
    try:
        _raise_on_error(err)
        return parse_info(iter_info(handle))
    finally:
        engine.release_info(handle)


class GraphInfo:
    """Summary the engine reports for a rendered graph"""

    def __init__(self, print_: Optional[List[str]] = None, width: int = 0,
                 height: int = 0, ymin: float = 0.0, ymax: float = 0.0):
        self.print_ = print_ if print_ is not None else []
        self.width = width
        self.height = height
        self.ymin = ymin
        self.ymax = ymax

    def __repr__(self):
        return (f"GraphInfo(print_={self.print_!r}, width={self.width}, "
                f"height={self.height}, ymin={self.ymin}, ymax={self.ymax})")

    @classmethod
    def from_info(cls, inf: Dict[str, Any]) -> Tuple['GraphInfo', bytes]:
        gi = cls()
        if 'image_info' in inf:
            gi.print_.append(inf['image_info'])
        for line in inf.get('print', []):
            if line is not None:
                gi.print_.append(line)
        gi.width = inf.get('image_width', 0)
        gi.height = inf.get('image_height', 0)
        gi.ymin = inf.get('value_min', 0.0)
        gi.ymax = inf.get('value_max', 0.0)
        return gi, inf.get('image', b'')


class _Commands:
    """Builds DEF/CDEF/... directives shared by graphs and exports"""

    def __init__(self):
        self.args: List[str] = []

    def _push(self, cmd: str, options: Sequence[str] = ()) -> None:
        if options:
            cmd += ':' + ':'.join(options)
        self.args.append(cmd)

    def def_(self, vname: str, rrdfile: str, dsname: str, cf: str, *options: str) -> None:
        self._push(f"DEF:{vname}={rrdfile}:{dsname}:{cf}", options)

    def cdef(self, vname: str, rpn: str) -> None:
        self._push(f"CDEF:{vname}={rpn}")


class Grapher(_Commands):
    """Collects graph options and elements for rrd_graph_v"""

    def __init__(self, engine: Optional[RRDFunc] = None):
        super().__init__()
        self.title = ''
        self.vlabel = ''
        self.width = 0
        self.height = 0
        self.border_width = DEFAULT_BORDER
        self.upper_limit = -sys.float_info.max
        self.lower_limit = sys.float_info.max
        self.rigid = False
        self.alt_autoscale = False
        self.alt_autoscale_min = False
        self.alt_autoscale_max = False
        self.no_grid_fit = False
        self.logarithmic = False
        self.units_exponent = _MIN_INT
        self.units_length = 0
        self.right_axis_scale = 0.0
        self.right_axis_shift = 0.0
        self.right_axis_label = ''
        self.no_legend = False
        self.lazy = False
        self.colors: Dict[str, str] = {}
        self.slope_mode = False
        self.watermark = ''
        self.base = 0
        self.image_format = ''
        self.interlaced = False
        self.daemon = ''
        self._engine = engine

    def set_title(self, title: str) -> None:
        self.title = title

    def set_vlabel(self, vlabel: str) -> None:
        self.vlabel = vlabel

    def set_size(self, width: int, height: int) -> None:
        self.width = width
        self.height = height

    def set_border(self, width: int) -> None:
        self.border_width = width

    def set_lower_limit(self, limit: float) -> None:
        self.lower_limit = limit

    def set_upper_limit(self, limit: float) -> None:
        self.upper_limit = limit

    def set_rigid(self) -> None:
        self.rigid = True

    def set_alt_autoscale(self) -> None:
        self.alt_autoscale = True

    def set_alt_autoscale_min(self) -> None:
        self.alt_autoscale_min = True

    def set_alt_autoscale_max(self) -> None:
        self.alt_autoscale_max = True

    def set_no_grid_fit(self) -> None:
        self.no_grid_fit = True

    def set_logarithmic(self) -> None:
        self.logarithmic = True

    def set_units_exponent(self, e: int) -> None:
        self.units_exponent = e

    def set_units_length(self, length: int) -> None:
        self.units_length = length

    def set_right_axis(self, scale: float, shift: float) -> None:
        self.right_axis_scale = scale
        self.right_axis_shift = shift

    def set_right_axis_label(self, label: str) -> None:
        self.right_axis_label = label

    def set_no_legend(self) -> None:
        self.no_legend = True

    def set_lazy(self) -> None:
        self.lazy = True

    def set_color(self, colortag: str, color: str) -> None:
        self.colors[colortag] = color

    def set_slope_mode(self) -> None:
        self.slope_mode = True

    def set_image_format(self, image_format: str) -> None:
        self.image_format = image_format

    def set_interlaced(self) -> None:
        self.interlaced = True

    def set_base(self, base: int) -> None:
        self.base = base

    def set_watermark(self, watermark: str) -> None:
        self.watermark = watermark

    def set_daemon(self, daemon: str) -> None:
        self.daemon = daemon

    def add_options(self, *options: str) -> None:
        """Append raw command line options"""
        self.args.extend(options)

    def vdef(self, vname: str, rpn: str) -> None:
        self._push(f"VDEF:{vname}={rpn}")

    def print_(self, vname: str, fmt: str) -> None:
        self._push(f"PRINT:{vname}:{fmt}")

    def print_t(self, vname: str, fmt: str) -> None:
        self._push(f"PRINT:{vname}:{fmt}:strftime")

    def gprint(self, vname: str, fmt: str) -> None:
        self._push(f"GPRINT:{vname}:{fmt}")

    def gprint_t(self, vname: str, fmt: str) -> None:
        self._push(f"GPRINT:{vname}:{fmt}:strftime")

    def comment(self, s: str) -> None:
        self._push(f"COMMENT:{s}")

    def vrule(self, t: TimeLike, color: str, *options: str) -> None:
        if isinstance(t, datetime):
            t = _unix(t)
        self._push(f"VRULE:{t}#{color}", options)

    def hrule(self, value: str, color: str, *options: str) -> None:
        self._push(f"HRULE:{value}#{color}", options)

    def line(self, width: float, value: str, color: str = '', *options: str) -> None:
        cmd = f"LINE{width:f}:{value}"
        if color:
            cmd += '#' + color
        self._push(cmd, options)

    def area(self, value: str, color: str = '', *options: str) -> None:
        cmd = f"AREA:{value}"
        if color:
            cmd += '#' + color
        self._push(cmd, options)

    def tick(self, vname: str, color: str = '', *options: str) -> None:
        cmd = f"TICK:{vname}"
        if color:
            cmd += '#' + color
        self._push(cmd, options)

    def shift(self, vname: str, offset: Union[timedelta, int, str]) -> None:
        if isinstance(offset, timedelta):
            offset = math.floor(offset.total_seconds() + 0.5)
        self._push(f"SHIFT:{vname}:{offset}")

    def text_align(self, align: str) -> None:
        self._push(f"TEXTALIGN:{align}")

    def make_args(self, filename: str, start: TimeLike, end: TimeLike) -> List[str]:
        """Build the rrd_graph_v argument vector, program name first"""
        args = ['graph', filename, '-s', str(_unix(start)), '-e', str(_unix(end))]
        if self.title:
            args += ['-t', self.title]
        if self.vlabel:
            args += ['-v', self.vlabel]
        if self.width:
            args += ['-w', str(self.width)]
        if self.height:
            args += ['-h', str(self.height)]
        if self.border_width != DEFAULT_BORDER:
            args += ['--border', str(self.border_width)]
        if self.upper_limit != -sys.float_info.max:
            args += ['-u', str(self.upper_limit)]
        if self.lower_limit != sys.float_info.max:
            args += ['-l', str(self.lower_limit)]
        if self.rigid:
            args.append('-r')
        if self.alt_autoscale:
            args.append('-A')
        if self.alt_autoscale_min:
            args.append('-J')
        if self.alt_autoscale_max:
            args.append('-M')
        if self.no_grid_fit:
            args.append('-N')
        if self.logarithmic:
            args.append('-o')
        if self.units_exponent != _MIN_INT:
            args += ['-X', str(self.units_exponent)]
        if self.units_length:
            args += ['-L', str(self.units_length)]
        if self.right_axis_scale:
            args += ['--right-axis', f"{self.right_axis_scale}:{self.right_axis_shift}"]
        if self.right_axis_label:
            args += ['--right-axis-label', self.right_axis_label]
        if self.no_legend:
            args.append('-g')
        if self.lazy:
            args.append('-z')
        for tag, color in self.colors.items():
            args += ['-c', f"{tag}#{color}"]
        if self.slope_mode:
            args.append('-E')
        if self.watermark:
            args += ['-W', self.watermark]
        if self.base:
            args += ['-b', str(self.base)]
        if self.image_format:
            args += ['-a', self.image_format]
        if self.interlaced:
            args.append('-i')
        if self.daemon:
            args += ['-d', self.daemon]
        return args + self.args

    def _graph(self, filename: str, start: TimeLike, end: TimeLike) -> Tuple[GraphInfo, bytes]:
        engine = _resolve(self._engine)
        handle, err = engine.graph(self.make_args(filename, start, end))
        try:
            _raise_on_error(err)
            return GraphInfo.from_info(parse_info(iter_info(handle)))
        finally:
            engine.release_info(handle)

    def graph(self, start: TimeLike, end: TimeLike) -> Tuple[GraphInfo, bytes]:
        """Render in memory; returns the graph info and the image bytes"""
        return self._graph('-', start, end)

    def save_graph(self, filename: str, start: TimeLike, end: TimeLike) -> GraphInfo:
        """Render the image to filename"""
        gi, _ = self._graph(filename, start, end)
        return gi


class _BorrowedValues:
    """
    Row-major value matrix that still lives in engine memory.

    Reads go straight to the engine's buffer until free_values() hands it
    back; afterwards every read raises ValuesReleased.
    """

    def __init__(self, start: int, end: int, step: int, columns: int,
                 data: Any, engine: RRDFunc):
        self.start = _from_unix(start)
        self.end = _from_unix(end)
        self.step = timedelta(seconds=step)
        self.row_cnt = (end - start) // step if step else 0
        self._columns = columns
        self._data = data if data else None
        self._engine = engine

    def _check(self) -> None:
        if self._data is None:
            raise ValuesReleased("values have been released")

    def value_at(self, column: int, row: int) -> float:
        self._check()
        if not 0 <= column < self._columns or not 0 <= row < self.row_cnt:
            raise ArrayIndexError(
                f"value ({column}, {row}) out of range for "
                f"{self._columns}x{self.row_cnt} matrix")
        return self._data[self._columns * row + column]

    def values(self) -> List[float]:
        """Copy the whole matrix out of engine memory"""
        self._check()
        n = self._columns * self.row_cnt
        return self._data[:n] if n else []

    def timestamp_at(self, row: int) -> datetime:
        """Time of the sample in the given row"""
        return self.start + self.step * (row + 1)

    def free_values(self) -> None:
        if self._data is not None:
            self._engine.free_values(self._data)
            self._data = None

    @property
    def released(self) -> bool:
        return self._data is None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.free_values()


class FetchResult(_BorrowedValues):
    """Data read by fetch(); call free_values() or use it as a context manager"""

    def __init__(self, filename: str, cf: str, ds_names: List[str], start: int,
                 end: int, step: int, data: Any, engine: RRDFunc):
        super().__init__(start, end, step, len(ds_names), data, engine)
        self.filename = filename
        self.cf = cf
        self.ds_names = ds_names


class XportResult(_BorrowedValues):
    """Data read by Exporter.xport(); call free_values() or use it as a context manager"""

    def __init__(self, legends: List[str], start: int, end: int, step: int,
                 data: Any, engine: RRDFunc):
        super().__init__(start, end, step, len(legends), data, engine)
        self.legends = legends


def _take_names(engine: RRDFunc, names: Any, count: int, data: Any,
                err: Optional[str]) -> List[str]:
    """
    Copy a name or legend array and give it back to the engine.

    The value matrix is freed as well whenever no result will own it: on a
    captured error or when copying the names fails.
    """
    try:
        _raise_on_error(err)
        return string_list(names, count)
    except BaseException:
        engine.free_values(data)
        raise
    finally:
        engine.free_string_array(names, count)


def fetch(filename: str, cf: str, start: TimeLike, end: TimeLike, step: StepLike,
          engine: Optional[RRDFunc] = None) -> FetchResult:
    """
    Fetch consolidated data from a database file.

    Args:
        filename: Database file
        cf: Consolidation function, e.g. "AVERAGE"
        start: Start of the requested range
        end: End of the requested range
        step: Requested resolution in seconds

    Returns:
        FetchResult with the range and step as adjusted by the engine
    """
    engine = _resolve(engine)
    output, err = engine.fetch(filename, cf, _unix(start), _unix(end), _seconds(step))
    ds_names = _take_names(engine, output.ds_namv, output.ds_cnt, output.data, err)

    logger.debug("fetched %s %s: %d ds, range %d-%d step %d", filename, cf,
                 len(ds_names), output.start, output.end, output.step)
    return FetchResult(filename, cf, ds_names, output.start, output.end,
                       output.step, output.data, engine)


class Exporter(_Commands):
    """Collects DEF/CDEF/XPORT directives for rrd_xport"""

    def __init__(self, engine: Optional[RRDFunc] = None):
        super().__init__()
        self.max_rows = 0
        self.daemon = ''
        self._engine = engine

    def set_max_rows(self, max_rows: int) -> None:
        self.max_rows = max_rows

    def set_daemon(self, daemon: str) -> None:
        self.daemon = daemon

    def xport_def(self, vname: str, label: str) -> None:
        self._push(f"XPORT:{vname}:{label}")

    def make_args(self, start: TimeLike, end: TimeLike, step: StepLike) -> List[str]:
        """Build the rrd_xport argument vector, program name first"""
        args = [
            'xport',
            '-s', str(_unix(start)),
            '-e', str(_unix(end)),
            '--step', str(_seconds(step)),
        ]
        if self.max_rows:
            args += ['-m', str(self.max_rows)]
        if self.daemon:
            args += ['-d', self.daemon]
        return args + self.args

    def xport(self, start: TimeLike, end: TimeLike, step: StepLike) -> XportResult:
        """Run the export; the result holds the engine's adjusted range and step"""
        engine = _resolve(self._engine)
        output, err = engine.xport(self.make_args(start, end, step), 0,
                                   _unix(start), _unix(end), _seconds(step))
        legends = _take_names(engine, output.legend_v, output.col_cnt, output.data, err)

        return XportResult(legends, output.start, output.end, output.step,
                           output.data, engine)
