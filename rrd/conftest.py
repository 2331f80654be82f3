"""
Fixtures for the RRD binding tests.

FakeRRDLib stands in for librrd: it exposes the same function names, keeps
its error text per thread like librrd does (and, like librrd, never clears
it on its own), writes through the out pointers it is given and tracks every
buffer it hands out so tests can check that all of them come back through
rrd_freemem / rrd_info_free.
"""
import ctypes
import math
import os
import threading

import pytest

from rrd.native import RRDInfo, RRDInfoPtr, InfoTypes, c_char_p_p, c_double_p
from rrd.rrdfunc import RRDFunc

T0 = 1700000100  # multiple of 300
CONSOLIDATION_FUNCTIONS = ("AVERAGE", "MIN", "MAX", "LAST")


def _address(ptr):
    if ptr is None or isinstance(ptr, int):
        return ptr
    return ctypes.cast(ptr, ctypes.c_void_p).value


class FakeRRDLib:
    """In-memory stand-in for librrd"""

    def __init__(self):
        self._local = threading.local()
        self.files = {}
        self.calls = []
        self.allocated = set()
        self.freed = []
        self.info_allocated = set()
        self._keep = []

    # error state

    def _set_error(self, message):
        self._local.error = message.encode('utf-8')

    def rrd_clear_error(self):
        self.calls.append('rrd_clear_error')
        self._local.error = b''

    def rrd_test_error(self):
        self.calls.append('rrd_test_error')
        return 1 if getattr(self._local, 'error', b'') else 0

    def rrd_get_error(self):
        self.calls.append('rrd_get_error')
        return getattr(self._local, 'error', b'')

    # memory

    def rrd_freemem(self, ptr):
        addr = _address(ptr)
        if addr is None:
            return
        self.freed.append(addr)
        self.allocated.discard(addr)

    def rrd_info_free(self, handle):
        self.calls.append('rrd_info_free')
        self.info_allocated.discard(ctypes.addressof(handle.contents))

    def _string_array(self, items):
        arr = (ctypes.c_char_p * len(items))(*[s.encode('utf-8') for s in items])
        self._keep.append(arr)
        raw = ctypes.cast(arr, ctypes.POINTER(ctypes.c_void_p))
        self.allocated.add(ctypes.addressof(arr))
        for i in range(len(items)):
            self.allocated.add(raw[i])
        return ctypes.cast(arr, c_char_p_p)

    def _double_array(self, values):
        arr = (ctypes.c_double * max(len(values), 1))(*values)
        self._keep.append(arr)
        self.allocated.add(ctypes.addressof(arr))
        return ctypes.cast(arr, c_double_p)

    def _info_list(self, items):
        nodes = (RRDInfo * len(items))()
        self._keep.append(nodes)
        for i, (key, kind, value) in enumerate(items):
            node = nodes[i]
            key_bytes = key.encode('utf-8')
            self._keep.append(key_bytes)
            node.key = key_bytes
            node.type = kind
            if kind == InfoTypes.VAL:
                node.value.u_val = value
            elif kind == InfoTypes.CNT:
                node.value.u_cnt = value
            elif kind == InfoTypes.INT:
                node.value.u_int = value
            elif kind == InfoTypes.STR:
                raw = value.encode('utf-8')
                self._keep.append(raw)
                node.value.u_str = raw
            elif kind == InfoTypes.BLO:
                buf = (ctypes.c_ubyte * len(value)).from_buffer_copy(value)
                self._keep.append(buf)
                node.value.u_blo.size = len(value)
                node.value.u_blo.ptr = ctypes.cast(buf, ctypes.POINTER(ctypes.c_ubyte))
            if i + 1 < len(items):
                node.next = ctypes.pointer(nodes[i + 1])
        self.info_allocated.add(ctypes.addressof(nodes[0]))
        return ctypes.pointer(nodes[0])

    @staticmethod
    def _args(argc, argv):
        return [argv[i].decode('utf-8') for i in range(argc)]

    def _missing(self, filename):
        self._set_error(f"opening '{filename}': No such file or directory")

    # operations

    def rrd_create_r2(self, filename, step, start, no_overwrite, sources,
                      template, argc, argv):
        self.calls.append('rrd_create_r2')
        name = filename.decode('utf-8')
        args = self._args(argc, argv)
        if step < 1:
            self._set_error("step size should be no less than one second")
            return -1
        if no_overwrite and (name in self.files or os.path.exists(name)):
            self._set_error(f"creating '{name}': File exists")
            return -1
        ds = [a.split(':')[1] for a in args if a.startswith('DS:')]
        rras = [a.split(':')[1] for a in args if a.startswith('RRA:')]
        if not ds:
            self._set_error("you must define at least one Data Source")
            return -1
        if not rras:
            self._set_error("you must define at least one Round Robin Archive")
            return -1
        self.files[name] = {
            'step': step, 'last': start, 'ds': ds, 'rras': rras, 'rows': {},
        }
        with open(name, 'wb'):
            pass
        return 0

    def rrd_update_r(self, filename, template, argc, argv):
        self.calls.append('rrd_update_r')
        name = filename.decode('utf-8')
        rrd = self.files.get(name)
        if rrd is None:
            self._missing(name)
            return -1
        order = template.decode('utf-8').split(':') if template else rrd['ds']
        for arg in self._args(argc, argv):
            fields = arg.split(':')
            ts = int(fields[0])
            if ts <= rrd['last']:
                self._set_error(
                    f"{name}: illegal attempt to update using time {ts} when last "
                    f"update time is {rrd['last']} (minimum one second step)")
                return -1
            if len(fields) - 1 != len(order):
                self._set_error(f"{name}: expected {len(order)} data source readings "
                                f"(got {len(fields) - 1}) from {arg}")
                return -1
            slot = ts + (-ts % rrd['step'])
            row = rrd['rows'].setdefault(slot, {})
            for ds_name, value in zip(order, fields[1:]):
                row[ds_name] = math.nan if value == 'U' else float(value)
            rrd['last'] = ts
        return 0

    def rrd_info_r(self, filename):
        self.calls.append('rrd_info_r')
        name = filename.decode('utf-8')
        rrd = self.files.get(name)
        if rrd is None:
            self._missing(name)
            return RRDInfoPtr()
        items = [
            ('filename', InfoTypes.STR, name),
            ('rrd_version', InfoTypes.STR, '0003'),
            ('step', InfoTypes.CNT, rrd['step']),
            ('last_update', InfoTypes.CNT, rrd['last']),
            ('header_size', InfoTypes.CNT, 1000),
        ]
        for i, ds_name in enumerate(rrd['ds']):
            items.append((f'ds[{ds_name}].index', InfoTypes.CNT, i))
            items.append((f'ds[{ds_name}].type', InfoTypes.STR, 'GAUGE'))
        for i, cf in enumerate(rrd['rras']):
            items.append((f'rra[{i}].cf', InfoTypes.STR, cf))
            items.append((f'rra[{i}].xff', InfoTypes.VAL, 0.5))
            items.append((f'rra[{i}].cdp_prep[0].unknown_datapoints', InfoTypes.INT, 0))
        return self._info_list(items)

    def rrd_graph_v(self, argc, argv):
        self.calls.append('rrd_graph_v')
        args = self._args(argc, argv)
        filename = args[1]
        prints = []
        for arg in args[2:]:
            if arg.startswith('DEF:'):
                rrdfile = arg.split('=', 1)[1].split(':')[0]
                if rrdfile not in self.files:
                    self._missing(rrdfile)
                    return RRDInfoPtr()
            elif arg.startswith('PRINT:'):
                prints.append(f"{arg.split(':')[1]} = 21.50")
        image = b'\x89PNG\r\n\x1a\nfake'
        items = [
            ('graph_width', InfoTypes.CNT, 400),
            ('graph_height', InfoTypes.CNT, 100),
            ('image_width', InfoTypes.CNT, 497),
            ('image_height', InfoTypes.CNT, 162),
            ('value_min', InfoTypes.VAL, 0.0),
            ('value_max', InfoTypes.VAL, 25.0),
        ]
        for i, line in enumerate(prints):
            items.append((f'print[{i}]', InfoTypes.STR, line))
        if filename == '-':
            items.append(('image', InfoTypes.BLO, image))
        else:
            with open(filename, 'wb') as f:
                f.write(image)
        return self._info_list(items)

    def _select(self, rrd, start, end, step):
        step = max(step, rrd['step'])
        start -= start % step
        # librrd moves end one step on even when it is already aligned
        end += step - end % step
        return start, end, step

    def _rows(self, rrd, ds_names, start, end, step):
        values = []
        # librrd hands out one row more than (end - start) / step
        for i in range((end - start) // step + 1):
            row = rrd['rows'].get(start + (i + 1) * step, {})
            values.extend(row.get(ds_name, math.nan) for ds_name in ds_names)
        return values

    def rrd_fetch_r(self, filename, cf, start, end, step, ds_cnt, ds_namv, data):
        self.calls.append('rrd_fetch_r')
        name = filename.decode('utf-8')
        rrd = self.files.get(name)
        if rrd is None:
            self._missing(name)
            return -1
        cf_name = cf.decode('utf-8')
        if cf_name not in CONSOLIDATION_FUNCTIONS:
            self._set_error(f"unknown consolidation function '{cf_name}'")
            return -1
        s, e, st = self._select(rrd, start[0], end[0], step[0])
        start[0], end[0], step[0] = s, e, st
        ds_cnt[0] = len(rrd['ds'])
        ds_namv[0] = self._string_array(rrd['ds'])
        data[0] = self._double_array(self._rows(rrd, rrd['ds'], s, e, st))
        return 0

    def rrd_xport(self, argc, argv, xsize, start, end, step, col_cnt, legend_v, data):
        self.calls.append('rrd_xport')
        args = self._args(argc, argv)
        s, e, st = start[0], end[0], step[0]
        defs, xports = {}, []
        i = 1
        while i < len(args):
            arg = args[i]
            if arg in ('-s', '-e', '--step', '-m', '-d'):
                value = args[i + 1]
                if arg == '-s':
                    s = int(value)
                elif arg == '-e':
                    e = int(value)
                elif arg == '--step':
                    st = int(value)
                i += 2
                continue
            if arg.startswith('DEF:'):
                vname, rest = arg[4:].split('=', 1)
                rrdfile, ds_name, _cf = rest.split(':')[:3]
                if rrdfile not in self.files:
                    self._missing(rrdfile)
                    return -1
                defs[vname] = (rrdfile, ds_name)
            elif arg.startswith('XPORT:'):
                _, vname, label = arg.split(':', 2)
                xports.append((vname, label))
            i += 1
        if not xports:
            self._set_error("no XPORT found, nothing to do")
            return -1
        files = [self.files[defs[vname][0]] for vname, _ in xports]
        s, e, st = self._select(files[0], s, e, st)
        values = []
        for r in range((e - s) // st + 1):
            ts = s + (r + 1) * st
            for vname, _ in xports:
                rrdfile, ds_name = defs[vname]
                values.append(self.files[rrdfile]['rows'].get(ts, {}).get(ds_name, math.nan))
        start[0], end[0], step[0] = s, e, st
        col_cnt[0] = len(xports)
        legend_v[0] = self._string_array([label for _, label in xports])
        data[0] = self._double_array(values)
        return 0


@pytest.fixture
def fake_lib():
    return FakeRRDLib()


@pytest.fixture
def engine(fake_lib):
    return RRDFunc(fake_lib)


@pytest.fixture
def db(engine, tmp_path):
    """A one-DS database with step 300 starting at T0"""
    path = str(tmp_path / "temp.rrd")
    err = engine.create(path, 300, T0, False, [], None,
                        ["DS:temp:GAUGE:600:U:U", "RRA:AVERAGE:0.5:1:100"])
    assert err is None
    return path
